from .constants import (
    Colors,
    MODULE_ABBREV,
    MODULE_COLORS,
    get_request_id,
    reset_request_id,
    set_request_id,
)
from .formatters import JsonFormatter, PlainFormatter, SmartFormatter
from .structured_logger import StructuredLogger, get_logger, set_log_level

__all__ = [

    "get_logger",
    "StructuredLogger",
    "SmartFormatter",
    "PlainFormatter",
    "JsonFormatter",
    "Colors",
    "MODULE_COLORS",
    "MODULE_ABBREV",
    "set_request_id",
    "reset_request_id",
    "get_request_id",
    "set_log_level",
]
