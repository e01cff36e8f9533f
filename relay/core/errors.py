"""
Application error hierarchy.

Every typed error carries an HTTP status and a retryable flag so the
Gateway can answer a failing handler without knowing its internals.
"""

import time
from abc import ABC, abstractmethod
from typing import Any


class RelayError(Exception, ABC):
    """Abstract base for all typed application errors."""

    @abstractmethod
    def _abstract_guard(self) -> None: ...

    @property
    @abstractmethod
    def is_retryable(self) -> bool: ...

    @property
    @abstractmethod
    def http_status(self) -> int: ...

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        channel_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper().replace("ERROR", "").strip("_") or type(self).__name__
        self.timestamp = time.time()
        self.channel_id = channel_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "is_retryable": self.is_retryable,
            "http_status": self.http_status,
            "timestamp": self.timestamp,
            "channel_id": self.channel_id,
        }


class TransportError(RelayError):
    """A platform API call failed (rate limit, stale handle, network)."""

    is_retryable: bool = True
    http_status: int = 502

    def _abstract_guard(self) -> None: ...

    def __init__(
        self, message: str, *, platform: str = "", code: str = "TRANSPORT", **kw: Any
    ) -> None:
        super().__init__(message, code=code, **kw)
        self.platform = platform


class ProtocolError(RelayError):
    """Inbound request rejected at the binding boundary."""

    is_retryable: bool = False

    def _abstract_guard(self) -> None: ...

    def __init__(
        self, message: str, *, code: str = "PROTOCOL", http_status: int = 400, **kw: Any
    ) -> None:
        super().__init__(message, code=code, **kw)
        self._http_status = http_status

    @property  # type: ignore[override]
    def http_status(self) -> int:
        return self._http_status


class CapacityError(RelayError):
    is_retryable: bool = True
    http_status: int = 429

    def _abstract_guard(self) -> None: ...

    def __init__(
        self, message: str, *, capacity: int, code: str = "CAPACITY", **kw: Any
    ) -> None:
        super().__init__(message, code=code, **kw)
        self.capacity = capacity


class RunStateError(RelayError):
    """A run was started on a conversation that is already running."""

    is_retryable: bool = False
    http_status: int = 409

    def _abstract_guard(self) -> None: ...

    def __init__(self, message: str, *, code: str = "RUN_STATE", **kw: Any) -> None:
        super().__init__(message, code=code, **kw)


class GatewayError(RelayError):
    is_retryable: bool = False
    http_status: int = 500

    def _abstract_guard(self) -> None: ...

    def __init__(
        self, message: str, *, port: int | None = None, code: str = "GATEWAY", **kw: Any
    ) -> None:
        super().__init__(message, code=code, **kw)
        self.port = port
