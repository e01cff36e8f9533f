import os
from pathlib import Path

from dotenv import load_dotenv

from relay.core.logging import get_logger

_log = get_logger("config")

load_dotenv()


def _get_int_env(name: str, default: int) -> int:
    """Get integer value from environment variable.

    Args:
        name: Environment variable name
        default: Default value if not set or invalid

    Returns:
        Integer value from env or default
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("Invalid int env", env=name, value=raw)
        return default


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        _log.warning("Invalid float env", env=name, value=raw)
        return default


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


APP_VERSION = os.getenv("RELAY_VERSION", "0.1.0")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = _get_int_env("PORT", 3000)

PROJECT_ROOT = Path(__file__).parent.parent.resolve()
WORKING_DIR = Path(os.getenv("RELAY_WORKING_DIR", str(PROJECT_ROOT / "data"))).resolve()

# =============================================================================
# Rendering
# =============================================================================
# Telegram answers 429 below roughly 300ms between edits of one chat.
EDIT_THROTTLE_SECONDS = _get_int_env("EDIT_THROTTLE_MS", 300) / 1000
STREAM_THROTTLE_SECONDS = _get_int_env("STREAM_THROTTLE_MS", 800) / 1000
STREAM_MIN_CHARS = _get_int_env("STREAM_MIN_CHARS", 30)
STREAM_MAX_CHARS = _get_int_env("STREAM_MAX_CHARS", 3900)
STREAMING_ENABLED = _get_bool_env("STREAMING_ENABLED", True)

# 0 keeps every status entry and trims the oldest by size; N keeps the last N.
STATUS_WINDOW = _get_int_env("STATUS_WINDOW", 0)
STATUS_MAX_CHARS = _get_int_env("STATUS_MAX_CHARS", 4000)

# =============================================================================
# Queueing
# =============================================================================
EVENT_QUEUE_CAPACITY = _get_int_env("EVENT_QUEUE_CAPACITY", 5)

HEARTBEAT_CHANNEL = os.getenv("HEARTBEAT_CHANNEL", "_heartbeat")
HEARTBEAT_INTERVAL_SECONDS = _get_float_env("HEARTBEAT_INTERVAL_SECONDS", 0.0)

# =============================================================================
# Bindings
# =============================================================================
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_WEBHOOK_SECRET = os.getenv("TELEGRAM_WEBHOOK_SECRET")
TELEGRAM_WEBHOOK_URL = os.getenv("TELEGRAM_WEBHOOK_URL")
TELEGRAM_WEBHOOK_PATH = os.getenv("TELEGRAM_WEBHOOK_PATH", "/telegram/webhook")
SKIP_WEBHOOK_REGISTRATION = _get_bool_env("SKIP_WEBHOOK_REGISTRATION", False)

SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN")
SLACK_SIGNING_SECRET = os.getenv("SLACK_SIGNING_SECRET")
SLACK_EVENTS_PATH = os.getenv("SLACK_EVENTS_PATH", "/slack/events")
SLACK_API_URL = os.getenv("SLACK_API_URL", "https://slack.com/api")

WEB_CHAT_PATH = os.getenv("WEB_CHAT_PATH", "/web/chat")
WEB_CHAT_ENABLED = _get_bool_env("WEB_CHAT_ENABLED", True)

# Inbound mail arrives as a JSON webhook; replies go out through a send API.
EMAIL_WEBHOOK_PATH = os.getenv("EMAIL_WEBHOOK_PATH", "/email/inbound")
EMAIL_WEBHOOK_TOKEN = os.getenv("EMAIL_WEBHOOK_TOKEN")
EMAIL_SEND_URL = os.getenv("EMAIL_SEND_URL")
EMAIL_SEND_TOKEN = os.getenv("EMAIL_SEND_TOKEN")

TELEGRAM_ALLOWED_CHAT_IDS = [
    int(x) for x in os.getenv("TELEGRAM_ALLOWED_CHAT_IDS", "").split(",") if x.strip().lstrip("-").isdigit()
]

# Cross-process event signals (scheduled jobs, other services)
EVENTS_PATH = os.getenv("EVENTS_PATH", "/events")
EVENTS_TOKEN = os.getenv("EVENTS_TOKEN")

HTTP_TIMEOUT_SECONDS = _get_float_env("HTTP_TIMEOUT_SECONDS", 30.0)
SHUTDOWN_TIMEOUT_SECONDS = _get_float_env("SHUTDOWN_TIMEOUT_SECONDS", 5.0)


def ensure_working_dir() -> None:
    """Create the transcript root if it doesn't exist."""
    try:
        WORKING_DIR.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        _log.warning("Failed to create directory", path=str(WORKING_DIR), error=str(e))
