import os


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_choice(name: str, default: str, allowed: set[str]) -> str:
    value = (os.getenv(name, default) or default).strip().lower()
    return value if value in allowed else default


DATABASE_URL = os.getenv("ONAIR_DATABASE_URL", "sqlite:///./onair.db")
API_KEY = os.getenv("ONAIR_API_KEY", "").strip()
LOG_LEVEL = (os.getenv("ONAIR_LOG_LEVEL", "INFO") or "INFO").strip().upper()
QUIET_ACCESS_LOG = _env_flag("ONAIR_QUIET_ACCESS_LOG", "1")
QUIET_WEBSOCKET_LOG = _env_flag("ONAIR_QUIET_WEBSOCKET_LOG", "1")

PROVIDER_BASE_URL = (os.getenv("ONAIR_PROVIDER_BASE_URL", "https://api.ffmpeg.cloud/v1") or "").strip().rstrip("/")
PROVIDER_API_KEY = os.getenv("ONAIR_PROVIDER_API_KEY", "").strip()
PROVIDER_STREAM_BASE_URL = (
    os.getenv("ONAIR_PROVIDER_STREAM_BASE_URL", "https://stream.media-plus.app") or ""
).strip().rstrip("/")
PROVIDER_CONNECT_TIMEOUT_SEC = float(os.getenv("ONAIR_PROVIDER_CONNECT_TIMEOUT_SEC", "5"))
PROVIDER_READ_TIMEOUT_SEC = float(os.getenv("ONAIR_PROVIDER_READ_TIMEOUT_SEC", "20"))
PROVIDER_MAX_RETRIES = int(os.getenv("ONAIR_PROVIDER_MAX_RETRIES", "2"))

PLAYLIST_WINDOW = max(1, int(os.getenv("ONAIR_PLAYLIST_WINDOW", "100")))
# loop: wrap to the first entry when advancing past the last one; stop: end the session.
PLAYLIST_EXHAUSTED_POLICY = _env_choice("ONAIR_PLAYLIST_EXHAUSTED_POLICY", "loop", {"loop", "stop"})
# latest: on identical start times the most recently inserted entry wins.
TIE_BREAK = _env_choice("ONAIR_TIE_BREAK", "latest", {"latest", "earliest"})
