import os
from dotenv import load_dotenv

load_dotenv()


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"true", "1", "yes"}


def _list_set(name: str) -> frozenset[str] | None:
    items = {item.strip().lower() for item in os.getenv(name, "").split(",") if item.strip()}
    return frozenset(items) or None


def connect_args_for(url: str) -> dict:
    return {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}


DB_URL = os.getenv("DB_URL", "sqlite:///./linkdrop.db")
DB_CONNECT_ARGS = connect_args_for(DB_URL)

STORAGE_TYPE = "gcs" if os.getenv("STORAGE_TYPE", "local").strip().lower() == "gcs" else "local"
STORAGE_LOCAL_DIR = os.getenv(
    "STORAGE_LOCAL_DIR", os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "uploads"))
)
STAGING_DIR = os.getenv("STAGING_DIR") or None
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "")
GCS_PREFIX = os.getenv("GCS_PREFIX", "linkdrop")

DEFAULT_EXPIRY_HOURS = _positive_int("DEFAULT_EXPIRY_HOURS", 24)
DEFAULT_MAX_DOWNLOADS = _positive_int("DEFAULT_MAX_DOWNLOADS", 1)
MAX_DOWNLOADS_CAP = _positive_int("MAX_DOWNLOADS_CAP", 10)
MAX_FILE_SIZE = _positive_int("MAX_FILE_SIZE_BYTES", 50 * 1024 * 1024)
ALLOWED_MIME = _list_set("ALLOWED_MIME")
ALLOWED_EXTS = _list_set("ALLOWED_EXTS")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/") or None

ENABLE_CLEANER = _flag("ENABLE_CLEANER", "true")
CLEANUP_INTERVAL_SECONDS = _positive_int("CLEANUP_INTERVAL_SECONDS", 5 * 60)
CLEANUP_BATCH_SIZE = _positive_int("CLEANUP_BATCH_SIZE", 100)
CLEANUP_SOFT_DELETE_ONLY = _flag("CLEANUP_SOFT_DELETE_ONLY", "false")
CLEANUP_PURGE_AFTER_HOURS = _positive_int("CLEANUP_PURGE_AFTER_HOURS", 24)
CLEANUP_RECLAIM_GRACE_SECONDS = _positive_int("CLEANUP_RECLAIM_GRACE_SECONDS", 60 * 60)
CLEANUP_SHUTDOWN_TIMEOUT_SECONDS = _positive_int("CLEANUP_SHUTDOWN_TIMEOUT_SECONDS", 30)

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
RATE_LIMIT_PER_MINUTE = _positive_int("RATE_LIMIT_PER_MINUTE", 100)
UPLOAD_RATE_LIMIT_PER_MINUTE = _positive_int("UPLOAD_RATE_LIMIT_PER_MINUTE", 20)
DOWNLOAD_RATE_LIMIT_PER_MINUTE = _positive_int("DOWNLOAD_RATE_LIMIT_PER_MINUTE", 50)

# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
