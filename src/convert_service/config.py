import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        value = minimum - 1
    if value < minimum:
        logger.warning("%s was set to %r but should be an integer >= %d. Using a value of %d.", name, raw, minimum, default)
        return default
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# --------------------------------------------------
# Paths
# --------------------------------------------------
DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).resolve()
INPUT_DIR = Path(os.getenv("INPUT_DIR", str(DATA_DIR / "input"))).resolve()
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", str(DATA_DIR / "output"))).resolve()
STORAGE_DIR = Path(os.getenv("STORAGE_DIR", str(DATA_DIR / "storage"))).resolve()

# --------------------------------------------------
# Worker pools
# --------------------------------------------------
WORKERS = _int_env("WORKERS", os.cpu_count() or 4, minimum=1)
DOWNLOAD_WORKERS = _int_env("DOWNLOAD_WORKERS", 5, minimum=1)
CALLBACK_WORKERS = _int_env("CALLBACK_WORKERS", 5, minimum=1)

# --------------------------------------------------
# Inputs and callbacks
# --------------------------------------------------
MAX_UPLOAD_MB = _int_env("MAX_UPLOAD_MB", 300)
DOWNLOAD_RETRIES = _int_env("DOWNLOAD_RETRIES", 2, minimum=1)
CALLBACK_MAX_ATTEMPTS = _int_env("CALLBACK_MAX_ATTEMPTS", 3, minimum=1)
CALLBACK_RETRY_DELAY_SEC = _int_env("CALLBACK_RETRY_DELAY_SEC", 10)

# --------------------------------------------------
# Cleanup
# --------------------------------------------------
JOB_TTL_SEC = _int_env("JOB_TTL_SEC", 24 * 60 * 60, minimum=1)
REAPER_ENABLED = _bool_env("REAPER_ENABLED", True)
REAPER_INTERVAL_SEC = _int_env("REAPER_INTERVAL_SEC", 5 * 60, minimum=1)

# --------------------------------------------------
# Job store (unset -> in-memory)
# --------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL") or None

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def size_limit_bytes() -> int | None:
    return MAX_UPLOAD_MB * 1024 * 1024 if MAX_UPLOAD_MB > 0 else None
