import logging
import os
from pathlib import Path

import psutil

logger = logging.getLogger(__name__)

APP_NAME = "Pack Distribution Service"
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {name}={raw!r}; using {default}")
        return default


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


def cpu_count() -> int:
    try:
        return psutil.cpu_count() or 2
    except Exception:
        return 2


def _resolve_root(raw: str | None) -> Path:
    if raw and raw.strip():
        p = Path(raw.strip().strip('"').strip("'"))
    else:
        p = Path("packs")
    return p.expanduser().resolve()


PACKS_ROOT = _resolve_root(os.getenv("PACKS_ROOT"))
PACK_META_FILENAME = "pack.json"

HASH_CONCURRENCY = _clamp(_env_int("HASH_CONCURRENCY", max(2, cpu_count() * 2)), 1, 64)
MOD_EXTRACT_CONCURRENCY = _clamp(_env_int("MOD_EXTRACT_CONCURRENCY", max(2, cpu_count() // 2)), 1, 32)
DOWNLOAD_CONCURRENCY = _clamp(_env_int("DOWNLOAD_CONCURRENCY", cpu_count()), 2, 8)

MANIFEST_ABSOLUTE_TTL = _env_int("MANIFEST_ABSOLUTE_TTL", 300)
MANIFEST_SLIDING_TTL = _env_int("MANIFEST_SLIDING_TTL", 120)
MANIFEST_CACHE_SIZE = _env_int("MANIFEST_CACHE_SIZE", 1024)

DOWNLOAD_TIMEOUT = _env_int("DOWNLOAD_TIMEOUT", 60)
DOWNLOAD_ATTEMPTS = 3
DOWNLOAD_BACKOFF = 0.2

WATCH_MODE = (os.getenv("WATCH_MODE") or "native").strip().lower()
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()

USER_AGENT = f"PackDistribution/{APP_VERSION}"
