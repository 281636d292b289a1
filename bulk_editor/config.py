"""Environment-variable-driven configuration for the bulk editor.

All settings come from ``BULK_EDITOR_*`` env vars; nothing is read from disk.
"""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# -- Resolution endpoint ------------------------------------------------------
API_URL: str = os.getenv("BULK_EDITOR_API_URL", "http://localhost:8080/lookup")
API_TOKEN: str | None = os.getenv("BULK_EDITOR_API_TOKEN")
API_TIMEOUT_SECONDS: float = _env_float("BULK_EDITOR_API_TIMEOUT_SECONDS", 30.0)
API_BATCH_SIZE: int = _env_int("BULK_EDITOR_API_BATCH_SIZE", 50)
API_MAX_RETRIES: int = _env_int("BULK_EDITOR_API_MAX_RETRIES", 3)
API_RETRY_BASE_SECONDS: float = _env_float("BULK_EDITOR_API_RETRY_BASE_SECONDS", 1.0)
API_CONCURRENCY: int = _env_int("BULK_EDITOR_API_CONCURRENCY", 4)

# -- Rewrite rules ------------------------------------------------------------
REPLACEMENT_BASE_URL: str = os.getenv(
    "BULK_EDITOR_REPLACEMENT_BASE_URL",
    "https://thesource.cvshealth.com/nuxeo/thesource/",
)

# -- Documents ----------------------------------------------------------------
MAX_FILE_BYTES: int = _env_int("BULK_EDITOR_MAX_FILE_BYTES", 100 * 1024 * 1024)
ALLOWED_EXTENSIONS: list[str] = [
    e.lower() for e in _env_csv("BULK_EDITOR_ALLOWED_EXTENSIONS", ".docx")
]
CREATE_BACKUPS: bool = _env_bool("BULK_EDITOR_CREATE_BACKUPS", True)
BACKUP_FOLDER: str = os.getenv("BULK_EDITOR_BACKUP_FOLDER", "Backups")
CACHE_TTL_SECONDS: float = _env_float("BULK_EDITOR_CACHE_TTL_SECONDS", 3600.0)

# -- Pipeline -----------------------------------------------------------------
_CORES = os.cpu_count() or 1
VALIDATION_WORKERS: int = _env_int("BULK_EDITOR_VALIDATION_WORKERS", _CORES * 2)
EXTRACTION_WORKERS: int = _env_int("BULK_EDITOR_EXTRACTION_WORKERS", _CORES)
API_WORKERS: int = _env_int("BULK_EDITOR_API_WORKERS", max(1, _CORES // 2))
UPDATE_WORKERS: int = _env_int("BULK_EDITOR_UPDATE_WORKERS", _CORES)
CROSS_DOCUMENT_BATCHING: bool = _env_bool("BULK_EDITOR_CROSS_DOCUMENT_BATCHING", False)
STAGE_TIMEOUT_SECONDS: float = _env_float("BULK_EDITOR_STAGE_TIMEOUT_SECONDS", 300.0)
BOUNDED_CAPACITY: int = _env_int("BULK_EDITOR_BOUNDED_CAPACITY", 100)

# -- Logging ------------------------------------------------------------------
LOG_LEVEL: str = os.getenv("BULK_EDITOR_LOG_LEVEL", "INFO")
LOG_JSON: bool = _env_bool("BULK_EDITOR_LOG_JSON", False)
