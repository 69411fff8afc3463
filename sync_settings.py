"""Environment configuration for the purchase sync engine.

Values are read once at import time after ``load_dotenv()`` so a local
``.env`` file can override the defaults below.

Environment:
  PURCHASE_DB_PATH              SQLite DB path (default: purchases.db)
  PURCHASE_API_BASE             Base URL of the remote purchase API
  PURCHASE_API_PREFIX           Path prefix for API routes (default: /connector/api)
  PURCHASE_API_TOKEN            Bearer token used for every remote call
  PURCHASE_CONNECT_TIMEOUT      Connect timeout in seconds (default: 30)
  PURCHASE_API_TIMEOUT          Read timeout in seconds (default: 30)
  PURCHASE_CACHE_MAX_AGE_HOURS  Reference cache max age (default: 24)
  PURCHASE_SYNC_INTERVAL        Seconds between worker loops (default: 60)
  PURCHASE_SYNC_WORKERS         Parallel header pushes per run (default: 1)
  PURCHASE_PER_PAGE             Default page size for listings (default: 20)
  PURCHASE_LOG_LEVEL            Logging level name (default: INFO)
"""
import logging
import os
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name) or default)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name) or default)
    except ValueError:
        return default


DB_PATH = _env_string('PURCHASE_DB_PATH', 'purchases.db')
API_BASE = _env_string('PURCHASE_API_BASE')
API_PREFIX = _env_string('PURCHASE_API_PREFIX', '/connector/api')
API_TOKEN = _env_string('PURCHASE_API_TOKEN')
CONNECT_TIMEOUT = _env_float('PURCHASE_CONNECT_TIMEOUT', 30.0)
READ_TIMEOUT = _env_float('PURCHASE_API_TIMEOUT', 30.0)
CACHE_MAX_AGE = timedelta(hours=_env_float('PURCHASE_CACHE_MAX_AGE_HOURS', 24.0))
SYNC_INTERVAL = _env_float('PURCHASE_SYNC_INTERVAL', 60.0)
SYNC_WORKERS = max(1, _env_int('PURCHASE_SYNC_WORKERS', 1))
PER_PAGE = max(1, _env_int('PURCHASE_PER_PAGE', 20))
LOG_LEVEL_NAME = (_env_string('PURCHASE_LOG_LEVEL') or 'INFO').upper()


def log_level() -> int:
    return getattr(logging, LOG_LEVEL_NAME, logging.INFO)


def configure_logging(tag: str) -> None:
    """Root logging setup for command-line entry points."""
    logging.basicConfig(level=log_level(), format=f'[{tag}] %(asctime)s %(levelname)s %(message)s')
