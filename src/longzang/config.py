from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .claims import DEFAULT_TIMEZONE
from .scripture import DEFAULT_SCRIPTURE_URL_TEMPLATE
from .stores import DEFAULT_STORAGE_KEY

logger = logging.getLogger(__name__)

FALLBACK_ADMIN_CODE = "longzang"


def _env_first(environ: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = environ.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = _env_first(environ, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring %s=%r: must be positive", name, raw)
        return default
    return value


@dataclass(slots=True)
class ServiceConfig:
    data_dir: Path = Path("data")
    store_url: str | None = None
    store_key: str | None = None
    store_timeout: float = 10.0
    webhook_url: str | None = None
    webhook_secret: str | None = None
    admin_code: str | None = None
    timezone: str = DEFAULT_TIMEZONE
    scripture_url_template: str = DEFAULT_SCRIPTURE_URL_TEMPLATE
    scripture_timeout: float = 20.0
    claims_cache_ttl: float = 60.0
    scripture_cache_ttl: float = 3600.0
    storage_key: str = DEFAULT_STORAGE_KEY

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServiceConfig":
        env = os.environ if environ is None else environ
        data_dir = _env_first(env, "LONGZANG_DATA_DIR")
        return cls(
            data_dir=Path(data_dir).expanduser() if data_dir else Path("data"),
            store_url=_env_first(env, "CLAIMS_STORE_URL", "SHEETDB_API_URL"),
            store_key=_env_first(env, "CLAIMS_STORE_KEY", "SHEETDB_API_KEY"),
            store_timeout=_env_float(env, "CLAIMS_STORE_TIMEOUT", 10.0),
            webhook_url=_env_first(env, "NOTIFY_WEBHOOK_URL"),
            webhook_secret=_env_first(env, "NOTIFY_WEBHOOK_SECRET"),
            admin_code=_env_first(env, "ADMIN_ACCESS_CODE"),
            timezone=_env_first(env, "LONGZANG_TIMEZONE") or DEFAULT_TIMEZONE,
            scripture_url_template=(
                _env_first(env, "SCRIPTURE_URL_TEMPLATE") or DEFAULT_SCRIPTURE_URL_TEMPLATE
            ),
            scripture_timeout=_env_float(env, "SCRIPTURE_TIMEOUT", 20.0),
            storage_key=_env_first(env, "LONGZANG_STORAGE_KEY") or DEFAULT_STORAGE_KEY,
        )

    def effective_admin_code(self) -> str:
        if self.admin_code:
            return self.admin_code
        logger.warning(
            "ADMIN_ACCESS_CODE is not set; the admin view accepts the built-in code. "
            "Set it before deploying."
        )
        return FALLBACK_ADMIN_CODE
