"""Startup-time helpers for safe config logging."""

import os

from cvpay.common.config import settings
from cvpay.common.logging import logger


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "DSN")


def _safe_env(name: str) -> str:
    """Return env value, redacted when the variable name looks secret-bearing."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>" if value else "<empty>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)
    if not settings.selcom_api_secret:
        logger.warning("SELCOM_API_SECRET is unset: webhook signatures will NOT be verified")
