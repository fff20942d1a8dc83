"""Startup-time helpers for safe config logging."""

from sqlalchemy.engine import make_url

from settlepay.common.config import CommonSettings
from settlepay.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value):
    """Effective setting value with secrets hidden; DSNs keep everything but the password."""

    if name.endswith("_dsn"):
        return make_url(value).render_as_string(hide_password=True)
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected settings, defaults included, for quick troubleshooting."""

    snapshot = {"service": config.service_name}
    for name in fields:
        snapshot[name] = _safe_value(name, getattr(config, name))
    logger.info("startup_config=%s", snapshot)
