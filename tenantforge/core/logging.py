from __future__ import annotations

import logging

from tenantforge.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once; repeated app factories must not stack handlers.
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # SQL echo is noisy at INFO; leave it to explicit engine configuration.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
