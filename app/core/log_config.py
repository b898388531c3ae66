"""
Logging setup. Modules log through ``logging.getLogger(__name__)`` with a
bracketed component tag at the start of each message, e.g. ``[PAYOUTS]``.
"""
import logging
import sys
from app.core.config import settings

_configured = False


def configure_logging(level: str = None) -> None:
    """Install a single stream handler on the root logger (idempotent)."""
    global _configured
    if _configured:
        return

    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s"
    ))

    root = logging.getLogger()
    root.setLevel(log_level)
    root.addHandler(handler)

    # SQL echo is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
