import os
import logging

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | None = None):
    """Configure root logging once per process."""
    global _configured
    if _configured:
        return
    logging.basicConfig(level=getattr(logging, level or LOG_LEVEL, logging.INFO), format=LOG_FORMAT)
    _configured = True
