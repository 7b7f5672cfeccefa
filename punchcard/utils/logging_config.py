"""
Logging setup for the loyalty service.

Configures the root logger once so that module loggers
(logging.getLogger(__name__)) and the Flask app logger share one format.
"""
import os
import logging

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'

_configured = False


def setup_logging(level: str = None) -> None:
    """
    Configure root logging from LOG_LEVEL (default INFO).

    Safe to call more than once; only the first call installs a handler.
    """
    global _configured

    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    if _configured:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    _configured = True
