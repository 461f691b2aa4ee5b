import logging
from contextlib import contextmanager
from datetime import datetime, timezone

logger = logging.getLogger("tubework")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s[%(process)d]: %(message)s"


def configure_logging(level: str = "INFO"):
    """Install one stream handler on the root logger. For process entry points only."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _stamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@contextmanager
def log_bracketed(name: str, log: logging.Logger = logger):
    """Log ``#!name!begin!<ts>`` / ``#!name!end!<ts>`` markers around a block."""
    log.info("#!%s!begin!%s", name, _stamp())
    try:
        yield
    finally:
        log.info("#!%s!end!%s", name, _stamp())
