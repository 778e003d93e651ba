"""Loguru sink setup."""

import sys
from pathlib import Path

from loguru import logger

from signalrelay.config.schema import LoggingConfig

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Replace loguru's default sink with the configured stderr/file sinks.

    The package itself only logs through ``loguru.logger`` and never installs
    sinks; the application embedding ``SignalChannel`` calls this once at
    startup, typically with ``load_config().logging``.
    """
    config = config or LoggingConfig()
    logger.remove()
    logger.add(sys.stderr, level=config.level, format=LOG_FORMAT)
    if config.file:
        path = Path(config.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(path, level=config.level, rotation="10 MB", retention=5, enqueue=True)
