import sys
from pathlib import Path
from typing import Optional
from loguru import logger
from src.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None):
    """Console sink at the configured level; optional rotating file sink for the poller."""
    logger.remove()
    logger.add(sys.stderr, level=level or settings.LOG_LEVEL, format=CONSOLE_FORMAT)

    if settings.LOG_TO_FILE:
        settings.ensure_dirs()
        logger.add(
            log_file or settings.DATA_DIR / "feeds.log",
            rotation="10 MB",
            retention=5,
            level="DEBUG",
            enqueue=True,
        )


setup_logging()
