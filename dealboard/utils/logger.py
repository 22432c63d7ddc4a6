"""
Logging configuration
"""
from loguru import logger
import os
import sys
from dealboard.config import get_settings

settings = get_settings()


def setup_logger():
    """Configure logger with appropriate settings"""
    logger.remove()  # Remove default handler

    # Console logging
    logger.add(
        sys.stdout,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level
    )

    if not settings.log_file_enabled:
        return logger

    # Daily file with every sync run
    logger.add(
        os.path.join(settings.log_dir, "dealboard_{time:YYYY-MM-DD}.log"),
        rotation="00:00",
        retention="30 days",
        compression="zip",
        level="INFO"
    )

    # Errors only, kept longer for run post-mortems
    logger.add(
        os.path.join(settings.log_dir, "errors_{time:YYYY-MM-DD}.log"),
        rotation="10 MB",
        retention="90 days",
        level="ERROR"
    )

    return logger


# Initialize logger
log = setup_logger()
