import logging
import sys
from carebot.config import get_settings

settings = get_settings()

def setup_logging():
    # Root "carebot" logger so every module logger (carebot.services.*) inherits the handler
    logger = logging.getLogger("carebot")
    logger.setLevel(settings.LOG_LEVEL)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(settings.LOG_LEVEL)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    handler.setFormatter(formatter)

    if not logger.handlers:
        logger.addHandler(handler)

    return logger

logger = setup_logging()
