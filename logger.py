import os
import logging
from logging.handlers import RotatingFileHandler

import config

LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").upper()
LOG_TO_CONSOLE = os.getenv("LOG_TO_CONSOLE", "0") == "1"

_FORMAT = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")


def get_logger(name: str) -> logging.Logger:
    os.makedirs(config.LOG_DIR, exist_ok=True)

    logger = logging.getLogger(f"marketplace.{name}")
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.DEBUG))

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        handler = RotatingFileHandler(
            os.path.join(config.LOG_DIR, config.LOG_FILE),
            maxBytes=5 * 1024 * 1024,   # 5 MB
            backupCount=5               # keep 5 logs
        )
        handler.setFormatter(_FORMAT)
        logger.addHandler(handler)

    # waitress/console runs want the same lines on stderr
    if LOG_TO_CONSOLE and not any(type(h) is logging.StreamHandler for h in logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(_FORMAT)
        logger.addHandler(console)

    return logger
