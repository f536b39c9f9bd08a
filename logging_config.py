import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that flood DEBUG output
NOISY_LOGGERS = [
    "uvicorn.access",
    "uvicorn.protocols.http",
    "asyncio",
]


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configure application logging.

    Installs a console handler and, when ``log_file`` is given, a file handler,
    both using the same format. Safe to call more than once.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    handlers = []
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, format=LOG_FORMAT, force=True)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = get_logger("poker")
    logger.debug(f"Logging initialized at level {logging.getLevelName(level)}")
    if log_file:
        logger.info(f"Log file: {log_file}")
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
