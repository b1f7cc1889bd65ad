import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(log_file: Optional[Path] = None, debug: bool = False) -> logging.Logger:
    """Configures the package logger.

    Without a log file only warnings reach stderr, so the progress bar
    stays readable.
    """
    logger = logging.getLogger("smallmp4")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setLevel(logging.DEBUG if debug else logging.INFO)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False
    return logger
