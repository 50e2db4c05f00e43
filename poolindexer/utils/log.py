"""
Default logging interface
"""

import logging
import os


_LOG_FORMATTER = logging.Formatter(
    "[%(asctime)s][%(threadName)s][%(levelname)s]:%(message)s"
)

# Log file names used when file logging is enabled.
COMBINED_LOG_FILE_NAME = "combined.log"
ERROR_LOG_FILE_NAME = "error.log"


def get_default_logger(name: str) -> logging.Logger:
    """
    Get default logger for a given name.

    :param name: The logger name.
    :return: The logger object.
    """

    # Set Null log handler to avoid "No handlers could be found for logger XXX".
    # This is important for library code, which may contain code to log events
    # if a user of the library does not configure logging.
    if len(logging.getLogger().handlers) == 0:
        logging.getLogger().addHandler(logging.NullHandler())

    log = logging.getLogger(name)
    log.setLevel(logging.INFO)

    # Add a handler for the log if one isn't present.
    if len(log.handlers) == 0:
        handler = logging.StreamHandler()
        handler.setFormatter(_LOG_FORMATTER)
        log.addHandler(handler)
        log.propagate = False

    return log


def add_file_handlers(log: logging.Logger, log_dir: str) -> None:
    """
    Add the combined and error log file handlers to a logger.
    The combined log receives INFO and above, the error log ERROR and above.
    Calling the function twice for the same logger and directory is a no-op.

    :param log: The logger to extend.
    :param log_dir: The directory for the log files.
    """
    os.makedirs(log_dir, exist_ok=True)
    existing = {
        getattr(h, "baseFilename", None)
        for h in log.handlers
        if isinstance(h, logging.FileHandler)
    }
    for file_name, level in (
        (COMBINED_LOG_FILE_NAME, logging.INFO),
        (ERROR_LOG_FILE_NAME, logging.ERROR),
    ):
        path = os.path.abspath(os.path.join(log_dir, file_name))
        if path in existing:
            continue
        handler = logging.FileHandler(path)
        handler.setLevel(level)
        handler.setFormatter(_LOG_FORMATTER)
        log.addHandler(handler)
