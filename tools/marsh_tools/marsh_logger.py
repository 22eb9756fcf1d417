"""
Logging helpers shared by the marsh_tools modules and the analysis scripts.
"""

import logging

LOGGER_NAME = 'marsh_tools'


def setup_logger(log_file=None, log_level=logging.INFO):
    """Set up the project logger with a console and optional file handler."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    # Re-running setup (e.g. from a notebook) must not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Create formatter
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Create console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Create file handler if log_file specified
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_print(message, level="info"):
    """Log a message on the project logger at the given level name."""
    logger = logging.getLogger(LOGGER_NAME)
    log_method = getattr(logger, level.lower(), None)
    if log_method is None:
        raise ValueError(f"Unknown log level: {level}")
    log_method(message)
