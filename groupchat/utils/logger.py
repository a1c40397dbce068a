import logging
import os

from ..config import get_settings


def setup_logger(name='groupchat'):
    """Set up a logger with console and file output.

    Creates a logger that writes:
    - the configured level (GROUPCHAT_LOG_LEVEL, INFO by default) and above to console
    - DEBUG and above to file (<log_dir>/server.log)

    Args:
        name (str, optional): Logger name. Defaults to 'groupchat'

    Returns:
        logging.Logger: Configured logger instance

    Side Effects:
        - Creates the log directory if it doesn't exist
        - Creates/appends to server.log file
        - Attaches handlers only on the first call for a given name
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    settings = get_settings()
    logger.setLevel(logging.DEBUG)

    # Create formatters and handlers
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(settings.log_level.upper())

    # File handler - ensure log directory exists
    os.makedirs(settings.log_dir, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(settings.log_dir, 'server.log'))
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    # Add handlers to logger
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return logger
