import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'

LOG_FORMAT = '[%(asctime)s] %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(config, console=True):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = os.path.dirname(config.LOG_FILE)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if getattr(config, 'DEBUG', False) else logging.INFO

    # File handler: one line per event, "[YYYY-MM-DD HH:MM:SS] message"
    file_handler = RotatingFileHandler(
        config.LOG_FILE,
        maxBytes=config.LOG_MAX_BYTES,
        backupCount=config.LOG_BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handlers = [file_handler]

    # Console handler
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s in %(module)s: %(message)s',
            datefmt=LOG_DATE_FORMAT
        ))
        handlers.append(console_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # APScheduler logs every tick at INFO
    if log_level > logging.DEBUG:
        logging.getLogger('apscheduler').setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_controller(config_name=None, console=True):
    """
    Build a ProcessController for the named configuration.

    Args:
        config_name: 'development', 'production' or None for BACKUPD_ENV
        console: Also log to the console

    Returns:
        ProcessController instance
    """
    from backupd.config import get_config
    from backupd.daemon import ProcessController

    config = get_config(config_name)
    configure_logging(config, console=console)
    return ProcessController(config)
