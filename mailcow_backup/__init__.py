"""
mailcow-backup: scheduled mailcow backups replicated to several storage
targets, each with its own retention count, with Gotify notifications.
"""

import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'

LOG_MAX_BYTES = 10485760  # 10MB
LOG_BACKUP_COUNT = 10


def configure_logging(config=None):
    """
    Configure logging to the terminal and the append-only log file.

    Args:
        config: BackupConfig providing log_file and log_level (console only if None)

    Returns:
        The root logger
    """
    level_name = config.log_level if config is not None else 'INFO'
    log_level = getattr(logging, level_name, logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    file_error = None
    if config is not None and config.log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(config.log_file)), exist_ok=True)
            file_handler = RotatingFileHandler(
                config.log_file,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT
            )
            file_handler.setLevel(log_level)
            file_formatter = logging.Formatter(
                '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            handlers.append(file_handler)
        except OSError as e:
            file_error = e

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Third-party libraries are only interesting when something goes wrong
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3', 'apscheduler'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    root = logging.getLogger()
    if file_error is not None:
        root.warning(f"Cannot write log file {config.log_file}: {file_error}; logging to terminal only")

    root.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return root
