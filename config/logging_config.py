"""
Centralized logging configuration for the conversation orchestrator.

This module provides a function to set up application-wide logging with a
JSON formatter and console/file handlers, plus a helper that returns a logger
adapter pre-filled with per-turn context (conversation id, stage name).
"""

import logging
import logging.handlers  # Required for RotatingFileHandler
import sys
import json
from pathlib import Path

class StructuredLogFormatter(logging.Formatter):
    """
    Custom formatter that renders every record as one JSON object.

    Features:
    - Includes conversation_id if present in extra fields
    - Includes stage_name if present in extra fields
    - Includes strategy_id / domain_id when plugins log through it
    - Preserves standard log fields (timestamp, level, logger)
    """

    CONTEXT_FIELDS = ('conversation_id', 'stage_name', 'strategy_id', 'domain_id')

    def format(self, record):
        log_data = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }

        for field_name in self.CONTEXT_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)

DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class ContextLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges call-site `extra` over the bound context instead of replacing it."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> logging.LoggerAdapter:
    """
    Get a logger adapter carrying default context fields.

    A fresh adapter is returned on every call, so callers can bind the
    conversation id of the current turn without sharing mutable state with
    concurrent turns.

    Args:
        name (str): Logger name (usually __name__)
        **context: Extra fields to attach to every record, e.g. conversation_id.

    Returns:
        ContextLoggerAdapter: Adapter around the named logger.
    """
    logger = logging.getLogger(name)
    extra = {
        'conversation_id': 'no_conversation',
        'stage_name': 'no_stage'
    }
    extra.update(context)
    return ContextLoggerAdapter(logger, extra)

def setup_app_logging(config: dict = None, default_level=logging.INFO) -> None:
    """
    Set up logging for the entire application.

    This function configures the root logger with handlers for console
    and file output. Log levels and file paths can be specified via
    the optional config dictionary.

    Args:
        config (dict, optional): A dictionary containing logging configurations.
                                Expected keys:
                                - 'level': String representation of log level (e.g., "DEBUG", "INFO").
                                - 'file_path': Path to the log file. Empty disables file logging.
                                - 'max_bytes': Max size of the log file before rotation.
                                - 'backup_count': Number of backup log files to keep.
                                - 'date_format': Custom log date format string.
        default_level (int, optional): The default logging level if not specified
                                     in the config. Defaults to logging.INFO.
    """
    if config is None:
        config = {}

    log_level_str = str(config.get('level', logging.getLevelName(default_level))).upper()
    numeric_log_level = getattr(logging, log_level_str, default_level)
    if not isinstance(numeric_log_level, int):
        print(f"Warning: Invalid log level string '{log_level_str}'. Using default level {logging.getLevelName(default_level)}.", file=sys.stderr)
        numeric_log_level = default_level

    log_date_format = config.get('date_format', DEFAULT_LOG_DATE_FORMAT)
    formatter = StructuredLogFormatter(datefmt=log_date_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_log_level)

    # Remove any existing handlers
    if root_logger.hasHandlers():
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_file_path = config.get('file_path')
    if log_file_path:
        try:
            max_bytes = int(config.get('max_bytes', 5*1024*1024))  # 5 MB
            backup_count = int(config.get('backup_count', 3))
            Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Error setting up file logging to {log_file_path}: {e}. File logging will be disabled.", file=sys.stderr)

    get_logger("LoggingConfig").info("Application logging setup complete. Level: %s", log_level_str)
