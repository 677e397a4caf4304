"""
Logging configuration for the equipment sync core.
Provides console and rotating file logging with different levels and formats.

- Uses QueueHandler so log writes never block the event loop
- QueueListener handles file I/O in a separate thread
"""

import atexit
import logging
import logging.handlers
import queue
import sys
from pathlib import Path
from typing import Optional

from pydantic import BaseModel


# Global queue listener for cleanup
_queue_listener: Optional[logging.handlers.QueueListener] = None

SYNC_LOGGER_NAME = "fieldsync.services"


class LogConfig(BaseModel):
    """Logging configuration settings."""

    level: str = "INFO"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    enable_file_logging: bool = True
    log_dir: str = "logs"
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    enable_console: bool = True
    enable_query_logging: bool = False


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    grey = "\x1b[38;21m"
    yellow = "\x1b[33;21m"
    red = "\x1b[31;21m"
    bold_red = "\x1b[31;1m"
    blue = "\x1b[34;21m"
    reset = "\x1b[0m"

    COLORS = {
        logging.DEBUG: grey,
        logging.INFO: blue,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red,
    }

    def format(self, record):
        # Work on a copy so file handlers sharing the record stay uncoloured
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelno, self.grey)
        record.levelname = f"{color}{record.levelname}{self.reset}"
        return f"{super().format(record)}{self.reset}"


class _SyncRecordFilter(logging.Filter):
    """Pass only records emitted by the sync services."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name.startswith(SYNC_LOGGER_NAME)


def setup_logging(config: Optional[LogConfig] = None) -> None:
    """Setup logging with configuration.

    Console handler writes directly; file handlers (``app.log`` and
    ``sync.log``) are driven by a QueueListener in a background thread.
    """
    global _queue_listener

    if config is None:
        config = LogConfig()

    level = getattr(logging, config.level.upper())

    # Stop existing listener if running
    if _queue_listener:
        _queue_listener.stop()
        _queue_listener = None

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if config.enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            ColoredFormatter(
                fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
                datefmt=config.date_format,
            )
        )
        root_logger.addHandler(console_handler)

    file_handlers = []

    if config.enable_file_logging:
        log_path = Path(config.log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_formatter = logging.Formatter(
            fmt="%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s",
            datefmt=config.date_format,
        )

        app_handler = logging.handlers.RotatingFileHandler(
            log_path / "app.log",
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        app_handler.setLevel(level)
        app_handler.setFormatter(file_formatter)
        file_handlers.append(app_handler)

        # Allocation, conflict and queue activity only
        sync_handler = logging.handlers.RotatingFileHandler(
            log_path / "sync.log",
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        sync_handler.setLevel(level)
        sync_handler.setFormatter(file_formatter)
        sync_handler.addFilter(_SyncRecordFilter())
        file_handlers.append(sync_handler)

    if file_handlers:
        log_queue = queue.Queue(-1)
        root_logger.addHandler(logging.handlers.QueueHandler(log_queue))

        _queue_listener = logging.handlers.QueueListener(
            log_queue,
            *file_handlers,
            respect_handler_level=True,
        )
        _queue_listener.start()
        atexit.register(stop_queue_listener)

    sqlalchemy_logger = logging.getLogger("sqlalchemy.engine")
    if config.enable_query_logging:
        sqlalchemy_logger.setLevel(level)
    else:
        sqlalchemy_logger.setLevel(logging.WARNING)


def stop_queue_listener() -> None:
    """Stop the queue listener gracefully.

    Called automatically on exit via atexit.
    Can also be called manually during shutdown.
    """
    global _queue_listener

    if _queue_listener:
        _queue_listener.stop()
        _queue_listener = None
