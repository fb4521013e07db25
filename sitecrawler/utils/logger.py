"""
Logging setup for crawler worker processes.

Every process logs to stdout, a rotating log file and a separate rotating
errors.log next to it. Worker modules log through ``get_crawler_logger`` so
their records carry the worker id (and the URL for per-URL events), which the
JSON formatter lifts into top-level fields.
"""

import json
import logging
import logging.handlers
import os
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import psutil

from .config import LoggingConfig


# Chatty library loggers capped at WARNING
QUIET_LOGGERS = ('aiohttp', 'aiobotocore', 'botocore', 'cassandra', 'redis', 'asyncio')

MAIN_LOG_MAX_BYTES = 50 * 1024 * 1024
ERROR_LOG_MAX_BYTES = 10 * 1024 * 1024


class JSONFormatter(logging.Formatter):
    """One JSON object per line with worker context merged in at top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            'ts': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
            'pid': record.process,
        }
        payload.update(getattr(record, 'extra_fields', {}))

        if record.exc_info:
            payload['exc'] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Attaches a fixed worker context to every record as ``extra_fields``."""

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        super().__init__(logger, context or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        extra = kwargs.setdefault('extra', {})
        extra['extra_fields'] = {**self.extra, **extra.get('extra_fields', {})}
        return msg, kwargs

    def log_url_event(self, level: int, url: str, message: str, **kwargs):
        """Log something that happened to one crawl target."""
        fields = kwargs.setdefault('extra', {}).setdefault('extra_fields', {})
        fields['url'] = url
        fields['event_type'] = 'url_event'
        self.log(level, message, **kwargs)


class NoiseFilter(logging.Filter):
    """Drops records from library loggers that flood the logs at any level."""

    DEFAULT_PREFIXES = (
        'aiohttp.access',
        'aiobotocore.credentials',
        'botocore.credentials',
        'cassandra.connection',
        'cassandra.pool',
    )

    def __init__(self, prefixes: Tuple[str, ...] = DEFAULT_PREFIXES):
        super().__init__()
        self.prefixes = prefixes

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(self.prefixes)


def _rotating_handler(path: Path, level: int, max_bytes: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    return handler


def setup_logging(config: LoggingConfig, filter_noise: bool = True) -> logging.Logger:
    """
    Configure the root logger for a worker process.

    Replaces any handlers already installed, so calling it twice is safe.
    The console shows INFO and up; the log file keeps everything down to
    DEBUG; errors.log keeps ERROR and up.
    """
    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = JSONFormatter() if config.json else logging.Formatter(config.format)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    handlers = [
        console,
        _rotating_handler(log_file, logging.DEBUG, MAIN_LOG_MAX_BYTES, 5),
        _rotating_handler(log_file.parent / 'errors.log', logging.ERROR, ERROR_LOG_MAX_BYTES, 3),
    ]

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper()))
    root_logger.handlers.clear()

    for handler in handlers:
        handler.setFormatter(formatter)
        if filter_noise:
            handler.addFilter(NoiseFilter())
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(
        f"Logging to {log_file} at {config.level} ({'json' if config.json else 'text'} format)"
    )
    return root_logger


def get_crawler_logger(name: str, **context) -> CrawlerLogAdapter:
    """Logger for worker code; ``context`` (e.g. ``worker=...``) is added to every record."""
    return CrawlerLogAdapter(logging.getLogger(name), context)


def log_system_info():
    """Log where this worker runs and what it has to work with."""
    logger = logging.getLogger(__name__)
    process = psutil.Process(os.getpid())

    logger.info(
        f"Worker host {platform.node()} ({platform.platform()}), "
        f"Python {platform.python_version()}, pid {process.pid}"
    )
    logger.info(
        f"{psutil.cpu_count()} CPUs, "
        f"{psutil.virtual_memory().total / 1024**3:.1f} GB memory, "
        f"{process.memory_info().rss / 1024**2:.0f} MB resident"
    )
