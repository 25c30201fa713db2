"""
Structured JSON logging for the extractor and merger tasks.
"""
import logging
import logging.handlers
import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Any, Iterator, List, Optional
from pathlib import Path

from mongo_pipeline.config.settings import get_settings


# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

_SIZE_UNITS = {'KB': 1024, 'MB': 1024 ** 2, 'GB': 1024 ** 3}


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON documents."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key not in _RESERVED_ATTRS:
                    log_entry[key] = value

        # bson types (ObjectId, datetime) fall back to str
        return json.dumps(log_entry, default=str)


class PipelineLogger:
    """Logger that attaches task context (partition, topic, ...) to every message."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        self._context: Dict[str, Any] = {}

    def set_context(self, **kwargs) -> None:
        self._context.update(kwargs)

    def clear_context(self) -> None:
        self._context.clear()

    @contextmanager
    def context(self, **kwargs) -> Iterator['PipelineLogger']:
        """Temporarily add context fields, restoring the previous context on exit."""
        previous = dict(self._context)
        self._context.update(kwargs)
        try:
            yield self
        finally:
            self._context = previous

    def _log_with_context(self, level: int, message: str, **kwargs) -> None:
        extra = {**self._context, **kwargs}
        self.logger.log(level, message, extra=extra)

    def debug(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.ERROR, message, **kwargs)

    def exception(self, message: str, **kwargs) -> None:
        """Log at ERROR level with the active exception's traceback."""
        extra = {**self._context, **kwargs}
        self.logger.exception(message, extra=extra)


class LoggingManager:
    """Installs the pipeline's handlers on the root logger."""

    def __init__(self):
        self._configured = False
        self._handlers: List[logging.Handler] = []
        self._loggers: Dict[str, PipelineLogger] = {}

    def configure_logging(self, config: Optional[Dict[str, Any]] = None, force: bool = False) -> None:
        if self._configured and not force:
            return

        if config is None:
            settings = get_settings()
            config = {
                'level': settings.logging.level,
                'format': settings.logging.format,
                'file_path': settings.logging.file_path,
                'max_file_size': settings.logging.max_file_size,
                'backup_count': settings.logging.backup_count,
            }

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, str(config.get('level', 'INFO')).upper()))

        # Only remove handlers this manager installed; leave foreign ones alone
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []

        if str(config.get('format', 'json')).lower() == 'json':
            formatter = JSONFormatter()
        else:
            formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(name)s | %(message)s')

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        self._handlers.append(console_handler)

        if config.get('file_path'):
            file_path = Path(config['file_path'])
            file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                filename=file_path,
                maxBytes=self._parse_file_size(config.get('max_file_size', '10MB')),
                backupCount=config.get('backup_count', 5)
            )
            file_handler.setFormatter(formatter)
            self._handlers.append(file_handler)

        for handler in self._handlers:
            root_logger.addHandler(handler)

        # Driver heartbeats and topology chatter
        logging.getLogger('pymongo').setLevel(logging.WARNING)

        self._configured = True

    def get_logger(self, name: str) -> PipelineLogger:
        if not self._configured:
            self.configure_logging()

        if name not in self._loggers:
            self._loggers[name] = PipelineLogger(name)

        return self._loggers[name]

    @staticmethod
    def _parse_file_size(size_str: str) -> int:
        size_str = str(size_str).upper().strip()

        for unit, multiplier in _SIZE_UNITS.items():
            if size_str.endswith(unit):
                return int(size_str[:-len(unit)]) * multiplier
        return int(size_str)


_logging_manager = LoggingManager()


def configure_logging(config: Optional[Dict[str, Any]] = None, force: bool = False) -> None:
    """Configure logging for the pipeline."""
    _logging_manager.configure_logging(config, force=force)


def get_logger(name: str) -> PipelineLogger:
    """Get a pipeline logger instance."""
    return _logging_manager.get_logger(name)
