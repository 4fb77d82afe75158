import gzip
import logging
from logging import handlers
from pathlib import Path
import socket
from typing import Dict, Optional
import os
from datetime import datetime, timezone
import sys

# Cache for loggers to avoid duplicate creation
_logger_cache: Dict[str, logging.Logger] = {}


def load_config():
    """Load config - uses centralized config module."""
    from .config import load_config as _load_config
    return _load_config()


def get_worker_name() -> str:
    """Get the worker name.

    SPOKENKB_WORKER_NAME wins, otherwise the hostname is used.
    """
    name = os.environ.get('SPOKENKB_WORKER_NAME')
    if name:
        return name
    try:
        return socket.gethostname()
    except OSError:
        return "unknown-worker"


class RotatingFileHandlerWithCompression(handlers.RotatingFileHandler):
    """Rotating file handler that compresses old log files"""
    def emit(self, record):
        try:
            # Check if Python is shutting down
            if not sys or not sys.modules:
                return
            super().emit(record)
        except Exception:
            self.handleError(record)

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None
        if self.backupCount > 0:
            for i in range(self.backupCount - 1, 0, -1):
                sfn = self.rotation_filename("%s.%d.gz" % (self.baseFilename, i))
                dfn = self.rotation_filename("%s.%d.gz" % (self.baseFilename, i + 1))
                if os.path.exists(sfn):
                    if os.path.exists(dfn):
                        os.remove(dfn)
                    os.rename(sfn, dfn)
            dfn = self.rotation_filename(self.baseFilename + ".1.gz")
            if os.path.exists(dfn):
                os.remove(dfn)
            # Compress the current log file
            with open(self.baseFilename, 'rb') as f_in:
                with gzip.open(dfn, 'wb') as f_out:
                    f_out.writelines(f_in)
        self.mode = 'w'
        self.stream = self._open()


class WorkerLogFormatter(logging.Formatter):
    """Formatter for worker-level logs: timestamp, worker.component, level, message"""
    def format(self, record):
        try:
            worker_name = get_worker_name()
            timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime('%Y-%m-%d %H:%M:%S')

            # Get logger name without worker prefix
            logger_name = record.name.split('.')[-1] if '.' in record.name else record.name

            message = record.getMessage()
            video_id = getattr(record, 'video_id', None)
            if video_id is not None:
                message = f"[{video_id}] {message}"
            if record.exc_info:
                message = f"{message}\n{self.formatException(record.exc_info)}"

            return f"{timestamp} [{worker_name}.{logger_name}] [{record.levelname}] {message}"
        except Exception:
            return record.getMessage()


def _resolve_log_settings() -> tuple:
    """Return (log_dir, level) from the logging config section."""
    config = load_config()
    logging_config = config.get('logging') or {}
    log_dir = Path(logging_config.get('base_path', 'logs'))
    if not log_dir.is_absolute():
        from .paths import get_project_root
        log_dir = get_project_root() / log_dir
    level = getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO)
    return log_dir, level


def setup_worker_logger(worker_type: str, level: Optional[int] = None) -> logging.Logger:
    """Set up worker-level logger for detailed debug/info messages

    Args:
        worker_type: Component name (e.g. 'orchestrator', 'prosody')
        level: Optional level override; defaults to logging.level from config
    """
    try:
        worker_name = get_worker_name()
        if not worker_type.startswith('worker.'):
            worker_type = f"worker.{worker_type}"

        logger_name = f"spokenkb.{worker_type}"

        # Return cached logger if it exists
        if logger_name in _logger_cache:
            return _logger_cache[logger_name]

        log_dir, configured_level = _resolve_log_settings()

        logger = logging.getLogger(logger_name)
        logger.setLevel(level or configured_level)
        logger.propagate = False

        # Remove any existing handlers
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

        # Ensure the worker directory exists
        worker_log_dir = log_dir / worker_name
        worker_log_dir.mkdir(parents=True, exist_ok=True)

        # Determine the log file name - prepend worker name to file
        log_file_name = f"{worker_name}_{worker_type.replace('worker.', '')}.log"
        log_path = worker_log_dir / log_file_name

        fh = RotatingFileHandlerWithCompression(
            str(log_path),
            maxBytes=10*1024*1024,
            backupCount=5
        )
        fh.setFormatter(WorkerLogFormatter())
        logger.addHandler(fh)

        # Console only shows warnings and above
        ch = logging.StreamHandler()
        ch.setFormatter(WorkerLogFormatter())
        ch.setLevel(logging.WARNING)
        logger.addHandler(ch)

        _logger_cache[logger_name] = logger
        return logger

    except Exception:
        # Fallback to basic console logging
        fallback = logging.getLogger(f"spokenkb.fallback.{worker_type}")
        fallback.setLevel(logging.INFO)
        if not fallback.handlers:
            ch = logging.StreamHandler()
            ch.setFormatter(logging.Formatter('%(asctime)s [%(name)s] %(message)s'))
            fallback.addHandler(ch)
        return fallback
