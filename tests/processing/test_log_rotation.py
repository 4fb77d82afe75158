"""
Tests for the compressing log file handler.
"""

import gzip
import logging

from spokenkb.utils.logger import RotatingFileHandlerWithCompression


def record(message):
    return logging.LogRecord('spokenkb.test', logging.INFO, __file__, 1, message, None, None)


class TestRotatingFileHandlerWithCompression:
    """Tests for RotatingFileHandlerWithCompression."""

    def test_rollover_compresses_previous_log(self, tmp_path):
        """Rolled-over logs are gzipped and the live file starts empty."""
        path = tmp_path / 'worker.log'
        handler = RotatingFileHandlerWithCompression(str(path), maxBytes=64, backupCount=2)
        try:
            handler.emit(record('first line of the worker log'))
            handler.doRollover()
            handler.emit(record('after rollover'))
        finally:
            handler.close()

        with gzip.open(tmp_path / 'worker.log.1.gz', 'rt') as f:
            assert 'first line of the worker log' in f.read()
        assert path.read_text().strip() == 'after rollover'

    def test_backups_shift(self, tmp_path):
        """Older archives move up one slot on each rollover."""
        path = tmp_path / 'worker.log'
        handler = RotatingFileHandlerWithCompression(str(path), maxBytes=64, backupCount=3)
        try:
            handler.emit(record('one'))
            handler.doRollover()
            handler.emit(record('two'))
            handler.doRollover()
        finally:
            handler.close()

        with gzip.open(tmp_path / 'worker.log.2.gz', 'rt') as f:
            assert f.read().strip() == 'one'
        with gzip.open(tmp_path / 'worker.log.1.gz', 'rt') as f:
            assert f.read().strip() == 'two'
