"""Logging configuration for the holdings verifier.

Sets up a dual-handler logging pipeline:

1. **Console** -- :class:`SafeStreamHandler` that falls back to
   replacement characters when the console cannot encode a message.
2. **File** -- :class:`CompressedRotatingFileHandler` writing to
   ``logs/verifier.log`` with automatic gzip rotation (10 MiB per
   file, 5 backups).

Usage::

    from verifier.logging_setup import setup_logging
    setup_logging("DEBUG")
"""

import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that gzip-compresses rotated log files."""

    def rotation_filename(self, default_name: str) -> str:
        """Append ``.gz`` to the rotated file name."""
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        """Compress *source* into *dest* and remove *source*."""
        with open(source, 'rb') as f_in:
            with gzip.open(dest, 'wb') as f_out:
                shutil.copyfileobj(f_in, f_out)
        os.remove(source)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that never raises on unencodable characters.

    Consoles with a narrow code page cannot represent every subject
    name the chat surface hands us.  On :exc:`UnicodeEncodeError` the
    message is re-encoded with replacement characters.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            stream = self.stream
            try:
                stream.write(msg + self.terminator)
            except UnicodeEncodeError:
                encoding = getattr(stream, 'encoding', None) or 'ascii'
                safe_msg = msg.encode(
                    encoding, errors='replace',
                ).decode(encoding)
                stream.write(safe_msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(
    log_level: str = "INFO", log_dir: Optional[str] = "logs",
) -> None:
    """Configure the root logger with console and file handlers.

    Args:
        log_level: Logging level name (e.g. ``"DEBUG"``,
            ``"INFO"``, ``"WARNING"``).  Defaults to ``"INFO"``.
        log_dir: Directory for ``verifier.log``.  ``None`` disables
            the file handler.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers = [SafeStreamHandler(sys.stdout)]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(CompressedRotatingFileHandler(
            os.path.join(log_dir, "verifier.log"),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8',
        ))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
