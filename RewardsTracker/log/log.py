"""Logging for the sync engine.

Everything logs through the root logger. :func:`setup_logging` installs an
optional stdout handler, an optional rotating log file, and the in-memory
:class:`TankHandler` that keeps recent sync history browsable. Qt's own
messages can be routed into the same handlers.
"""
import collections
import logging
import logging.handlers
import pathlib
import sys
from typing import Optional, Union

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

from ..core.signals import signals

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

TANK_SIZE = 10_000
LOG_FILE_MAX_BYTES = 1_048_576
LOG_FILE_BACKUP_COUNT = 5

VALID_LEVELS = (logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL)

QT_LEVELS = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}


def set_logging_level(level):
    """
    Change the level of the root logger and every installed handler.

    Args:
        level (int): One of the standard logging levels.

    Raises:
        ValueError: If ``level`` is not a standard logging level.
    """
    if not isinstance(level, int) or isinstance(level, bool):
        raise ValueError('Logging level must be an integer.')
    if level not in VALID_LEVELS:
        raise ValueError('Invalid logging level. Use one of the standard logging levels, e.g., logging.DEBUG.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """Forward a Qt message to the ``Qt`` logger. Fatal messages exit the process."""
    level = QT_LEVELS.get(mode, logging.INFO)
    logging.getLogger('Qt').log(level, message.strip())
    if mode == QtMsgType.QtFatalMsg:
        sys.exit(1)


def _file_handler(path: pathlib.Path, formatter: logging.Formatter, level: int) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding='utf-8',
    )
    handler.setFormatter(formatter)
    handler.setLevel(level)
    return handler


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL,
                  log_path: Optional[Union[str, pathlib.Path]] = None):
    """
    Replace the root logger's handlers with the engine's.

    Args:
        enable_stream_handler (bool): Log to stdout.
        enable_qt_handler (bool): Route Qt's own messages through Python logging.
        log_level (int): Level for the root logger and every installed handler.
        log_path (str | pathlib.Path, optional): Also write a rotating log file here.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers = []

    if enable_stream_handler:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_path:
        handlers.append(_file_handler(pathlib.Path(log_path), formatter, log_level))
    handlers.append(TankHandler())

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


def get_tank():
    """Return the TankHandler installed on the root logger, or None."""
    return next((h for h in logging.getLogger().handlers if isinstance(h, TankHandler)), None)


class TankHandler(logging.Handler):
    """
    Keeps the most recent formatted records in memory.

    Records at ERROR or above are also announced through
    ``signals.logErrorRecorded`` so a listener can surface failed syncs.

    Attributes:
        tank (collections.deque[tuple[int, str, str]]): Level, module and
            formatted message of each kept record, oldest first.
    """

    def __init__(self, maxlen=TANK_SIZE):
        super().__init__()
        self.tank = collections.deque(maxlen=maxlen)

    def emit(self, record):
        try:
            message = self.format(record)
            self.tank.append((record.levelno, record.module, message))
            if record.levelno >= logging.ERROR:
                signals.logErrorRecorded.emit(message)
        except (Exception, KeyboardInterrupt):
            self.handleError(record)

    def get_logs(self, level=logging.NOTSET, module=None):
        """
        Return kept messages at or above ``level``.

        Args:
            level (int, optional): Minimum level. Defaults to logging.NOTSET.
            module (str, optional): Only messages logged from this module, e.g. ``'sync'``.

        Returns:
            list[str]: Formatted messages, oldest first.
        """
        return [
            msg for lvl, mod, msg in self.tank
            if lvl >= level and (module is None or mod == module)
        ]

    def clear_logs(self):
        self.tank.clear()
