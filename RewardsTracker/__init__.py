"""
RewardsTracker: eventually-consistent sync engine for a personal credit-card rewards tracker.

This package provides:

- :mod:`RewardsTracker.core` – The record model, local store, change journal, merge engine, transports and sync orchestrator.
- :mod:`RewardsTracker.settings` – Configuration paths, schema validation and the device identity.
- :mod:`RewardsTracker.status` – Status codes and the exceptions that report them.
- :mod:`RewardsTracker.log` – In-memory logging and the Qt message bridge.

Use :func:`RewardsTracker.exec_` to run the sync engine headless.
"""

import sys

from PySide6 import QtCore

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('RewardsTracker requires Python 3.11 or higher.')

__version__ = '0.1.0'
__description__ = 'RewardsTracker: eventually-consistent sync engine for credit-card rewards data.'

from .log import log

log.setup_logging()


def exec_() -> None:
    """Run the sync engine in a headless Qt event loop until the process is interrupted.

    The engine is closed on exit, flushing any pending local changes.
    """
    import signal
    from .core import engine
    from .settings import lib

    log.setup_logging(log_path=lib.settings.log_path)

    app = QtCore.QCoreApplication(sys.argv)
    signal.signal(signal.SIGINT, lambda *args: app.quit())

    e = engine.build_engine()
    app.aboutToQuit.connect(e.close)
    QtCore.QTimer.singleShot(100, e.start)

    # Wake the interpreter so SIGINT is handled while Qt owns the loop
    timer = QtCore.QTimer()
    timer.timeout.connect(lambda: None)
    timer.start(250)

    sys.exit(app.exec())


if __name__ == '__main__':
    exec_()
