"""Application-wide Qt signals for RewardsTracker.

Services never hold references to each other's presentation layer; they emit
on the shared :data:`signals` object and whoever owns the UI thread connects
to it. Cross-thread emissions are queued by Qt onto the receiver's thread.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for config, record and sync events."""
    configSectionChanged = QtCore.Signal(str)

    # Record model
    recordsChanged = QtCore.Signal(str)  # collection name
    localMutation = QtCore.Signal(str, str)  # collection name, entity id

    # Sync lifecycle
    syncRequested = QtCore.Signal()
    syncStatusChanged = QtCore.Signal(object)  # SyncStatus

    catalogChanged = QtCore.Signal()

    logErrorRecorded = QtCore.Signal(str)
    error = QtCore.Signal(str)


signals = Signals()
