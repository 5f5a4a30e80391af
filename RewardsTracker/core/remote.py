"""
The remote adapter contract shared by every transport.

A transport fetches the remote snapshot, pushes dirty entities and deletion
intents, and reports externally-originated changes through ``remoteChanged``.
Transport errors are raised as :class:`~RewardsTracker.status.status.TransportUnavailableException`
when a whole operation failed, or reported per entity in :class:`PushResult`.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional, Sequence, Set

from PySide6 import QtCore

from .journal import DeletionIntent
from .records import Entity, Key, Snapshot


@dataclass
class PushResult:
    """Per-entity outcome of :meth:`RemoteAdapter.push_dirty`.

    Attributes:
        succeeded: Keys whose upload the remote confirmed.
        failed: Keys whose upload failed, mapped to the error message.
        refs: Remote refs assigned to entities during this push.
        deleted: Keys whose deletion the remote confirmed.
    """
    succeeded: Set[Key] = field(default_factory=set)
    failed: Dict[Key, str] = field(default_factory=dict)
    refs: Dict[Key, str] = field(default_factory=dict)
    deleted: Set[Key] = field(default_factory=set)

    @property
    def ok(self) -> bool:
        return not self.failed


class RemoteAdapter(QtCore.QObject):
    """Base class for transports.

    Signals:
        remoteChanged (): Emitted when the remote changed outside this process.
    """
    remoteChanged = QtCore.Signal()

    def __init__(self, parent: Optional[QtCore.QObject] = None):
        super().__init__(parent=parent)
        self._callback: Optional[Callable[[], None]] = None

    def fetch_remote(self) -> Optional[Snapshot]:
        """Return the remote snapshot, or None if the remote was never initialized.

        Raises:
            status.TransportUnavailableException: If the remote cannot be read.
        """
        raise NotImplementedError('Abstract method must be implemented by subclass.')

    def push_dirty(self, entities: Sequence[Entity], dirty: Iterable[Key],
                   deletions: Sequence[DeletionIntent] = (), snapshot: Optional[Snapshot] = None) -> PushResult:
        """Upload dirty entities and apply deletion intents.

        Args:
            entities: Entities to upload.
            dirty: The journal's dirty keys at the time of the push.
            deletions: Deletion intents to propagate.
            snapshot: The full merged snapshot, for transports that rewrite it wholesale.

        Raises:
            status.TransportUnavailableException: If nothing could be pushed.
        """
        raise NotImplementedError('Abstract method must be implemented by subclass.')

    def watch(self, callback: Optional[Callable[[], None]] = None) -> None:
        """Start reporting external changes, optionally to ``callback``."""
        self.unwatch()
        if callback is not None:
            self._callback = callback
            self.remoteChanged.connect(callback)

    def unwatch(self) -> None:
        if self._callback is not None:
            self.remoteChanged.disconnect(self._callback)
            self._callback = None

    def close(self) -> None:
        self.unwatch()
