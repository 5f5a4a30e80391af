"""
Shared-file transport.

The whole snapshot lives in one JSON document inside a folder that an external
agent (a cloud drive client) keeps in sync between machines. This process has
no control over when that agent delivers or replaces the file, so changes are
detected two ways:

- a :class:`QtCore.QFileSystemWatcher` on the file, installed only once the
  file exists and re-armed after every replace, and
- an unconditional polling :class:`QtCore.QTimer` comparing content hashes,
  since the agent may replace the file without a notification ever firing.

Our own writes also trigger notifications. Those are discarded when they
arrive within the suppression window after our write, when the content hash
equals the one we wrote, or when the file's ``lastModifiedBy`` is our device.
"""

import hashlib
import json
import logging
import os
import pathlib
import threading
import time
import uuid
from typing import Callable, Iterable, Optional, Sequence, Union

from PySide6 import QtCore

from .journal import DeletionIntent
from .records import Entity, Key, Snapshot, now
from .remote import PushResult, RemoteAdapter
from ..status import status

DEFAULT_POLL_INTERVAL = 30
DEFAULT_SUPPRESSION_WINDOW = 3.0


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def atomic_write(path: pathlib.Path, data: bytes) -> None:
    """Write ``data`` to ``path`` through a temporary file and a rename.

    Readers see either the old or the new content, never a partial file.

    Raises:
        OSError: If writing or renaming fails. The temporary file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f'.{path.name}.{uuid.uuid4().hex}.tmp')
    try:
        with open(tmp, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


class SharedFileStore(RemoteAdapter):
    """Remote adapter over a single synchronized JSON file.

    Args:
        path: The shared file.
        device_id: This device's identity, written to ``lastModifiedBy``.
        poll_interval: Seconds between polling checks.
        suppression_window: Seconds after our own write during which change
            notifications are discarded.
        clock: Monotonic clock, replaceable in tests.
    """
    written = QtCore.Signal()

    def __init__(self, path: Union[str, pathlib.Path], device_id: str,
                 poll_interval: int = DEFAULT_POLL_INTERVAL,
                 suppression_window: float = DEFAULT_SUPPRESSION_WINDOW,
                 clock: Callable[[], float] = time.monotonic,
                 parent: Optional[QtCore.QObject] = None):
        super().__init__(parent=parent)
        self.path = pathlib.Path(path)
        self.device_id = device_id
        self.poll_interval = poll_interval
        self.suppression_window = suppression_window
        self._clock = clock

        self._lock = threading.Lock()
        self._last_write_time: Optional[float] = None
        self._last_write_hash: Optional[str] = None
        self._last_seen_hash: Optional[str] = None

        self.watcher = QtCore.QFileSystemWatcher(self)
        self.watcher.fileChanged.connect(self.on_file_changed)

        self.poll_timer = QtCore.QTimer(self)
        self.poll_timer.setInterval(int(poll_interval * 1000))
        self.poll_timer.timeout.connect(self.on_poll)

        self.written.connect(self.arm_watcher)

    def _read(self) -> Optional[bytes]:
        if not self.path.exists():
            return None
        with open(self.path, 'rb') as f:
            return f.read()

    def fetch_remote(self) -> Optional[Snapshot]:
        try:
            data = self._read()
        except OSError as ex:
            raise status.TransportUnavailableException(f'Could not read {self.path}: {ex}') from ex

        if data is None:
            logging.debug(f'Shared file {self.path} does not exist yet.')
            return None

        try:
            snapshot = Snapshot.from_json(json.loads(data.decode('utf-8')))
        except (ValueError, UnicodeDecodeError) as ex:
            raise status.TransportUnavailableException(f'Could not parse {self.path}: {ex}') from ex

        with self._lock:
            self._last_seen_hash = content_hash(data)
        logging.debug(f'Fetched {snapshot!r} from {self.path}')
        return snapshot

    def push_dirty(self, entities: Sequence[Entity], dirty: Iterable[Key],
                   deletions: Sequence[DeletionIntent] = (), snapshot: Optional[Snapshot] = None) -> PushResult:
        """Rewrite the whole shared file.

        When ``snapshot`` is omitted the current file content is used as the
        base and ``entities`` are applied on top of it. Success or failure is
        all-or-nothing.

        Raises:
            status.TransportUnavailableException: If the file cannot be written.
        """
        if snapshot is None:
            snapshot = self.fetch_remote() or Snapshot()
            for entity in entities:
                snapshot.add(entity)

        out = snapshot.copy()
        for intent in deletions:
            out.discard(intent.key)
        out.last_modified = now()
        out.last_modified_by = self.device_id

        data = json.dumps(out.to_json(), indent=2, ensure_ascii=False).encode('utf-8')
        digest = content_hash(data)

        with self._lock:
            try:
                atomic_write(self.path, data)
            except OSError as ex:
                raise status.TransportUnavailableException(f'Could not write {self.path}: {ex}') from ex
            self._last_write_time = self._clock()
            self._last_write_hash = digest
            self._last_seen_hash = digest

        logging.info(f'Wrote {len(out)} entities to {self.path}')
        self.written.emit()

        confirmed = {e.key for e in entities} | (set(dirty) & out.ids())
        return PushResult(succeeded=confirmed, deleted={d.key for d in deletions})

    def watch(self, callback: Optional[Callable[[], None]] = None) -> None:
        super().watch(callback)
        if self._last_seen_hash is None:
            try:
                data = self._read()
            except OSError as ex:
                logging.warning(f'Could not read {self.path}: {ex}')
                data = None
            self._last_seen_hash = content_hash(data) if data is not None else None
        self.arm_watcher()
        self.poll_timer.start()
        logging.debug(f'Watching {self.path} (poll every {self.poll_interval}s)')

    def unwatch(self) -> None:
        super().unwatch()
        self.poll_timer.stop()
        files = self.watcher.files()
        if files:
            self.watcher.removePaths(files)

    def close(self) -> None:
        self.unwatch()

    def is_suppressed(self) -> bool:
        """Return True while inside the suppression window after our own write."""
        with self._lock:
            if self._last_write_time is None:
                return False
            return (self._clock() - self._last_write_time) < self.suppression_window

    @QtCore.Slot()
    def arm_watcher(self) -> None:
        """Watch the file if it exists and is not already watched."""
        if self.path.exists() and str(self.path) not in self.watcher.files():
            self.watcher.addPath(str(self.path))

    @QtCore.Slot(str)
    def on_file_changed(self, path: str) -> None:
        self.arm_watcher()
        if self.is_suppressed():
            logging.debug(f'Suppressed change notification for {path} after our own write.')
            return
        self.check_for_changes()

    @QtCore.Slot()
    def on_poll(self) -> None:
        self.arm_watcher()
        if self.is_suppressed():
            return
        self.check_for_changes()

    def check_for_changes(self) -> bool:
        """Compare the file with what we last saw or wrote and report external changes.

        Returns:
            bool: True if ``remoteChanged`` was emitted.
        """
        try:
            data = self._read()
        except OSError as ex:
            logging.warning(f'Could not read {self.path}: {ex}')
            return False
        if data is None:
            return False

        digest = content_hash(data)
        with self._lock:
            if digest == self._last_seen_hash:
                return False
            if digest == self._last_write_hash:
                self._last_seen_hash = digest
                return False

        try:
            document = json.loads(data.decode('utf-8'))
        except (ValueError, UnicodeDecodeError) as ex:
            # Possibly a partial delivery; the next poll reads it again
            logging.warning(f'Shared file {self.path} is not readable yet: {ex}')
            return False

        with self._lock:
            self._last_seen_hash = digest

        if isinstance(document, dict) and document.get('lastModifiedBy') == self.device_id:
            logging.debug(f'Ignoring change to {self.path} written by this device.')
            return False

        logging.info(f'Detected external change to {self.path}')
        self.remoteChanged.emit()
        return True
