"""Sync orchestrator: drives reconciliation cycles and reports sync status.

A cycle always runs in this order::

    Fetching -> Merging -> Persisting -> Uploading -> Idle

and enters ``Error`` (then ``Idle``) from any step that fails. Fetching and
uploading happen outside the store lock so local edits stay responsive; the
merge and persist steps hold it, so they never interleave with a record
mutation.

Cycles are triggered at startup, by local mutations once the debounce window
passes without another mutation, by :meth:`SyncAPI.sync_now`, and by the
remote adapter's ``remoteChanged``. Only one cycle runs at a time. Triggers
that arrive while a cycle runs collapse into a single follow-up cycle.

No public method raises. Failures end up in :attr:`SyncStatus.last_error`
and the local store keeps serving its last merged state.
"""
import dataclasses
import datetime
import enum
import logging
import sqlite3
import threading
from typing import Dict, List, Optional

from PySide6 import QtCore

from .database import DatabaseAPI
from .journal import JournalAPI
from .merge import MergeResult, merge, merge_snapshot_lww
from .records import Key, Snapshot, now
from .remote import PushResult, RemoteAdapter
from .signals import signals
from ..status import status

DEFAULT_DEBOUNCE_MS = 1000


class SyncState(enum.StrEnum):
    """Steps of a reconciliation cycle."""
    Idle = 'idle'
    Fetching = 'fetching'
    Merging = 'merging'
    Persisting = 'persisting'
    Uploading = 'uploading'
    Error = 'error'


class Granularity(enum.StrEnum):
    """Merge policy applied to every transport."""
    Entity = 'entity'
    Snapshot = 'snapshot'


@dataclasses.dataclass
class SyncStatus:
    """Process-wide sync status. Never persisted."""
    in_progress: bool = False
    last_success: Optional[datetime.datetime] = None
    last_error: Optional[str] = None


@dataclasses.dataclass
class CycleReport:
    """Summary of one reconciliation cycle."""
    generation: int
    trigger: str
    fetched: int = 0
    merged: int = 0
    uploaded: int = 0
    deleted: int = 0
    superseded: int = 0
    failed: Dict[Key, str] = dataclasses.field(default_factory=dict)
    warnings: List[str] = dataclasses.field(default_factory=list)
    error: Optional[str] = None
    discarded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.discarded


class SyncWorker(QtCore.QThread):
    """
    Runs one reconciliation cycle off the GUI thread.

    Signals:
        cycleDone (object): Emitted with the :class:`CycleReport`.
    """
    cycleDone = QtCore.Signal(object)

    def __init__(self, api: 'SyncAPI', generation: int, trigger: str,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.api = api
        self.generation = generation
        self.trigger = trigger

    def run(self) -> None:
        self.cycleDone.emit(self.api.execute(self.generation, self.trigger))


class SyncAPI(QtCore.QObject):
    """Owns every piece of sync state for one process.

    Args:
        store: The local store.
        journal: The change journal.
        adapter: The remote transport.
        device_id: This device's identity.
        debounce_ms: Quiet period after the last local mutation before a cycle runs.
        granularity: ``'entity'`` or ``'snapshot'`` merge policy.
        threaded: Run cycles in a worker thread. Inline otherwise.

    Signals:
        statusChanged (object): Emitted with a copy of the :class:`SyncStatus`.
        stateChanged (str): Emitted with the :class:`SyncState` value.
        cycleFinished (object): Emitted with the :class:`CycleReport` of every cycle.
    """
    statusChanged = QtCore.Signal(object)
    stateChanged = QtCore.Signal(str)
    cycleFinished = QtCore.Signal(object)

    def __init__(self, store: DatabaseAPI, journal: JournalAPI, adapter: RemoteAdapter, device_id: str,
                 debounce_ms: int = DEFAULT_DEBOUNCE_MS, granularity: str = Granularity.Entity,
                 threaded: bool = True, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.store = store
        self.journal = journal
        self.adapter = adapter
        self.device_id = device_id
        self.granularity = Granularity(granularity)
        self.threaded = threaded

        self._status = SyncStatus()
        self._state = SyncState.Idle
        self._status_lock = threading.Lock()
        self._cycle_lock = threading.Lock()

        self._generation = 0
        self._running = False
        self._follow_up = False
        self._closed = False
        self._started = False
        self._worker: Optional[SyncWorker] = None

        #: Number of finished cycles, discarded ones included.
        self.cycles = 0

        self._debounce = QtCore.QTimer(self)
        self._debounce.setSingleShot(True)
        self._debounce.setInterval(debounce_ms)
        self._debounce.timeout.connect(self.on_debounce_elapsed)

    @property
    def status(self) -> SyncStatus:
        with self._status_lock:
            return dataclasses.replace(self._status)

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_pending(self) -> bool:
        """True while a debounced cycle is waiting for its window to elapse."""
        return self._debounce.isActive()

    def _publish_status(self, **changes) -> None:
        with self._status_lock:
            self._status = dataclasses.replace(self._status, **changes)
            current = dataclasses.replace(self._status)
        self.statusChanged.emit(current)
        signals.syncStatusChanged.emit(current)

    def _set_state(self, state: SyncState) -> None:
        self._state = state
        logging.debug(f'Sync state: {state.value}')
        self.stateChanged.emit(state.value)

    def start(self) -> None:
        """Subscribe to remote changes and run the startup cycle."""
        if self._closed or self._started:
            return
        self._started = True
        self.adapter.watch(self.on_remote_changed)
        signals.syncRequested.connect(self.sync_now)
        self._request('startup')

    @QtCore.Slot()
    @QtCore.Slot(str, str)
    def schedule(self, *args) -> None:
        """Restart the debounce window after a local mutation."""
        if self._closed:
            return
        self._debounce.start()

    @QtCore.Slot()
    def sync_now(self) -> None:
        """Run a cycle as soon as possible, skipping any pending debounce."""
        self._debounce.stop()
        self._request('manual')

    @QtCore.Slot()
    def on_remote_changed(self) -> None:
        self._request('remote')

    @QtCore.Slot()
    def on_debounce_elapsed(self) -> None:
        self._request('debounce')

    def _request(self, trigger: str) -> None:
        if self._closed:
            return
        if self._running:
            logging.debug(f'Cycle in progress; queuing a follow-up ({trigger}).')
            self._follow_up = True
            return
        self._begin(trigger)

    def _begin(self, trigger: str) -> None:
        self._running = True
        self._generation += 1
        generation = self._generation
        self._publish_status(in_progress=True)
        logging.debug(f'Starting sync cycle {generation} ({trigger}).')

        if self.threaded:
            self._worker = SyncWorker(self, generation, trigger, parent=self)
            self._worker.cycleDone.connect(self.on_cycle_done)
            self._worker.start()
        else:
            self.on_cycle_done(self.execute(generation, trigger))

    @QtCore.Slot(object)
    def on_cycle_done(self, report: CycleReport) -> None:
        if self._worker is not None:
            self._worker.wait()
            self._worker.deleteLater()
            self._worker = None
        self._running = False
        self._finish(report)

        if self._follow_up and not self._closed:
            self._follow_up = False
            self._begin('follow-up')

    def _finish(self, report: CycleReport) -> None:
        self.cycles += 1
        if report.discarded:
            self._publish_status(in_progress=self._running)
        elif report.error:
            self._publish_status(in_progress=self._running, last_error=report.error)
        else:
            self._publish_status(in_progress=self._running, last_success=now(), last_error=None)
        self.cycleFinished.emit(report)

    def run_cycle(self, trigger: str = 'manual') -> CycleReport:
        """Run one cycle synchronously in the calling thread.

        A cycle already running in the worker is allowed to finish but its
        results are discarded.

        Returns:
            CycleReport: The cycle's summary.
        """
        self._generation += 1
        generation = self._generation
        self._publish_status(in_progress=True)
        report = self.execute(generation, trigger)
        self._finish(report)
        return report

    def close(self, flush: bool = True) -> None:
        """Stop timers and watching, and flush a pending debounced cycle.

        Args:
            flush: Run a final cycle if a debounced or follow-up cycle was pending.
        """
        if self._closed:
            return

        pending = self._debounce.isActive() or self._follow_up
        self._debounce.stop()
        self._follow_up = False
        if self._started:
            signals.syncRequested.disconnect(self.sync_now)
        self.adapter.unwatch()

        if self._worker is not None:
            self._worker.wait()

        if flush and pending:
            logging.info('Flushing pending changes before shutdown.')
            self.run_cycle('shutdown')

        self._closed = True
        self.adapter.close()
        logging.debug('Sync orchestrator closed.')

    @staticmethod
    def _without_deleted(remote: Optional[Snapshot], deletions) -> Optional[Snapshot]:
        if remote is None or not deletions:
            return remote
        remote = remote.copy()
        refs = {d.remote_ref for d in deletions if d.remote_ref}
        for intent in deletions:
            remote.discard(intent.key)
        for entity in list(remote):
            if entity.remote_ref and entity.remote_ref in refs:
                remote.discard(entity.key)
        return remote

    @staticmethod
    def _deleted_twins(remote: Optional[Snapshot], local: Snapshot, deletions) -> List[tuple]:
        """Pair each deletion intent with remote records sharing its business key.

        Remote records still present locally, or sharing a business key with
        a local record, are skipped. So are records already queued for
        deletion and ``id:`` fallback keys.

        Returns:
            list[tuple[Entity, DeletionIntent]]: The remote twin and the intent it matched.
        """
        if remote is None or not deletions:
            return []
        by_business_key = {
            (d.collection, d.business_key): d
            for d in deletions
            if d.business_key and not d.business_key.startswith('id:')
        }
        queued = {d.key for d in deletions}
        kept = {(e.collection, e.business_key) for e in local}
        twins = []
        for entity in remote:
            intent = by_business_key.get((entity.collection, entity.business_key))
            if intent is None or entity.key in queued or entity.key in local:
                continue
            if (entity.collection, entity.business_key) in kept:
                continue
            twins.append((entity, intent))
        return twins

    def _merge(self, local: Snapshot, remote: Optional[Snapshot], dirty) -> MergeResult:
        if self.granularity == Granularity.Snapshot:
            return merge_snapshot_lww(local, remote, self.device_id, dirty)
        return merge(local, remote, dirty)

    def _apply_push(self, push: PushResult, versions: Dict[Key, datetime.datetime]) -> None:
        with self.store.lock:
            confirmed = []
            for key in push.succeeded:
                current = self.store.get(*key)
                # Keep the dirty mark if the entity was edited again during the upload
                if current is None or current.last_modified == versions.get(key, current.last_modified):
                    confirmed.append(key)
            self.journal.clear(confirmed)

            for key, ref in push.refs.items():
                current = self.store.get(*key)
                if current is not None and current.remote_ref != ref:
                    self.store.put(current.copy(remote_ref=ref))

            self.journal.clear_deletions(push.deleted)

    def execute(self, generation: int, trigger: str) -> CycleReport:
        """Run the cycle steps and return a report. Never raises."""
        report = CycleReport(generation=generation, trigger=trigger)
        with self._cycle_lock:
            try:
                self._set_state(SyncState.Fetching)
                remote = self.adapter.fetch_remote()
                report.fetched = len(remote) if remote is not None else 0

                self._set_state(SyncState.Merging)
                with self.store.lock:
                    if generation != self._generation:
                        logging.debug(f'Discarding results of superseded cycle {generation}.')
                        report.discarded = True
                        return report

                    local = self.store.load_all()
                    dirty = self.journal.dirty()
                    deletions = self.journal.deletions()
                    twins = self._deleted_twins(remote, local, deletions)
                    for twin, intent in twins:
                        logging.info(
                            f'Deleting remote {twin.collection}/{twin.id}: same record as the '
                            f'deleted {intent.collection}/{intent.id}.'
                        )
                        self.journal.enqueue_deletion(twin, deleted_at=intent.deleted_at)
                    if twins:
                        deletions = self.journal.deletions()

                    result = self._merge(local, self._without_deleted(remote, deletions), dirty)
                    report.warnings = list(result.warnings)
                    report.merged = len(result.merged)
                    report.superseded = len(result.superseded)

                    self._set_state(SyncState.Persisting)
                    self.store.save_all(
                        result.merged, clear_dirty=result.superseded, rename_dirty=result.renamed
                    )
                    dirty = self.journal.dirty()

                versions = {e.key: e.last_modified for e in result.merged}
                versions.update({e.key: e.last_modified for e in result.to_upload})

                if result.to_upload or deletions:
                    self._set_state(SyncState.Uploading)
                    push = self.adapter.push_dirty(
                        result.to_upload, dirty, deletions=deletions, snapshot=result.merged
                    )
                    self._apply_push(push, versions)
                    report.uploaded = len(push.succeeded)
                    report.deleted = len(push.deleted)
                    report.failed = dict(push.failed)

                self.store.stamp()

                if report.failed:
                    raise status.TransportPartialFailureException(
                        f'{len(report.failed)} of {len(result.to_upload) + len(deletions)} change(s) failed.'
                    )
                logging.info(
                    f'Sync cycle {generation} ({trigger}) done: fetched {report.fetched}, '
                    f'merged {report.merged}, uploaded {report.uploaded}, deleted {report.deleted}.'
                )
            except status.BaseStatusException as ex:
                report.error = str(ex)
                self._set_state(SyncState.Error)
            except sqlite3.Error as ex:
                logging.error(f'Local store error during sync: {ex}')
                report.error = f'Local store error: {ex}'
                self._set_state(SyncState.Error)
            except Exception as ex:
                logging.error(f'Unexpected error during sync: {ex}', exc_info=True)
                report.error = f'Unexpected error: {ex}'
                self._set_state(SyncState.Error)
            finally:
                self._set_state(SyncState.Idle)
        return report
