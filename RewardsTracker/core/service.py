"""Google Sheets record-store transport.

Each collection is a worksheet in one spreadsheet, and each entity is a row:

    ref | id | business_key | last_modified | modified_by | deleted | payload

``ref`` is assigned on first upload and captured back into the entity's
``remote_ref``. ``payload`` holds the entity's domain fields as JSON. Deleted
entities keep their row with ``deleted`` set, so other devices can tell a
deletion from a record they have not seen yet.

Rows are written one request per entity. A failed row never aborts the rest
of the batch; it is reported in :class:`~RewardsTracker.core.remote.PushResult`
and retried on the next cycle.
"""

import hashlib
import json
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from PySide6 import QtCore
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .auth import auth_manager, AuthExpiredError
from .journal import DeletionIntent
from .records import Collection, Entity, Key, Snapshot, format_timestamp, now, parse_timestamp
from .remote import PushResult, RemoteAdapter
from ..status import status

HEADER: List[str] = ['ref', 'id', 'business_key', 'last_modified', 'modified_by', 'deleted', 'payload']
DEFAULT_POLL_INTERVAL = 30


def idx_to_col(idx: int) -> str:
    """Convert zero-based column index to spreadsheet letter(s).

    Args:
        idx: The zero-based column index.

    Returns:
        The spreadsheet column letter(s) (e.g., A, B, AA).
    """
    letters = ''
    while idx >= 0:
        letters = chr((idx % 26) + ord('A')) + letters
        idx = idx // 26 - 1
    return letters


LAST_COL: str = idx_to_col(len(HEADER) - 1)


def _is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes')


def _rows_to_frame(values: List[List[Any]]) -> pd.DataFrame:
    """Build a DataFrame from a worksheet's values, padding ragged rows."""
    if not values:
        return pd.DataFrame(columns=HEADER)
    header = [str(h) for h in values[0]] or HEADER
    width = len(header)
    rows = [list(row[:width]) + [''] * (width - len(row)) for row in values[1:]]
    df = pd.DataFrame(rows, columns=header)
    for column in HEADER:
        if column not in df.columns:
            df[column] = ''
    return df.fillna('')


def _row_to_entity(collection: Collection, row: pd.Series) -> Entity:
    payload = json.loads(row['payload']) if row['payload'] else {}
    if not isinstance(payload, dict):
        raise ValueError(f'payload must be an object, got {type(payload).__name__}')
    return Entity(
        collection=collection,
        id=str(row['id']),
        payload=payload,
        last_modified=parse_timestamp(row['last_modified']),
        remote_ref=str(row['ref']) or None,
        business_key=str(row['business_key'] or ''),
    )


def _fingerprint(frames: Dict[Collection, pd.DataFrame], device_id: str) -> str:
    """Hash the identity and stamps of every row not written by ``device_id``."""
    items = []
    for collection, df in sorted(frames.items()):
        if df.empty:
            continue
        foreign = df[df['modified_by'].astype(str) != device_id]
        for ref, last_modified, modified_by, deleted in foreign[
            ['ref', 'last_modified', 'modified_by', 'deleted']
        ].itertuples(index=False, name=None):
            items.append([collection.value, str(ref), str(last_modified), str(modified_by), _is_true(deleted)])
    items.sort()
    return hashlib.sha256(json.dumps(items).encode('utf-8')).hexdigest()


class FingerprintWorker(QtCore.QThread):
    """
    Computes the remote fingerprint off the GUI thread.

    Signals:
        resultReady (str): Emitted with the fingerprint on success.
        errorOccurred (object): Emitted with the exception on failure.
    """
    resultReady = QtCore.Signal(str)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, func: Callable[[], str], parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.func = func

    def run(self) -> None:
        try:
            self.resultReady.emit(self.func())
        except Exception as ex:
            self.errorOccurred.emit(ex)


class SheetsRecordStore(RemoteAdapter):
    """Remote adapter over a Google Sheets spreadsheet.

    Args:
        spreadsheet_id: The spreadsheet holding one worksheet per collection.
        device_id: This device's identity, written to ``modified_by``.
        poll_interval: Seconds between remote change checks.
        service: A prebuilt Sheets API resource. Built from the stored
            credentials on first use when omitted.
    """

    def __init__(self, spreadsheet_id: str, device_id: str, poll_interval: int = DEFAULT_POLL_INTERVAL,
                 service: Any = None, parent: Optional[QtCore.QObject] = None):
        super().__init__(parent=parent)
        self.spreadsheet_id = spreadsheet_id
        self.device_id = device_id
        self.poll_interval = poll_interval

        self._service = service
        self._service_lock = threading.RLock()
        self._fingerprint: Optional[str] = None
        self._worker: Optional[FingerprintWorker] = None

        self.poll_timer = QtCore.QTimer(self)
        self.poll_timer.setInterval(int(poll_interval * 1000))
        self.poll_timer.timeout.connect(self.on_poll)

    def get_service(self) -> Any:
        """Return the Sheets API resource, building it on first use.

        Raises:
            status.SpreadsheetIdNotConfiguredException: If no spreadsheet id is set.
            status.AuthenticationException: If interactive sign-in is required.
            status.ServiceUnavailableException: If the client cannot be built.
        """
        if not self.spreadsheet_id:
            raise status.SpreadsheetIdNotConfiguredException
        if self._service is not None:
            return self._service

        try:
            creds = auth_manager.get_valid_credentials()
        except AuthExpiredError as ex:
            raise status.AuthenticationException(str(ex)) from ex

        try:
            self._service = build('sheets', 'v4', credentials=creds, cache_discovery=False)
        except Exception as ex:
            raise status.ServiceUnavailableException(str(ex)) from ex
        logging.debug('Google Sheets service client created successfully.')
        return self._service

    def clear_service(self) -> None:
        """Drop the cached client, e.g. after the user signed in again."""
        with self._service_lock:
            self._service = None

    def _worksheet_titles(self, service: Any) -> List[str]:
        result = service.spreadsheets().get(
            spreadsheetId=self.spreadsheet_id,
            fields='sheets(properties(title))'
        ).execute()
        return [s.get('properties', {}).get('title', '') for s in result.get('sheets', [])]

    def _read_frames(self, service: Any) -> Dict[Collection, pd.DataFrame]:
        titles = set(self._worksheet_titles(service))
        present = [c for c in Collection if c.value in titles]
        if not present:
            return {}

        result = service.spreadsheets().values().batchGet(
            spreadsheetId=self.spreadsheet_id,
            ranges=[f'{c.value}!A1:{LAST_COL}' for c in present],
            valueRenderOption='UNFORMATTED_VALUE',
            fields='valueRanges(values)'
        ).execute()

        frames = {}
        for collection, vr in zip(present, result.get('valueRanges', [])):
            frames[collection] = _rows_to_frame(vr.get('values', []))
            logging.debug(f'Read {len(frames[collection])} rows from worksheet "{collection.value}".')
        return frames

    def _read_frames_or_raise(self) -> Dict[Collection, pd.DataFrame]:
        with self._service_lock:
            service = self.get_service()
            try:
                return self._read_frames(service)
            except (HttpError, OSError) as ex:
                raise status.TransportUnavailableException(
                    f'Error reading spreadsheet "{self.spreadsheet_id}": {ex}'
                ) from ex

    def fetch_remote(self) -> Optional[Snapshot]:
        frames = self._read_frames_or_raise()
        if not frames:
            logging.debug(f'Spreadsheet "{self.spreadsheet_id}" has no collection worksheets yet.')
            return None

        snapshot = Snapshot()
        latest = None
        for collection, df in frames.items():
            for _, row in df.iterrows():
                if not row['id'] or _is_true(row['deleted']):
                    continue
                try:
                    entity = _row_to_entity(collection, row)
                except (ValueError, TypeError) as ex:
                    logging.warning(f'Skipping unreadable row {collection}/{row["id"]}: {ex}')
                    continue
                snapshot.add(entity)
                if latest is None or entity.last_modified > latest[0]:
                    latest = (entity.last_modified, str(row['modified_by']))

        if latest:
            snapshot.last_modified, snapshot.last_modified_by = latest
        self._fingerprint = _fingerprint(frames, self.device_id)
        logging.debug(f'Fetched {snapshot!r} from spreadsheet "{self.spreadsheet_id}"')
        return snapshot

    def _ensure_worksheets(self, service: Any, collections: Iterable[Collection]) -> None:
        titles = set(self._worksheet_titles(service))
        missing = sorted({c for c in collections if c.value not in titles})
        if not missing:
            return

        logging.info(f'Creating worksheets: {", ".join(c.value for c in missing)}')
        service.spreadsheets().batchUpdate(
            spreadsheetId=self.spreadsheet_id,
            body={'requests': [{'addSheet': {'properties': {'title': c.value}}} for c in missing]}
        ).execute()
        for collection in missing:
            service.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=f'{collection.value}!A1:{LAST_COL}1',
                valueInputOption='RAW',
                body={'values': [HEADER]}
            ).execute()

    def _row_index(self, frames: Dict[Collection, pd.DataFrame]) -> Dict[Tuple[Collection, str], int]:
        """Map ``(collection, 'ref:'+ref)`` and ``(collection, 'id:'+id)`` to 1-based sheet rows."""
        index = {}
        for collection, df in frames.items():
            for i, (ref, entity_id) in enumerate(df[['ref', 'id']].itertuples(index=False, name=None)):
                row_number = i + 2
                if ref:
                    index.setdefault((collection, f'ref:{ref}'), row_number)
                if entity_id:
                    index.setdefault((collection, f'id:{entity_id}'), row_number)
        return index

    def push_dirty(self, entities: Sequence[Entity], dirty: Iterable[Key],
                   deletions: Sequence[DeletionIntent] = (), snapshot: Optional[Snapshot] = None) -> PushResult:
        """Upload each entity to its own row and flag deleted rows.

        Raises:
            status.TransportUnavailableException: If the spreadsheet cannot be read or prepared.
        """
        result = PushResult()
        if not entities and not deletions:
            return result

        with self._service_lock:
            service = self.get_service()
            try:
                self._ensure_worksheets(service, [e.collection for e in entities])
                frames = self._read_frames(service)
            except (HttpError, OSError) as ex:
                raise status.TransportUnavailableException(
                    f'Error preparing spreadsheet "{self.spreadsheet_id}": {ex}'
                ) from ex
            index = self._row_index(frames)

            for entity in entities:
                try:
                    self._push_entity(service, entity, index, result)
                except (HttpError, OSError) as ex:
                    logging.warning(f'Upload of {entity.collection}/{entity.id} failed: {ex}')
                    result.failed[entity.key] = str(ex)

            for intent in deletions:
                try:
                    self._push_deletion(service, intent, index)
                    result.deleted.add(intent.key)
                except (HttpError, OSError) as ex:
                    logging.warning(f'Deletion of {intent.collection}/{intent.id} failed: {ex}')
                    result.failed[intent.key] = str(ex)

        logging.info(
            f'Pushed {len(result.succeeded)} entities and {len(result.deleted)} deletions '
            f'to spreadsheet "{self.spreadsheet_id}"; {len(result.failed)} failed.'
        )
        return result

    def _push_entity(self, service: Any, entity: Entity, index: Dict, result: PushResult) -> None:
        collection = entity.collection
        row_number = None
        if entity.remote_ref:
            row_number = index.get((collection, f'ref:{entity.remote_ref}'))
        if row_number is None:
            row_number = index.get((collection, f'id:{entity.id}'))

        ref = entity.remote_ref or uuid.uuid4().hex
        values = [[
            ref,
            entity.id,
            entity.business_key,
            format_timestamp(entity.last_modified),
            self.device_id,
            False,
            json.dumps(entity.payload, ensure_ascii=False, default=str),
        ]]

        if row_number is not None:
            service.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=f'{collection.value}!A{row_number}:{LAST_COL}{row_number}',
                valueInputOption='RAW',
                body={'values': values}
            ).execute()
        else:
            service.spreadsheets().values().append(
                spreadsheetId=self.spreadsheet_id,
                range=f'{collection.value}!A1:{LAST_COL}1',
                valueInputOption='RAW',
                insertDataOption='INSERT_ROWS',
                body={'values': values}
            ).execute()

        result.succeeded.add(entity.key)
        if ref != entity.remote_ref:
            result.refs[entity.key] = ref

    def _push_deletion(self, service: Any, intent: DeletionIntent, index: Dict) -> None:
        collection = intent.collection
        row_number = None
        if intent.remote_ref:
            row_number = index.get((collection, f'ref:{intent.remote_ref}'))
        if row_number is None:
            row_number = index.get((collection, f'id:{intent.id}'))
        if row_number is None:
            logging.debug(f'{collection}/{intent.id} was never uploaded; nothing to delete.')
            return

        service.spreadsheets().values().update(
            spreadsheetId=self.spreadsheet_id,
            range=f'{collection.value}!D{row_number}:F{row_number}',
            valueInputOption='RAW',
            body={'values': [[format_timestamp(now()), self.device_id, True]]}
        ).execute()

    def remote_fingerprint(self) -> str:
        """Return a hash of every row written by other devices."""
        return _fingerprint(self._read_frames_or_raise(), self.device_id)

    def watch(self, callback: Optional[Callable[[], None]] = None) -> None:
        super().watch(callback)
        self.poll_timer.start()
        logging.debug(f'Polling spreadsheet "{self.spreadsheet_id}" every {self.poll_interval}s')

    def unwatch(self) -> None:
        super().unwatch()
        self.poll_timer.stop()

    def close(self) -> None:
        self.unwatch()
        if self._worker is not None and self._worker.isRunning():
            self._worker.wait()
        self._worker = None

    @QtCore.Slot()
    def on_poll(self) -> None:
        if self._worker is not None and self._worker.isRunning():
            return
        self._worker = FingerprintWorker(self.remote_fingerprint, parent=self)
        self._worker.resultReady.connect(self.on_fingerprint)
        self._worker.errorOccurred.connect(lambda ex: logging.warning(f'Remote change check failed: {ex}'))
        self._worker.start()

    @QtCore.Slot(str)
    def on_fingerprint(self, fingerprint: str) -> bool:
        """Emit ``remoteChanged`` if rows written by other devices changed.

        Returns:
            bool: True if a change was reported.
        """
        if self._fingerprint is not None and fingerprint == self._fingerprint:
            return False
        first = self._fingerprint is None
        self._fingerprint = fingerprint
        if first:
            return False
        logging.info(f'Detected external change to spreadsheet "{self.spreadsheet_id}"')
        self.remoteChanged.emit()
        return True

    def check_for_changes(self) -> bool:
        """Synchronously compare the remote fingerprint with the last one seen."""
        try:
            fingerprint = self.remote_fingerprint()
        except status.BaseStatusException:
            return False
        return self.on_fingerprint(fingerprint)
