"""
Local SQLite store for the merged record state.

The store is the source of truth whenever no remote is reachable. It holds
the current merged snapshot, its whole-snapshot stamp, the time of the last
successful sync, and (in the same file) the change journal's tables.

Writes of a merged snapshot happen in a single transaction so a crash leaves
either the previous or the new state, never a mix. A store that cannot be read
is recreated empty; the remote repopulates it on the next sync.
"""

import datetime
import enum
import json
import logging
import pathlib
import sqlite3
import threading
import time
from typing import Dict, Iterable, List, Optional, Union

from PySide6 import QtCore

from .records import Collection, Entity, Key, Snapshot, format_timestamp, parse_timestamp, now, SCHEMA_VERSION
from .signals import signals
from ..status import status

META_SCHEMA: Dict[str, str] = {
    'meta_id': 'INTEGER PRIMARY KEY',
    'schema_version': 'INTEGER',
    'last_modified': 'TEXT',
    'last_modified_by': 'TEXT',
    'last_sync': 'TEXT',
    'state': 'TEXT',
    'extra': 'TEXT',
}

ENTITY_SCHEMA: Dict[str, str] = {
    'collection': 'TEXT NOT NULL',
    'id': 'TEXT NOT NULL',
    'business_key': 'TEXT',
    'last_modified': 'TEXT',
    'remote_ref': 'TEXT',
    'payload': 'TEXT',
}

DIRTY_SCHEMA: Dict[str, str] = {
    'collection': 'TEXT NOT NULL',
    'id': 'TEXT NOT NULL',
}

DELETION_SCHEMA: Dict[str, str] = {
    'collection': 'TEXT NOT NULL',
    'id': 'TEXT NOT NULL',
    'business_key': 'TEXT',
    'remote_ref': 'TEXT',
    'deleted_at': 'TEXT',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Meta = 'metatable'
    Entities = 'entities'
    Dirty = 'dirty'
    Deletions = 'deletions'


TABLE_SCHEMAS: Dict[Table, Dict[str, str]] = {
    Table.Meta: META_SCHEMA,
    Table.Entities: ENTITY_SCHEMA,
    Table.Dirty: DIRTY_SCHEMA,
    Table.Deletions: DELETION_SCHEMA,
}

PRIMARY_KEYS: Dict[Table, str] = {
    Table.Entities: 'PRIMARY KEY (collection, id)',
    Table.Dirty: 'PRIMARY KEY (collection, id)',
    Table.Deletions: 'PRIMARY KEY (collection, id)',
}


class CacheState(enum.StrEnum):
    """Enum for local store state values."""
    Uninitialized = 'store was never synced'
    Empty = 'store is empty'
    Error = 'store has error'
    Valid = 'store is valid'


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return format_timestamp(now())


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        collection=Collection(row['collection']),
        id=row['id'],
        payload=json.loads(row['payload'] or '{}'),
        last_modified=parse_timestamp(row['last_modified']),
        remote_ref=row['remote_ref'] or None,
        business_key=row['business_key'] or '',
    )


def _entity_to_row(entity: Entity) -> tuple:
    return (
        entity.collection.value,
        entity.id,
        entity.business_key,
        format_timestamp(entity.last_modified),
        entity.remote_ref,
        json.dumps(entity.payload, ensure_ascii=False, default=str),
    )


class DatabaseAPI(QtCore.QObject):
    """Durable local store for entities, snapshot metadata and the change journal.

    Args:
        db_path: Location of the SQLite file. Defaults to the configured store path.

    Attributes:
        lock (threading.RLock): The single-writer lock. The record API, the
            journal and the orchestrator hold it around every read-modify-write.
    """

    def __init__(self, db_path: Optional[Union[str, pathlib.Path]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        if db_path is None:
            from ..settings import lib
            db_path = lib.settings.db_path
        self.db_path = pathlib.Path(db_path)
        self.lock = threading.RLock()

        with self.lock:
            self._initialize_schema_if_needed()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the store database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=2.0)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    def _schema_is_valid(self, conn: sqlite3.Connection) -> bool:
        for table, schema in TABLE_SCHEMAS.items():
            if not self._table_exists_in_conn(conn, table.value):
                logging.warning(f'Table "{table.value}" is missing.')
                return False
            cursor = conn.execute(f'PRAGMA table_info({table.value})')
            current_columns = {row[1] for row in cursor.fetchall()}
            missing = set(schema) - current_columns
            if missing:
                logging.warning(f'Table "{table.value}" is missing columns: {missing}.')
                return False
        return True

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        for table, schema in TABLE_SCHEMAS.items():
            conn.execute(f'DROP TABLE IF EXISTS {table.value}')
            cols = [f'"{name}" {typedef}' for name, typedef in schema.items()]
            if table in PRIMARY_KEYS:
                cols.append(PRIMARY_KEYS[table])
            conn.execute(f'CREATE TABLE {table.value} ({", ".join(cols)})')

        conn.execute(
            f'INSERT INTO {Table.Meta.value} (meta_id, schema_version, state) VALUES (1, ?, ?)',
            (SCHEMA_VERSION, CacheState.Uninitialized.name)
        )

    def _initialize_schema_if_needed(self) -> None:
        """Ensure the database file and all tables exist with the expected columns.

        An unreadable file is deleted and recreated.
        """
        db_file_exists = self.db_path.exists()
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            if db_file_exists and self._schema_is_valid(conn):
                logging.debug('Existing store schema is valid.')
                return

            logging.info(f'Creating store schema in {self.db_path} (existed: {db_file_exists}).')
            with conn:
                self._create_schema(conn)
        except sqlite3.DatabaseError as ex:
            if conn:
                conn.close()
                conn = None
            self._recover(ex)
        finally:
            if conn:
                conn.close()

    def _recover(self, ex: Exception) -> None:
        logging.error(f'{status.get_message(status.Status.LocalStoreCorrupt)} ({ex})')
        signals.error.emit(status.get_message(status.Status.LocalStoreCorrupt))

        self.delete()
        conn = self.connection()
        try:
            with conn:
                self._create_schema(conn)
        finally:
            conn.close()

    def load_all(self) -> Snapshot:
        """Load the merged snapshot.

        Returns:
            Snapshot: The stored snapshot, or an empty one if the store was
            unreadable and had to be recreated.
        """
        with self.lock:
            conn: Optional[sqlite3.Connection] = None
            try:
                conn = self.connection()
                meta = conn.execute(
                    f'SELECT schema_version, last_modified, last_modified_by, extra '
                    f'FROM {Table.Meta.value} WHERE meta_id=1'
                ).fetchone()
                rows = conn.execute(f'SELECT * FROM {Table.Entities.value}').fetchall()
            except sqlite3.DatabaseError as ex:
                if conn:
                    conn.close()
                    conn = None
                self._recover(ex)
                return Snapshot()
            finally:
                if conn:
                    conn.close()

            entities = []
            for row in rows:
                try:
                    entities.append(_row_to_entity(row))
                except (ValueError, TypeError) as ex:
                    logging.warning(f'Skipping unreadable row {row["collection"]}/{row["id"]}: {ex}')

            if not meta:
                return Snapshot(entities)

            try:
                extra = json.loads(meta['extra']) if meta['extra'] else {}
            except ValueError:
                extra = {}
            return Snapshot(
                entities,
                schema_version=meta['schema_version'] or SCHEMA_VERSION,
                last_modified=parse_timestamp(meta['last_modified']) if meta['last_modified'] else None,
                last_modified_by=meta['last_modified_by'] or '',
                extra=extra,
            )

    def save_all(self, snapshot: Snapshot, clear_dirty: Iterable[Key] = (),
                 rename_dirty: Optional[Dict[Key, Key]] = None) -> None:
        """Replace every stored entity and the snapshot stamp in one transaction.

        The dirty-set changes that go with a merge are written in the same
        transaction, so a dirty mark always follows the entity it protects.

        Args:
            snapshot: The entities to store.
            clear_dirty: Keys whose dirty marks are dropped.
            rename_dirty: Dirty marks to move from an old key to a new one.
                Keys that are not dirty are skipped.

        Raises:
            sqlite3.Error: If the write fails. The previous state is kept.
        """
        with self.lock:
            conn = self.connection()
            try:
                with conn:
                    conn.execute(f'DELETE FROM {Table.Entities.value}')
                    conn.executemany(
                        f'INSERT INTO {Table.Entities.value} '
                        f'(collection, id, business_key, last_modified, remote_ref, payload) '
                        f'VALUES (?, ?, ?, ?, ?, ?)',
                        [_entity_to_row(e) for e in snapshot]
                    )
                    conn.execute(
                        f'UPDATE {Table.Meta.value} SET schema_version=?, last_modified=?, '
                        f'last_modified_by=?, extra=? WHERE meta_id=1',
                        (
                            snapshot.schema_version,
                            format_timestamp(snapshot.last_modified),
                            snapshot.last_modified_by,
                            json.dumps(snapshot.extra, ensure_ascii=False, default=str),
                        )
                    )
                    self._update_dirty(conn, clear_dirty, rename_dirty or {})
            except sqlite3.Error as ex:
                logging.error(f'Failed to save snapshot: {ex}')
                raise
            finally:
                conn.close()
            logging.debug(f'Saved {len(snapshot)} entities to the local store.')

    @staticmethod
    def _update_dirty(conn: sqlite3.Connection, clear: Iterable[Key], rename: Dict[Key, Key]) -> None:
        delete = f'DELETE FROM {Table.Dirty.value} WHERE collection=? AND id=?'
        conn.executemany(delete, [(Collection(c).value, i) for c, i in clear])
        for (old_collection, old_id), (new_collection, new_id) in rename.items():
            if conn.execute(delete, (Collection(old_collection).value, old_id)).rowcount:
                conn.execute(
                    f'INSERT OR IGNORE INTO {Table.Dirty.value} (collection, id) VALUES (?, ?)',
                    (Collection(new_collection).value, new_id)
                )

    def put(self, entity: Entity) -> None:
        """Insert or replace a single entity."""
        with self.lock:
            conn = self.connection()
            try:
                with conn:
                    conn.execute(
                        f'INSERT OR REPLACE INTO {Table.Entities.value} '
                        f'(collection, id, business_key, last_modified, remote_ref, payload) '
                        f'VALUES (?, ?, ?, ?, ?, ?)',
                        _entity_to_row(entity)
                    )
            finally:
                conn.close()

    def remove(self, collection: Collection, entity_id: str) -> None:
        with self.lock:
            conn = self.connection()
            try:
                with conn:
                    conn.execute(
                        f'DELETE FROM {Table.Entities.value} WHERE collection=? AND id=?',
                        (Collection(collection).value, entity_id)
                    )
            finally:
                conn.close()

    def get(self, collection: Collection, entity_id: str) -> Optional[Entity]:
        with self.lock:
            conn = self.connection()
            try:
                row = conn.execute(
                    f'SELECT * FROM {Table.Entities.value} WHERE collection=? AND id=?',
                    (Collection(collection).value, entity_id)
                ).fetchone()
            finally:
                conn.close()
        return _row_to_entity(row) if row else None

    def list(self, collection: Collection) -> List[Entity]:
        with self.lock:
            conn = self.connection()
            try:
                rows = conn.execute(
                    f'SELECT * FROM {Table.Entities.value} WHERE collection=? ORDER BY id',
                    (Collection(collection).value,)
                ).fetchall()
            finally:
                conn.close()
        return [_row_to_entity(row) for row in rows]

    def verify(self) -> None:
        """Check the store and record its state in the metadata table.

        Raises:
            status.LocalStoreCorruptException: If the schema or metadata row is invalid.
        """
        with self.lock:
            conn: Optional[sqlite3.Connection] = None
            try:
                conn = self.connection()
                if not self._schema_is_valid(conn):
                    raise status.LocalStoreCorruptException('Store schema is invalid.')

                meta_row = conn.execute(
                    f'SELECT last_sync FROM {Table.Meta.value} WHERE meta_id=1'
                ).fetchone()
                if not meta_row:
                    raise status.LocalStoreCorruptException(f'Metadata entry missing in "{Table.Meta.value}".')

                count = conn.execute(f'SELECT COUNT(*) FROM {Table.Entities.value}').fetchone()[0]
                if not meta_row['last_sync']:
                    state = CacheState.Uninitialized
                elif count == 0:
                    state = CacheState.Empty
                else:
                    state = CacheState.Valid

                with conn:
                    conn.execute(f'UPDATE {Table.Meta.value} SET state=? WHERE meta_id=1', (state.name,))
                logging.debug(f'Store verified: {state.value}, {count} entities.')
            except sqlite3.DatabaseError as ex:
                raise status.LocalStoreCorruptException(f'SQLite error verifying store: {ex}') from ex
            finally:
                if conn:
                    conn.close()

    def get_state(self) -> CacheState:
        """Return the state recorded by the last :meth:`verify`, or ``Error`` if unreadable."""
        with self.lock:
            conn: Optional[sqlite3.Connection] = None
            try:
                conn = self.connection()
                row = conn.execute(f'SELECT state FROM {Table.Meta.value} WHERE meta_id=1').fetchone()
            except sqlite3.DatabaseError as ex:
                logging.warning(f'Could not read store state: {ex}')
                return CacheState.Error
            finally:
                if conn:
                    conn.close()

        if not row or not row['state']:
            return CacheState.Error
        try:
            return CacheState[row['state']]
        except KeyError:
            logging.warning(f'Invalid state value "{row["state"]}" found in database.')
            return CacheState.Error

    def stamp(self, when: Optional[datetime.datetime] = None) -> None:
        """Record the time of the last successful sync."""
        with self.lock:
            conn = self.connection()
            try:
                with conn:
                    conn.execute(
                        f'UPDATE {Table.Meta.value} SET last_sync=? WHERE meta_id=1',
                        (format_timestamp(when) if when else now_str(),)
                    )
            finally:
                conn.close()

    def get_stamp(self) -> Optional[datetime.datetime]:
        """Return the time of the last successful sync, or None if never synced."""
        with self.lock:
            conn = self.connection()
            try:
                row = conn.execute(f'SELECT last_sync FROM {Table.Meta.value} WHERE meta_id=1').fetchone()
            finally:
                conn.close()
        if row and row['last_sync']:
            return parse_timestamp(row['last_sync'])
        return None

    def delete(self) -> None:
        """Delete the database file, retrying on failure.

        Raises:
            status.LocalStoreCorruptException: If the file cannot be removed after retries.
        """
        if not self.db_path.exists():
            logging.debug('No store database found to delete.')
            return

        max_attempts = 5
        wait_seconds = 0.2

        for attempt in range(1, max_attempts + 1):
            try:
                self.db_path.unlink()
                logging.info(f'Store database removed: {self.db_path}')
                return
            except OSError as ex:
                logging.error(f'Error removing store DB (attempt {attempt}/{max_attempts}): {ex}')
                if attempt == max_attempts:
                    raise status.LocalStoreCorruptException(
                        f'Failed to remove store DB {self.db_path} after {max_attempts} attempts: {ex}'
                    ) from ex
                time.sleep(wait_seconds)
                wait_seconds *= 1.5
