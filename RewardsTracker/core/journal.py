"""
Change journal: dirty tracking and deletion intents.

An entity is dirty from its first local mutation until the remote adapter
confirms its upload. Deletions are queued as intents carrying enough identity
(id, business key, remote ref) for the adapter to find the remote record.
Both live in the local store's database so they survive restarts.
"""

import datetime
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from .database import DatabaseAPI, Table
from .records import Collection, Entity, Key, format_timestamp, parse_timestamp, now


@dataclass(frozen=True)
class DeletionIntent:
    """A local deletion that has not yet been confirmed by the remote."""
    collection: Collection
    id: str
    business_key: str
    remote_ref: Optional[str]
    deleted_at: datetime.datetime

    @property
    def key(self) -> Key:
        return self.collection, self.id


class JournalAPI:
    """Persisted dirty set and deletion queue.

    Every method takes the store's lock, so journal updates are serialized
    with the record API and the orchestrator's persist step.
    """

    def __init__(self, store: DatabaseAPI):
        self.store = store

    @property
    def lock(self):
        return self.store.lock

    def mark_dirty(self, key: Key) -> None:
        collection, entity_id = key
        with self.lock:
            conn = self.store.connection()
            try:
                with conn:
                    conn.execute(
                        f'INSERT OR IGNORE INTO {Table.Dirty.value} (collection, id) VALUES (?, ?)',
                        (Collection(collection).value, entity_id)
                    )
            finally:
                conn.close()

    def is_dirty(self, key: Key) -> bool:
        collection, entity_id = key
        with self.lock:
            conn = self.store.connection()
            try:
                row = conn.execute(
                    f'SELECT 1 FROM {Table.Dirty.value} WHERE collection=? AND id=?',
                    (Collection(collection).value, entity_id)
                ).fetchone()
            finally:
                conn.close()
        return row is not None

    def dirty(self) -> Set[Key]:
        """Return the ``(collection, id)`` keys awaiting upload."""
        with self.lock:
            conn = self.store.connection()
            try:
                rows = conn.execute(f'SELECT collection, id FROM {Table.Dirty.value}').fetchall()
            finally:
                conn.close()
        return {(Collection(row['collection']), row['id']) for row in rows}

    def clear(self, keys: Iterable[Key]) -> None:
        """Remove confirmed keys from the dirty set."""
        params = [(Collection(c).value, i) for c, i in keys]
        if not params:
            return
        with self.lock:
            conn = self.store.connection()
            try:
                with conn:
                    conn.executemany(
                        f'DELETE FROM {Table.Dirty.value} WHERE collection=? AND id=?', params
                    )
            finally:
                conn.close()
        logging.debug(f'Cleared {len(params)} dirty mark(s).')

    def enqueue_deletion(self, entity: Entity, deleted_at: Optional[datetime.datetime] = None) -> None:
        with self.lock:
            conn = self.store.connection()
            try:
                with conn:
                    conn.execute(
                        f'INSERT OR REPLACE INTO {Table.Deletions.value} '
                        f'(collection, id, business_key, remote_ref, deleted_at) VALUES (?, ?, ?, ?, ?)',
                        (
                            entity.collection.value,
                            entity.id,
                            entity.business_key,
                            entity.remote_ref,
                            format_timestamp(deleted_at or now()),
                        )
                    )
            finally:
                conn.close()

    def deletions(self) -> List[DeletionIntent]:
        with self.lock:
            conn = self.store.connection()
            try:
                rows = conn.execute(f'SELECT * FROM {Table.Deletions.value} ORDER BY deleted_at').fetchall()
            finally:
                conn.close()
        return [
            DeletionIntent(
                collection=Collection(row['collection']),
                id=row['id'],
                business_key=row['business_key'] or '',
                remote_ref=row['remote_ref'] or None,
                deleted_at=parse_timestamp(row['deleted_at']),
            )
            for row in rows
        ]

    def clear_deletions(self, keys: Iterable[Key]) -> None:
        """Drop deletion intents the remote has confirmed."""
        params = [(Collection(c).value, i) for c, i in keys]
        if not params:
            return
        with self.lock:
            conn = self.store.connection()
            try:
                with conn:
                    conn.executemany(
                        f'DELETE FROM {Table.Deletions.value} WHERE collection=? AND id=?', params
                    )
            finally:
                conn.close()
        logging.debug(f'Cleared {len(params)} deletion intent(s).')

    def reset(self) -> None:
        """Forget every dirty mark and deletion intent."""
        with self.lock:
            conn = self.store.connection()
            try:
                with conn:
                    conn.execute(f'DELETE FROM {Table.Dirty.value}')
                    conn.execute(f'DELETE FROM {Table.Deletions.value}')
            finally:
                conn.close()
        logging.debug('Journal reset.')
