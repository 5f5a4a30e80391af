"""
Tests for RewardsTracker.core.database
(schema creation, atomic snapshot writes, recovery of a corrupt store).

Run:
    python -m unittest tests.test_database
"""
import sqlite3
from unittest.mock import patch

from RewardsTracker.core.database import CacheState, DatabaseAPI, Table
from RewardsTracker.core.journal import JournalAPI
from RewardsTracker.core.records import Collection, Snapshot, parse_timestamp
from RewardsTracker.core.signals import signals
from RewardsTracker.settings import lib
from RewardsTracker.status import status
from tests.base import BaseTestCase, card, entity


def sample_snapshot() -> Snapshot:
    return Snapshot(
        [
            entity(Collection.Cards, 'c1', card(), '2025-01-01T00:00:00Z', remote_ref='r1'),
            entity(Collection.Holders, 'h1', {'name': 'Alex'}, '2025-01-02T00:00:00Z'),
        ],
        last_modified='2025-01-02T00:00:00Z',
        last_modified_by='device-b',
        extra={'theme': 'dark'},
    )


class DatabaseAPITests(BaseTestCase):
    def test_default_path_comes_from_settings(self):
        store = DatabaseAPI()
        self.assertEqual(store.db_path, lib.settings.db_path)
        self.assertTrue(store.db_path.exists())

    def test_schema_created(self):
        store = self.make_store()
        conn = sqlite3.connect(store.db_path)
        try:
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        finally:
            conn.close()
        self.assertTrue({t.value for t in Table}.issubset(tables))
        self.assertEqual(store.get_state(), CacheState.Uninitialized)

    def test_save_and_load_all(self):
        store = self.make_store()
        snapshot = sample_snapshot()
        store.save_all(snapshot)

        loaded = store.load_all()
        self.assertEqual(loaded, snapshot)
        self.assertEqual(loaded.last_modified_by, 'device-b')
        self.assertEqual(loaded.last_modified, parse_timestamp('2025-01-02T00:00:00Z'))
        self.assertEqual(loaded.extra, {'theme': 'dark'})
        self.assertEqual(loaded.get(Collection.Cards, 'c1').remote_ref, 'r1')

    def test_save_all_replaces_everything(self):
        store = self.make_store()
        store.save_all(sample_snapshot())
        store.save_all(Snapshot([entity(Collection.Holders, 'h2', {'name': 'Sam'}, '2025-01-03T00:00:00Z')]))
        self.assertEqual(store.load_all().ids(), {(Collection.Holders, 'h2')})

    def test_failed_save_keeps_previous_state(self):
        store = self.make_store()
        snapshot = sample_snapshot()
        store.save_all(snapshot)

        bad = Snapshot([entity(Collection.Holders, 'h3', {'name': 'Sam'}, '2025-01-03T00:00:00Z')])
        with patch('RewardsTracker.core.database._entity_to_row', side_effect=sqlite3.OperationalError('disk I/O')):
            with self.assertRaises(sqlite3.Error):
                store.save_all(bad)
        self.assertEqual(store.load_all(), snapshot)

    def test_save_all_updates_dirty_marks(self):
        store = self.make_store()
        journal = JournalAPI(store)
        renamed, superseded, untouched = (
            (Collection.Cards, 'local-id'), (Collection.Holders, 'h1'), (Collection.Holders, 'h2'))
        for key in (renamed, superseded, untouched):
            journal.mark_dirty(key)

        store.save_all(
            sample_snapshot(),
            clear_dirty=[superseded],
            rename_dirty={renamed: (Collection.Cards, 'c1'), (Collection.Cards, 'clean'): (Collection.Cards, 'c2')},
        )
        self.assertEqual(journal.dirty(), {(Collection.Cards, 'c1'), untouched})

    def test_failed_dirty_update_rolls_back_snapshot(self):
        store = self.make_store()
        journal = JournalAPI(store)
        before = Snapshot([entity(Collection.Cards, 'local-id', card(), '2025-01-03T00:00:00Z')])
        store.save_all(before)
        journal.mark_dirty((Collection.Cards, 'local-id'))

        conn = store.connection()
        try:
            with conn:
                conn.execute(
                    f'CREATE TRIGGER dirty_locked BEFORE DELETE ON {Table.Dirty.value} '
                    "BEGIN SELECT RAISE(ABORT, 'database is locked'); END"
                )
        finally:
            conn.close()

        with self.assertRaises(sqlite3.Error):
            store.save_all(sample_snapshot(), rename_dirty={(Collection.Cards, 'local-id'): (Collection.Cards, 'c1')})
        self.assertEqual(store.load_all(), before)
        self.assertEqual(journal.dirty(), {(Collection.Cards, 'local-id')})

    def test_put_get_remove_list(self):
        store = self.make_store()
        e = entity(Collection.Cards, 'c1', card(), '2025-01-01T00:00:00Z')
        store.put(e)
        self.assertEqual(store.get(Collection.Cards, 'c1'), e)
        self.assertEqual(store.list(Collection.Cards), [e])
        store.remove(Collection.Cards, 'c1')
        self.assertIsNone(store.get(Collection.Cards, 'c1'))
        self.assertEqual(store.list(Collection.Cards), [])

    def test_verify_and_state(self):
        store = self.make_store()
        store.verify()
        self.assertEqual(store.get_state(), CacheState.Uninitialized)

        store.stamp()
        store.verify()
        self.assertEqual(store.get_state(), CacheState.Empty)
        self.assertIsNotNone(store.get_stamp())

        store.save_all(sample_snapshot())
        store.verify()
        self.assertEqual(store.get_state(), CacheState.Valid)

    def test_corrupt_file_is_recreated_empty(self):
        path = self.tmp_dir / 'corrupt.db'
        path.write_bytes(b'this is not a sqlite database' * 100)

        errors = []

        def on_error(message):
            errors.append(message)

        signals.error.connect(on_error)
        try:
            store = DatabaseAPI(path)
        finally:
            signals.error.disconnect(on_error)

        self.assertEqual(len(store.load_all()), 0)
        self.assertEqual(errors, [status.get_message(status.Status.LocalStoreCorrupt)])
        store.save_all(sample_snapshot())
        self.assertEqual(len(store.load_all()), 2)

    def test_corruption_after_open(self):
        store = self.make_store()
        store.save_all(sample_snapshot())
        store.db_path.write_bytes(b'garbage' * 1000)

        self.assertEqual(len(store.load_all()), 0)
        store.verify()

    def test_missing_table_recreated(self):
        store = self.make_store()
        conn = sqlite3.connect(store.db_path)
        try:
            conn.execute(f'DROP TABLE {Table.Dirty.value}')
            conn.commit()
        finally:
            conn.close()

        with self.assertRaises(status.LocalStoreCorruptException):
            store.verify()
        store = DatabaseAPI(store.db_path)
        store.verify()

    def test_delete(self):
        store = self.make_store()
        store.delete()
        self.assertFalse(store.db_path.exists())
        store.delete()
