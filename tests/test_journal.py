"""
Tests for RewardsTracker.core.journal (dirty marks and deletion intents).

Run:
    python -m unittest tests.test_journal
"""
from RewardsTracker.core.database import DatabaseAPI
from RewardsTracker.core.journal import JournalAPI
from RewardsTracker.core.records import Collection, parse_timestamp
from tests.base import BaseTestCase, card, entity


class JournalAPITests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.store = self.make_store()
        self.journal = JournalAPI(self.store)

    def test_mark_and_clear(self):
        a, b = (Collection.Cards, 'c1'), (Collection.Holders, 'h1')
        self.journal.mark_dirty(a)
        self.journal.mark_dirty(a)
        self.journal.mark_dirty(b)
        self.assertEqual(self.journal.dirty(), {a, b})

        self.journal.clear([a])
        self.assertFalse(self.journal.is_dirty(a))
        self.assertTrue(self.journal.is_dirty(b))
        self.journal.clear([])

    def test_survives_restart(self):
        self.journal.mark_dirty((Collection.Cards, 'c1'))
        self.journal.enqueue_deletion(entity(Collection.Holders, 'h1', {'name': 'Alex'}, '2025-01-01T00:00:00Z'))

        reopened = JournalAPI(DatabaseAPI(self.store.db_path))
        self.assertEqual(reopened.dirty(), {(Collection.Cards, 'c1')})
        self.assertEqual([d.key for d in reopened.deletions()], [(Collection.Holders, 'h1')])

    def test_deletions(self):
        e = entity(Collection.Cards, 'c1', card(), '2025-01-01T00:00:00Z', remote_ref='ref-1')
        when = parse_timestamp('2025-02-01T00:00:00Z')
        self.journal.enqueue_deletion(e, deleted_at=when)

        (intent,) = self.journal.deletions()
        self.assertEqual(intent.key, e.key)
        self.assertEqual(intent.remote_ref, 'ref-1')
        self.assertEqual(intent.business_key, e.business_key)
        self.assertEqual(intent.deleted_at, when)

        self.journal.clear_deletions([e.key])
        self.assertEqual(self.journal.deletions(), [])

    def test_reset(self):
        self.journal.mark_dirty((Collection.Cards, 'c1'))
        self.journal.enqueue_deletion(entity(Collection.Holders, 'h1', {'name': 'Alex'}, '2025-01-01T00:00:00Z'))
        self.journal.reset()
        self.assertEqual(self.journal.dirty(), set())
        self.assertEqual(self.journal.deletions(), [])

    def test_shares_store_lock(self):
        self.assertIs(self.journal.lock, self.store.lock)
