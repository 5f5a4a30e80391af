"""
Tests for RewardsTracker.core.service (Google Sheets record store).

The Sheets API is replaced by :class:`tests.base.FakeSheetsService`, which
keeps worksheet values in memory.

Run:
    python -m unittest tests.test_service
"""
import json
from unittest.mock import patch

from RewardsTracker.core.auth import AuthExpiredError
from RewardsTracker.core.journal import DeletionIntent
from RewardsTracker.core.records import Collection, parse_timestamp
from RewardsTracker.core.service import HEADER, LAST_COL, SheetsRecordStore, _rows_to_frame, idx_to_col
from RewardsTracker.status import status
from tests.base import BaseTestCase, FakeSheetsService, card, entity

T1 = '2025-01-01T00:00:00Z'
T2 = '2025-01-02T00:00:00Z'


class HelperTests(BaseTestCase):
    def test_idx_to_col(self):
        self.assertEqual(idx_to_col(0), 'A')
        self.assertEqual(idx_to_col(25), 'Z')
        self.assertEqual(idx_to_col(26), 'AA')
        self.assertEqual(LAST_COL, 'G')

    def test_rows_to_frame_pads_ragged_rows(self):
        df = _rows_to_frame([HEADER, ['r1', 'c1'], ['r2', 'c2', 'k', T1, 'dev', False, '{}']])
        self.assertEqual(list(df.columns), HEADER)
        self.assertEqual(df.loc[0, 'payload'], '')
        self.assertEqual(df.loc[1, 'modified_by'], 'dev')
        self.assertTrue(_rows_to_frame([]).empty)


class SheetsRecordStoreTests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.service = FakeSheetsService()
        self.store = SheetsRecordStore('sheet-id', 'device-a', service=self.service)
        self.other = SheetsRecordStore('sheet-id', 'device-b', service=self.service)

    def tearDown(self) -> None:
        self.store.close()
        self.other.close()
        super().tearDown()

    def test_empty_spreadsheet(self):
        self.assertIsNone(self.store.fetch_remote())

    def test_push_creates_worksheets_and_assigns_refs(self):
        c1 = entity(Collection.Cards, 'c1', card(), T1)
        h1 = entity(Collection.Holders, 'h1', {'name': 'Alex'}, T1)
        result = self.store.push_dirty([c1, h1], {c1.key, h1.key})

        self.assertTrue(result.ok)
        self.assertEqual(result.succeeded, {c1.key, h1.key})
        self.assertEqual(set(result.refs), {c1.key, h1.key})
        self.assertEqual(self.service.sheets['cards'][0], HEADER)
        self.assertEqual(len(self.service.sheets['cards']), 2)

        row = self.service.sheets['cards'][1]
        self.assertEqual(row[0], result.refs[c1.key])
        self.assertEqual(row[4], 'device-a')
        self.assertEqual(json.loads(row[6]), c1.payload)

        fetched = self.store.fetch_remote()
        self.assertEqual(fetched.ids(), {c1.key, h1.key})
        self.assertEqual(fetched.get(Collection.Cards, 'c1').remote_ref, result.refs[c1.key])
        self.assertEqual(fetched.get(Collection.Cards, 'c1').last_modified, parse_timestamp(T1))

    def test_update_in_place_by_ref(self):
        c1 = entity(Collection.Cards, 'c1', card(), T1)
        ref = self.store.push_dirty([c1], {c1.key}).refs[c1.key]

        changed = c1.copy(payload=card(nickname='Renamed'), last_modified=parse_timestamp(T2), remote_ref=ref)
        result = self.store.push_dirty([changed], {changed.key})
        self.assertEqual(result.refs, {})
        self.assertEqual(len(self.service.sheets['cards']), 2)
        self.assertEqual(self.store.fetch_remote().get(Collection.Cards, 'c1').payload['nickname'], 'Renamed')

    def test_update_in_place_by_id(self):
        c1 = entity(Collection.Cards, 'c1', card(), T1)
        self.store.push_dirty([c1], {c1.key})
        self.store.push_dirty([c1.copy(last_modified=parse_timestamp(T2))], {c1.key})
        self.assertEqual(len(self.service.sheets['cards']), 2)

    def test_partial_failure(self):
        ok = entity(Collection.Holders, 'h1', {'name': 'Alex'}, T1)
        bad = entity(Collection.Holders, 'h2', {'name': 'Sam'}, T1)
        self.service.failing_ids.add('h2')

        result = self.store.push_dirty([ok, bad], {ok.key, bad.key})
        self.assertFalse(result.ok)
        self.assertEqual(result.succeeded, {ok.key})
        self.assertIn(bad.key, result.failed)
        self.assertEqual(self.store.fetch_remote().ids(), {ok.key})

    def test_deletion_flags_row(self):
        h1 = entity(Collection.Holders, 'h1', {'name': 'Alex'}, T1)
        ref = self.store.push_dirty([h1], {h1.key}).refs[h1.key]

        intent = DeletionIntent(Collection.Holders, 'h1', h1.business_key, ref, parse_timestamp(T2))
        result = self.store.push_dirty([], set(), deletions=[intent])
        self.assertEqual(result.deleted, {h1.key})
        self.assertIs(self.service.sheets['holders'][1][5], True)
        self.assertEqual(len(self.store.fetch_remote()), 0)

    def test_deletion_of_never_uploaded_entity(self):
        intent = DeletionIntent(Collection.Holders, 'ghost', 'ghost', None, parse_timestamp(T2))
        self.store.push_dirty([entity(Collection.Holders, 'h1', {'name': 'Alex'}, T1)], set())
        result = self.store.push_dirty([], set(), deletions=[intent])
        self.assertEqual(result.deleted, {intent.key})

    def test_unreadable_payload_row_is_skipped(self):
        self.store.push_dirty([entity(Collection.Holders, 'h1', {'name': 'Alex'}, T1)], set())
        self.service.sheets['holders'].append(['ref-x', 'h2', 'x', T1, 'device-b', False, '[1, 2]'])
        self.assertEqual(self.store.fetch_remote().ids(), {(Collection.Holders, 'h1')})

    def test_fetch_failure(self):
        with patch.object(self.service, 'batchGet', side_effect=ConnectionError('offline')):
            self.service.sheets['cards'] = [HEADER]
            with self.assertRaises(status.TransportUnavailableException):
                self.store.fetch_remote()

    def test_change_detection_ignores_own_rows(self):
        self.store.push_dirty([entity(Collection.Holders, 'h1', {'name': 'Alex'}, T1)], set())
        self.store.fetch_remote()

        self.store.push_dirty([entity(Collection.Holders, 'h2', {'name': 'Sam'}, T2)], set())
        self.assertFalse(self.store.check_for_changes())

        changes = []
        self.store.watch(lambda: changes.append(True))
        self.other.push_dirty([entity(Collection.Holders, 'h3', {'name': 'Kim'}, T2)], set())
        self.assertTrue(self.store.check_for_changes())
        self.assertEqual(changes, [True])
        self.assertFalse(self.store.check_for_changes())

    def test_first_fingerprint_is_only_recorded(self):
        self.other.push_dirty([entity(Collection.Holders, 'h1', {'name': 'Alex'}, T1)], set())
        self.assertFalse(self.store.check_for_changes())

    def test_watch_starts_polling(self):
        self.store.watch()
        self.assertTrue(self.store.poll_timer.isActive())
        self.store.unwatch()
        self.assertFalse(self.store.poll_timer.isActive())


class ServiceCreationTests(BaseTestCase):
    def test_missing_spreadsheet_id(self):
        with self.assertRaises(status.SpreadsheetIdNotConfiguredException):
            SheetsRecordStore('', 'device-a').get_service()

    def test_interactive_sign_in_required(self):
        store = SheetsRecordStore('sheet-id', 'device-a')
        with patch('RewardsTracker.core.service.auth_manager.get_valid_credentials',
                   side_effect=AuthExpiredError('sign in')):
            with self.assertRaises(status.AuthenticationException):
                store.fetch_remote()

    def test_builds_client_from_credentials(self):
        store = SheetsRecordStore('sheet-id', 'device-a')
        with patch('RewardsTracker.core.service.auth_manager.get_valid_credentials', return_value='creds'), \
                patch('RewardsTracker.core.service.build', return_value='client') as build:
            self.assertEqual(store.get_service(), 'client')
            self.assertEqual(store.get_service(), 'client')
        build.assert_called_once_with('sheets', 'v4', credentials='creds', cache_discovery=False)

        store.clear_service()
        with patch('RewardsTracker.core.service.auth_manager.get_valid_credentials', return_value='creds'), \
                patch('RewardsTracker.core.service.build', side_effect=RuntimeError('no discovery')):
            with self.assertRaises(status.ServiceUnavailableException):
                store.get_service()
