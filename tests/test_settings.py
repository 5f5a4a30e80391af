# tests/test_settings.py
"""
Unit tests for RewardsTracker.settings.lib
(covers the section validator, ConfigPaths and SettingsAPI).

Run with:
    python -m unittest tests.test_settings
"""

from __future__ import annotations

import json
import unittest
from pathlib import Path
from typing import Any, Dict

from RewardsTracker.core.signals import signals
from RewardsTracker.settings import lib
from RewardsTracker.settings.lib import SYNC_SCHEMA, SettingsAPI, _validate_section
from RewardsTracker.status import status
from tests.base import BaseTestCase

DUMMY_SECRET = {
    "installed": {
        "client_id": "dummy",
        "project_id": "dummy",
        "client_secret": "dummy",
        "auth_uri": "https://example",
        "token_uri": "https://example",
    }
}


def minimal_sync() -> Dict[str, Any]:
    return {
        "device": {"id": "device-1", "name": "laptop"},
        "remote": {"kind": "file", "path": "", "spreadsheet_id": ""},
        "sync": {"debounce_ms": 500, "poll_interval_s": 10, "suppression_window_s": 2.5, "threaded": False},
        "merge": {"granularity": "entity"},
        "catalog": {"feed_url": ""},
    }


def write_json(p: Path, data: Dict[str, Any]) -> None:
    with p.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=4, ensure_ascii=False)


class ValidatorTests(unittest.TestCase):
    def test_valid_sections(self):
        data = minimal_sync()
        for name, specs in SYNC_SCHEMA.items():
            _validate_section(name, data[name], specs["item_schema"])

    def test_section_must_be_dict(self):
        with self.assertRaises(TypeError):
            _validate_section("merge", ["entity"], SYNC_SCHEMA["merge"]["item_schema"])

    def test_missing_field(self):
        with self.assertRaises(ValueError) as cm:
            _validate_section("device", {"id": "x"}, SYNC_SCHEMA["device"]["item_schema"])
        self.assertIn('"name"', str(cm.exception))

    def test_wrong_type(self):
        section = minimal_sync()["sync"]
        section["debounce_ms"] = "fast"
        with self.assertRaises(TypeError):
            _validate_section("sync", section, SYNC_SCHEMA["sync"]["item_schema"])

    def test_bool_is_not_a_number(self):
        section = minimal_sync()["sync"]
        section["poll_interval_s"] = True
        with self.assertRaises(TypeError):
            _validate_section("sync", section, SYNC_SCHEMA["sync"]["item_schema"])

    def test_allowed_values(self):
        with self.assertRaises(ValueError):
            _validate_section("remote", {"kind": "ftp", "path": "", "spreadsheet_id": ""},
                              SYNC_SCHEMA["remote"]["item_schema"])
        with self.assertRaises(ValueError):
            _validate_section("merge", {"granularity": "field"}, SYNC_SCHEMA["merge"]["item_schema"])

    def test_lower_bounds(self):
        section = minimal_sync()["sync"]
        section["poll_interval_s"] = 0
        with self.assertRaises(ValueError):
            _validate_section("sync", section, SYNC_SCHEMA["sync"]["item_schema"])

    def test_float_window_accepted(self):
        section = minimal_sync()["sync"]
        section["suppression_window_s"] = 3
        _validate_section("sync", section, SYNC_SCHEMA["sync"]["item_schema"])


class ConfigPathsTests(BaseTestCase):
    def test_directories_and_defaults_created(self):
        paths = lib.ConfigPaths()
        for directory in (paths.config_dir, paths.auth_dir, paths.db_dir, paths.cache_dir):
            self.assertTrue(directory.is_dir(), directory)
        self.assertTrue(paths.sync_path.exists())
        self.assertTrue(paths.client_secret_path.exists())
        self.assertEqual(paths.db_path.parent, paths.db_dir)
        self.assertEqual(paths.shared_file_path.name, "rewards.json")

    def test_revert_sync_to_template(self):
        paths = lib.ConfigPaths()
        paths.sync_path.write_text("{}", encoding="utf-8")
        paths.revert_sync_to_template()
        self.assertEqual(
            json.loads(paths.sync_path.read_text(encoding="utf-8")),
            json.loads(paths.sync_template.read_text(encoding="utf-8")),
        )


class SettingsAPITests(BaseTestCase):
    def test_device_id_generated_and_persisted(self):
        device_id = lib.settings.device_id
        self.assertTrue(device_id)
        on_disk = json.loads(lib.settings.sync_path.read_text(encoding="utf-8"))
        self.assertEqual(on_disk["device"]["id"], device_id)

        self.assertEqual(SettingsAPI().device_id, device_id)

    def test_remote_path_defaults_to_shared_dir(self):
        self.assertEqual(lib.settings.remote_path, lib.settings.shared_file_path)

        remote = lib.settings.get_section("remote")
        remote["path"] = str(self.tmp_dir / "cloud" / "rewards.json")
        lib.settings.set_section("remote", remote)
        self.assertEqual(lib.settings.remote_path, self.tmp_dir / "cloud" / "rewards.json")

    def test_custom_paths(self):
        sync_path = self.tmp_dir / "sync.json"
        secret_path = self.tmp_dir / "secret.json"
        write_json(sync_path, minimal_sync())
        write_json(secret_path, DUMMY_SECRET)

        api = SettingsAPI(sync_path=str(sync_path), client_secret_path=str(secret_path))
        self.assertEqual(api.device_id, "device-1")
        self.assertEqual(api.get_section("sync")["debounce_ms"], 500)
        self.assertEqual(api.get_section("client_secret")["installed"]["client_id"], "dummy")

    def test_missing_sync_file(self):
        with self.assertRaises(status.SyncConfigNotFoundException):
            SettingsAPI(sync_path=str(self.tmp_dir / "missing.json"))

    def test_invalid_sync_file(self):
        data = minimal_sync()
        del data["merge"]
        path = self.tmp_dir / "sync.json"
        write_json(path, data)
        with self.assertRaises(status.SyncConfigInvalidException):
            SettingsAPI(sync_path=str(path))

        path.write_text("{ not json", encoding="utf-8")
        with self.assertRaises(status.SyncConfigInvalidException):
            SettingsAPI(sync_path=str(path))

    def test_client_secret_validation(self):
        self.assertEqual(lib.settings.validate_client_secret(DUMMY_SECRET), "installed")
        with self.assertRaises(status.ClientSecretInvalidException):
            lib.settings.validate_client_secret({"other": {}})
        with self.assertRaises(status.ClientSecretInvalidException):
            lib.settings.validate_client_secret({"web": {"client_id": "x"}})

    def test_invalid_client_secret_file(self):
        path = self.tmp_dir / "secret.json"
        path.write_text("not json", encoding="utf-8")
        with self.assertRaises(status.ClientSecretInvalidException):
            SettingsAPI(client_secret_path=str(path))

    def test_get_section_returns_copy(self):
        section = lib.settings.get_section("merge")
        section["granularity"] = "snapshot"
        self.assertEqual(lib.settings.get_section("merge")["granularity"], "entity")
        with self.assertRaises(KeyError):
            lib.settings.get_section("nope")

    def test_set_section_persists_and_emits(self):
        emitted = []

        def on_changed(name):
            emitted.append(name)

        signals.configSectionChanged.connect(on_changed)
        try:
            lib.settings.set_section("merge", {"granularity": "snapshot"})
        finally:
            signals.configSectionChanged.disconnect(on_changed)

        self.assertEqual(emitted, ["merge"])
        on_disk = json.loads(lib.settings.sync_path.read_text(encoding="utf-8"))
        self.assertEqual(on_disk["merge"]["granularity"], "snapshot")

    def test_set_section_rolls_back_invalid_data(self):
        before = lib.settings.get_section("sync")
        bad = dict(before, debounce_ms=-1)
        with self.assertRaises(ValueError):
            lib.settings.set_section("sync", bad)
        self.assertEqual(lib.settings.get_section("sync"), before)

        on_disk = json.loads(lib.settings.sync_path.read_text(encoding="utf-8"))
        self.assertEqual(on_disk["sync"], before)

    def test_set_section_unknown(self):
        with self.assertRaises(ValueError):
            lib.settings.set_section("nope", {})

    def test_set_client_secret(self):
        lib.settings.set_section("client_secret", DUMMY_SECRET)
        on_disk = json.loads(lib.settings.client_secret_path.read_text(encoding="utf-8"))
        self.assertEqual(on_disk, DUMMY_SECRET)

    def test_reload_section(self):
        data = json.loads(lib.settings.sync_path.read_text(encoding="utf-8"))
        data["catalog"]["feed_url"] = "https://example.com/cards.json"
        write_json(lib.settings.sync_path, data)

        self.assertEqual(lib.settings.get_section("catalog")["feed_url"], "")
        lib.settings.reload_section("catalog")
        self.assertEqual(lib.settings.get_section("catalog")["feed_url"], "https://example.com/cards.json")

    def test_reload_invalid_file_keeps_memory(self):
        data = json.loads(lib.settings.sync_path.read_text(encoding="utf-8"))
        data["merge"]["granularity"] = "field"
        write_json(lib.settings.sync_path, data)
        with self.assertRaises(ValueError):
            lib.settings.reload_section("merge")
        self.assertEqual(lib.settings.get_section("merge")["granularity"], "entity")

    def test_revert_keeps_device_id(self):
        device_id = lib.settings.device_id
        lib.settings.set_section("device", {"id": device_id, "name": "renamed"})
        lib.settings.revert_section("device")

        device = lib.settings.get_section("device")
        self.assertEqual(device["id"], device_id)
        self.assertEqual(device["name"], "desktop")

    def test_revert_section(self):
        lib.settings.set_section("merge", {"granularity": "snapshot"})
        lib.settings.revert_section("merge")
        self.assertEqual(lib.settings.get_section("merge")["granularity"], "entity")
        with self.assertRaises(ValueError):
            lib.settings.revert_section("nope")

    def test_save_section_leaves_other_sections(self):
        on_disk_before = json.loads(lib.settings.sync_path.read_text(encoding="utf-8"))
        lib.settings.sync_data["catalog"] = {"feed_url": "https://example.com"}
        lib.settings.save_section("catalog")

        on_disk = json.loads(lib.settings.sync_path.read_text(encoding="utf-8"))
        self.assertEqual(on_disk["catalog"]["feed_url"], "https://example.com")
        self.assertEqual(on_disk["sync"], on_disk_before["sync"])
        with self.assertRaises(ValueError):
            lib.settings.save_section("nope")
