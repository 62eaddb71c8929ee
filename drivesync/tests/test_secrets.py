"""Tests for the identity store."""

import json
import os
import shutil
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from django.test import SimpleTestCase, override_settings

from drivesync.secrets import Credential, IdentityStore, IdentityStoreError


class IdentityStoreTests(SimpleTestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.identity_file = Path(self.temp_dir) / "nested" / "identities.json"
        self.store = IdentityStore(self.identity_file)
        self.credential = Credential(
            access_token="test_access",
            refresh_token="test_refresh",
            expires_at=datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
            scopes=["https://www.googleapis.com/auth/drive"],
        )

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_set_and_get_credential(self):
        self.store.set_credential("work", self.credential)

        self.assertEqual(self.store.get_credential("work"), self.credential)

    def test_get_unknown_drive(self):
        self.assertIsNone(self.store.get_credential("missing"))
        self.assertFalse(self.store.has_credential("missing"))

    def test_file_layout(self):
        self.store.set_credential("work", self.credential)

        data = json.loads(self.identity_file.read_text())

        self.assertEqual(data["drives"]["work"]["access_token"], "test_access")
        self.assertEqual(data["drives"]["work"]["expires_at"], "2024-01-15T10:00:00+00:00")

    def test_file_permissions(self):
        self.store.set_credential("work", self.credential)

        mode = stat.S_IMODE(os.stat(self.identity_file).st_mode)
        self.assertEqual(mode, 0o600)

    def test_lock_file_is_created_beside_store(self):
        self.store.set_credential("work", self.credential)

        self.assertTrue(self.identity_file.with_name("identities.json.lock").exists())

    def test_no_temp_files_left_behind(self):
        self.store.set_credential("work", self.credential)
        self.store.set_credential("home", self.credential)

        self.assertEqual(
            sorted(p.name for p in self.identity_file.parent.iterdir()),
            ["identities.json", "identities.json.lock"],
        )

    def test_list_drives_preserves_order(self):
        self.store.set_credential("b", self.credential)
        self.store.set_credential("a", self.credential)

        self.assertEqual(self.store.list_drives(), ["b", "a"])

    def test_delete_credential(self):
        self.store.set_credential("work", self.credential)

        self.assertTrue(self.store.delete_credential("work"))
        self.assertFalse(self.store.delete_credential("work"))
        self.assertEqual(self.store.list_drives(), [])

    def test_other_documents_survive_updates(self):
        self.store.set_oauth_client_config("google", "id", "secret")
        self.store.set_credential("work", self.credential)

        self.assertEqual(
            self.store.get_oauth_client_config("google"),
            {"client_id": "id", "client_secret": "secret"},
        )

    def test_invalid_json_raises(self):
        self.identity_file.parent.mkdir(parents=True)
        self.identity_file.write_text("{not json")

        with self.assertRaises(IdentityStoreError):
            self.store.get_credential("work")

    def test_naive_expiry_is_read_as_utc(self):
        self.identity_file.parent.mkdir(parents=True)
        self.identity_file.write_text(json.dumps({
            "drives": {
                "work": {
                    "access_token": "a",
                    "refresh_token": "r",
                    "expires_at": "2024-01-15T10:00:00",
                }
            }
        }))

        credential = self.store.get_credential("work")

        self.assertEqual(credential.expires_at, datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(credential.scopes, [])

    def test_default_path_comes_from_settings(self):
        with override_settings(DRIVESYNC_IDENTITY_FILE=self.identity_file):
            self.assertEqual(IdentityStore().path, self.identity_file)
