"""Tests for sync location parsing."""

import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

from django.test import SimpleTestCase

from drivesync.exceptions import NotFoundError
from drivesync.locations import Location, open_storage
from drivesync.secrets import Credential, IdentityStore
from drivesync.storage import LocalStorage


class LocationParseTests(SimpleTestCase):
    def test_remote_location(self):
        location = Location.parse("work:Backups/photos")

        self.assertTrue(location.is_remote)
        self.assertEqual(location.drive, "work")
        self.assertEqual(location.path, "/Backups/photos")
        self.assertEqual(str(location), "work:/Backups/photos")

    def test_remote_root(self):
        self.assertEqual(Location.parse("work:").path, "/")

    def test_local_location(self):
        location = Location.parse("/home/me/photos")

        self.assertFalse(location.is_remote)
        self.assertEqual(location.path, "/home/me/photos")

    def test_colon_after_separator_is_local(self):
        self.assertFalse(Location.parse("./odd:name").is_remote)

    def test_empty_location(self):
        with self.assertRaises(ValueError):
            Location.parse("")


class OpenStorageTests(SimpleTestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = IdentityStore(Path(self.temp_dir) / "identities.json")

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_local(self):
        storage = await open_storage(Location.parse(self.temp_dir), self.store)

        self.assertIsInstance(storage, LocalStorage)

    async def test_unknown_drive(self):
        with self.assertRaises(NotFoundError):
            await open_storage(Location.parse("missing:/"), self.store)

    @patch("drivesync.locations.DriveStorage.connect", new_callable=AsyncMock)
    async def test_remote(self, mock_connect):
        self.store.set_credential("work", Credential(
            access_token="a",
            refresh_token="r",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        ))
        sentinel = object()
        mock_connect.return_value = sentinel

        storage = await open_storage(Location.parse("work:/Backups"), self.store)

        self.assertIs(storage, sentinel)
        client = mock_connect.call_args.args[0]
        self.assertEqual(client.authorizer.name, "work")
        self.assertEqual(mock_connect.call_args.kwargs["base"], "/Backups")
