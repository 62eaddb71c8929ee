"""Tests for Celery tasks."""

import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

from django.test import SimpleTestCase

from drivesync.exceptions import TransientError
from drivesync.tasks import sync_task


class SyncTaskTests(SimpleTestCase):
    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.source_dir = self.temp_dir / "src"
        self.dest_dir = self.temp_dir / "dst"
        self.source_dir.mkdir()
        (self.source_dir / "a.txt").write_bytes(b"alpha")

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_sync_returns_summary(self):
        summary = sync_task(str(self.source_dir), str(self.dest_dir))

        self.assertEqual(summary["status"], "ok")
        self.assertEqual(summary["files_transferred"], 1)
        self.assertEqual(summary["source"], str(self.source_dir))
        self.assertEqual((self.dest_dir / "a.txt").read_bytes(), b"alpha")

    def test_failures_are_reported(self):
        self.dest_dir.mkdir()
        (self.dest_dir / "a.txt").mkdir()

        summary = sync_task(str(self.source_dir), str(self.dest_dir))

        self.assertEqual(summary["status"], "failed")
        self.assertEqual(len(summary["failures"]), 1)

    def test_only_transient_errors_are_retried(self):
        self.assertEqual(sync_task.autoretry_for, (TransientError,))
        self.assertEqual(sync_task.max_retries, 3)

    @patch("drivesync.tasks._run_sync")
    def test_transient_error_propagates(self, mock_run):
        mock_run.side_effect = TransientError("connection reset")

        with self.assertRaises(TransientError):
            sync_task.run(str(self.source_dir), str(self.dest_dir))
