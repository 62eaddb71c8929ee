"""
Django management command to mirror one location onto another.
"""

import asyncio

from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError

from drivesync.exceptions import DriveSyncError
from drivesync.locations import Location, open_storage
from drivesync.secrets import IdentityStore, SecretsError
from drivesync.sync import sync


class Command(BaseCommand):
    help = (
        "Mirror SOURCE onto DESTINATION. Locations are local paths or "
        "name:path on a drive added with add_drive"
    )

    def add_arguments(self, parser):
        parser.add_argument("source", help="Source location")
        parser.add_argument("destination", help="Destination location")
        parser.add_argument(
            "--concurrency",
            type=int,
            help="Maximum concurrent backend operations (default: SYNC_CONCURRENCY)",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would change without modifying the destination",
        )
        parser.add_argument(
            "--prune",
            action="store_true",
            help="Delete destination files that are missing from the source",
        )

    def handle(self, *args, **options):
        try:
            source = Location.parse(options["source"])
            destination = Location.parse(options["destination"])
        except ValueError as e:
            raise CommandError(str(e))

        if options["concurrency"] is not None and options["concurrency"] < 1:
            raise CommandError("--concurrency must be at least 1")

        self.stdout.write(f"Syncing {source} -> {destination}")
        if options["dry_run"]:
            self.stdout.write(self.style.WARNING("Dry run: the destination will not be modified"))

        try:
            result = asyncio.run(self._sync(source, destination, options))
        except (DriveSyncError, SecretsError, ImproperlyConfigured) as e:
            raise CommandError(f"Sync failed: {e}")

        self.stdout.write(
            f"Directories created: {result.directories_created}  "
            f"Transferred: {result.files_transferred}  "
            f"Copied: {result.files_copied}  "
            f"Skipped: {result.files_skipped}  "
            f"Deleted: {result.files_deleted}"
        )
        for path in result.unpruned_directories:
            self.stdout.write(self.style.WARNING(f"Left in place: {path}/"))

        if not result.ok:
            for failure in result.failures:
                self.stderr.write(self.style.ERROR(f"  ✗ {failure}"))
            raise CommandError(f"{len(result.failures)} path(s) failed to sync")

        self.stdout.write(self.style.SUCCESS("Sync complete"))

    async def _sync(self, source: Location, destination: Location, options: dict):
        store = IdentityStore()
        source_storage = await open_storage(source, store)
        destination_storage = await open_storage(destination, store)
        return await sync(
            source_storage,
            destination_storage,
            concurrency=options["concurrency"],
            dry_run=options["dry_run"],
            prune=options["prune"],
        )
