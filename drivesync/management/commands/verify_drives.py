"""
Django management command to verify drive credentials against the API.
"""

import asyncio

from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError

from drivesync.auth import Authorizer
from drivesync.exceptions import AuthInvalidError, DriveSyncError
from drivesync.providers.google_drive import DriveClient
from drivesync.secrets import IdentityStore


class Command(BaseCommand):
    help = "Verify drive tokens by making an authenticated API call"

    def add_arguments(self, parser):
        parser.add_argument(
            "name",
            nargs="?",
            help="Drive to verify (optional, verifies all if not specified)",
        )
        parser.add_argument(
            "--refresh",
            action="store_true",
            help="Refresh the access token before verifying",
        )

    def handle(self, *args, **options):
        store = IdentityStore()

        if options["name"]:
            if not store.has_credential(options["name"]):
                raise CommandError(f"Drive {options['name']} not found")
            names = [options["name"]]
        else:
            names = store.list_drives()

        if not names:
            self.stdout.write(self.style.WARNING("No drives found."))
            return

        self.stdout.write(f"\nVerifying {len(names)} drive(s)...\n")

        results = {"valid": 0, "failed": 0}
        for name in names:
            self._verify_drive(store, name, options["refresh"], results)

        self.stdout.write("\n" + "-" * 40)
        self.stdout.write(f"Valid: {results['valid']}  Failed: {results['failed']}")

        if results["failed"]:
            raise CommandError(f"{results['failed']} drive(s) failed verification")

    def _verify_drive(self, store: IdentityStore, name: str, do_refresh: bool, results: dict):
        try:
            user_info = asyncio.run(self._check(store, name, do_refresh))
        except AuthInvalidError as e:
            self.stdout.write(f"{name}: " + self.style.ERROR(f"INVALID - {e}"))
            results["failed"] += 1
        except (DriveSyncError, ImproperlyConfigured) as e:
            self.stdout.write(f"{name}: " + self.style.ERROR(f"ERROR - {e}"))
            results["failed"] += 1
        else:
            email = user_info.get("email") or "unknown"
            self.stdout.write(f"{name}: " + self.style.SUCCESS(f"VALID (verified as {email})"))
            results["valid"] += 1

    async def _check(self, store: IdentityStore, name: str, do_refresh: bool) -> dict:
        authorizer = Authorizer(name, store)
        if do_refresh:
            await authorizer.force_refresh()
        return await DriveClient(authorizer).get_about()
