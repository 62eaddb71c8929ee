"""
Django management command to list drives and their token status.
"""

import json
from datetime import datetime, timezone

from django.core.management.base import BaseCommand, CommandError

from drivesync.secrets import Credential, IdentityStore


class Command(BaseCommand):
    help = "List drives in the identity store"

    def add_arguments(self, parser):
        parser.add_argument(
            "name",
            nargs="?",
            help="Show a single drive",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output as JSON",
        )

    def handle(self, *args, **options):
        store = IdentityStore()

        if options["name"]:
            names = [options["name"]]
            if not store.has_credential(options["name"]):
                raise CommandError(f"Drive {options['name']} not found")
        else:
            names = store.list_drives()

        if not names:
            self.stdout.write(self.style.WARNING("No drives found."))
            self.stdout.write("\nRun 'python manage.py add_drive NAME' to add one")
            return

        credentials = {name: store.get_credential(name) for name in names}

        if options["json"]:
            self._output_json(credentials)
        else:
            self._output_table(credentials)

    def _get_token_status(self, credential: Credential) -> tuple[str, str]:
        """Get token status and expiry info."""
        if not credential.refresh_token:
            return "no refresh", ""

        expires_at = credential.expires_at
        if not expires_at:
            return "unknown", ""

        now = datetime.now(timezone.utc)
        if expires_at < now:
            return "expired", expires_at.strftime("%Y-%m-%d %H:%M")

        delta = expires_at - now
        if delta.total_seconds() < 3600:
            return "expiring", f"{int(delta.total_seconds() / 60)}m"

        return "valid", expires_at.strftime("%Y-%m-%d %H:%M")

    def _output_table(self, credentials: dict):
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write(f"{'Name':<24} {'Token':<12} {'Expires':<20}")
        self.stdout.write("=" * 60)

        for name, credential in credentials.items():
            status, expiry = self._get_token_status(credential)
            # Pad before styling so ANSI codes don't break alignment
            padded = f"{status:<12}"
            if status == "valid":
                padded = self.style.SUCCESS(padded)
            elif status in ("expiring", "unknown"):
                padded = self.style.WARNING(padded)
            else:
                padded = self.style.ERROR(padded)
            self.stdout.write(f"{name:<24} {padded} {expiry:<20}")

        self.stdout.write("=" * 60)
        self.stdout.write(f"Total: {len(credentials)} drive(s)\n")

    def _output_json(self, credentials: dict):
        output = []
        for name, credential in credentials.items():
            status, _ = self._get_token_status(credential)
            output.append({
                "name": name,
                "token_status": status,
                "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
                "scopes": credential.scopes,
            })
        self.stdout.write(json.dumps(output, indent=2))
