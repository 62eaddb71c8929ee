"""
Django management command to add a drive via OAuth.
"""

from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError

from drivesync.auth import authorize_interactively, get_client_config
from drivesync.exceptions import AuthInvalidError
from drivesync.secrets import IdentityStore


class Command(BaseCommand):
    help = "Add a Google Drive identity by running the OAuth consent flow"

    def add_arguments(self, parser):
        parser.add_argument("name", help="Name to refer to the drive by, as in name:path")
        parser.add_argument(
            "--port",
            type=int,
            help="Local port receiving the OAuth redirect (default: GOOGLE_OAUTH_PORT)",
        )
        parser.add_argument(
            "--no-browser",
            action="store_true",
            help="Print the authorization URL instead of opening a browser",
        )

    def handle(self, *args, **options):
        name = options["name"]
        if not name or ":" in name or "/" in name:
            raise CommandError("Drive names may not be empty or contain ':' or '/'")

        store = IdentityStore()
        if store.has_credential(name):
            raise CommandError(f"Drive {name} already exists; remove it first")

        try:
            client_config = get_client_config(store)
        except ImproperlyConfigured as e:
            raise CommandError(str(e))

        self.stdout.write(self.style.SUCCESS("Google Drive OAuth"))
        self.stdout.write("Sign in and authorize the application in your browser.\n")

        try:
            credential = authorize_interactively(
                client_config,
                port=options["port"],
                open_browser=not options["no_browser"],
            )
        except AuthInvalidError as e:
            raise CommandError(str(e))

        store.set_credential(name, credential)
        self.stdout.write(self.style.SUCCESS(f"Added drive {name}"))
