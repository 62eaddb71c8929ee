"""
Django management command to remove a drive's credential.
"""

from django.core.management.base import BaseCommand, CommandError

from drivesync.secrets import IdentityStore


class Command(BaseCommand):
    help = "Remove a drive from the identity store"

    def add_arguments(self, parser):
        parser.add_argument("name", help="Drive name")

    def handle(self, *args, **options):
        name = options["name"]
        if not IdentityStore().delete_credential(name):
            raise CommandError(f"Drive {name} not found")
        self.stdout.write(self.style.SUCCESS(f"Removed drive {name}"))
