from django.apps import AppConfig


class DrivesyncConfig(AppConfig):
    name = "drivesync"
    verbose_name = "Drive Sync"
