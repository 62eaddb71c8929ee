"""
Exceptions shared by storage backends, the authorizer and the sync engine.
"""


class DriveSyncError(Exception):
    """Base exception for drivesync operations."""

    pass


class NotFoundError(DriveSyncError):
    """A path or object does not exist."""

    pass


class AlreadyExistsError(DriveSyncError):
    """An object already exists where one was about to be created."""

    pass


class ConflictError(DriveSyncError):
    """The same name is occupied by an entry of a different type."""

    pass


class AuthExpiredError(DriveSyncError):
    """The remote rejected the current access token as unauthorized."""

    pass


class AuthInvalidError(DriveSyncError):
    """The credential is unusable and the identity needs re-authorization."""

    pass


class TokenRefreshError(AuthInvalidError):
    """Refreshing the access token failed."""

    pass


class TransientError(DriveSyncError):
    """Network or I/O failure that may succeed when retried."""

    pass


class ContentIntegrityError(DriveSyncError):
    """Content is missing its hash or does not match its declared length."""

    pass
