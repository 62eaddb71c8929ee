"""
OAuth credential lifecycle for Google Drive identities.

Provides the interactive authorization used when a drive is first added,
token refresh, a per-drive credential cache with single-flight refresh,
and the authorized call wrapper that recovers from one unauthorized
response.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, TypeVar

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from drivesync.exceptions import AuthExpiredError, AuthInvalidError, TokenRefreshError
from drivesync.secrets import Credential, IdentityStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCOPES = ["https://www.googleapis.com/auth/drive"]

AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def get_client_config(store: IdentityStore) -> dict:
    """
    Resolve the OAuth client id and secret.

    Settings take precedence over the ``oauth_clients.google`` entry of the
    identity store.

    Raises:
        ImproperlyConfigured: If neither source provides a client
    """
    client_id = getattr(settings, "GOOGLE_CLIENT_ID", None)
    client_secret = getattr(settings, "GOOGLE_CLIENT_SECRET", None)
    if client_id and client_secret:
        return {"client_id": client_id, "client_secret": client_secret}

    config = store.get_oauth_client_config("google")
    if config and config.get("client_id") and config.get("client_secret"):
        return config

    raise ImproperlyConfigured(
        "Google OAuth client not configured. Set GOOGLE_CLIENT_ID and "
        "GOOGLE_CLIENT_SECRET, or add them to the identity file under "
        "oauth_clients.google"
    )


def _expiry_to_utc(expiry: datetime | None) -> datetime | None:
    # google-auth reports expiry as a naive UTC datetime
    if expiry is None:
        return None
    if expiry.tzinfo is None:
        return expiry.replace(tzinfo=timezone.utc)
    return expiry


def authorize_interactively(
    client_config: dict,
    port: int | None = None,
    open_browser: bool = True,
) -> Credential:
    """
    Run the browser-based authorization code flow for a new drive.

    A loopback server on ``port`` receives the redirect. With
    ``open_browser=False`` the authorization URL is printed instead.

    Returns:
        The freshly granted Credential
    """
    flow = InstalledAppFlow.from_client_config(
        {
            "installed": {
                "client_id": client_config["client_id"],
                "client_secret": client_config["client_secret"],
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": ["http://localhost"],
            }
        },
        scopes=SCOPES,
    )
    credentials = flow.run_local_server(
        port=port if port is not None else settings.GOOGLE_OAUTH_PORT,
        open_browser=open_browser,
        access_type="offline",
        prompt="consent",
    )

    if not credentials.refresh_token:
        raise AuthInvalidError("Authorization did not grant a refresh token")

    logger.info(f"Authorized new credential, valid until {credentials.expiry}")
    return Credential(
        access_token=credentials.token,
        refresh_token=credentials.refresh_token,
        expires_at=_expiry_to_utc(credentials.expiry),
        scopes=list(credentials.granted_scopes or credentials.scopes or SCOPES),
    )


def refresh_credential(credential: Credential, client_config: dict) -> Credential:
    """
    Exchange the refresh token for a new access token.

    This performs a blocking network call to the token endpoint.

    Raises:
        TokenRefreshError: If the token endpoint rejects the refresh
    """
    if not credential.refresh_token:
        raise TokenRefreshError("No refresh token available")

    credentials = Credentials(
        token=credential.access_token,
        refresh_token=credential.refresh_token,
        token_uri=TOKEN_URI,
        client_id=client_config["client_id"],
        client_secret=client_config["client_secret"],
        scopes=credential.scopes or None,
    )

    try:
        credentials.refresh(Request())
    except GoogleAuthError as e:
        raise TokenRefreshError(f"Token refresh failed: {e}") from e

    return Credential(
        access_token=credentials.token,
        refresh_token=credentials.refresh_token or credential.refresh_token,
        expires_at=_expiry_to_utc(credentials.expiry),
        scopes=list(credentials.granted_scopes or credential.scopes),
    )


class Authorizer:
    """
    Cached credential for one named drive.

    ``token()`` hands out the cached access token while it is valid.
    Refreshes are serialized by a lock: callers that queue up behind an
    in-flight refresh observe its result instead of issuing their own.
    """

    def __init__(
        self,
        name: str,
        store: IdentityStore,
        refresher: Callable[[Credential], Credential] | None = None,
    ):
        """
        Args:
            name: Drive name in the identity store
            store: Identity store to read from and persist refreshes to
            refresher: Blocking callable exchanging a credential for a
                refreshed one (defaults to the Google token endpoint)

        Raises:
            AuthInvalidError: If the store has no credential for ``name``
        """
        credential = store.get_credential(name)
        if credential is None:
            raise AuthInvalidError(f"No credential found for drive {name}")

        self.name = name
        self.store = store
        self._credential = credential
        self._refresher = refresher
        self._lock = asyncio.Lock()
        # Counts finished refresh attempts; the error is that of the last one
        self._generation = 0
        self._refresh_error: Exception | None = None

    @property
    def credential(self) -> Credential:
        return self._credential

    def _is_fresh(self, credential: Credential) -> bool:
        if credential.expires_at is None:
            return False
        margin = timedelta(seconds=settings.DRIVE_TOKEN_EXPIRY_MARGIN)
        return datetime.now(timezone.utc) + margin < credential.expires_at

    def _refresh(self, credential: Credential) -> Credential:
        if self._refresher is not None:
            return self._refresher(credential)
        return refresh_credential(credential, get_client_config(self.store))

    async def token(self) -> str:
        """Return a usable access token, refreshing it if expired."""
        credential = self._credential
        if self._is_fresh(credential):
            return credential.access_token

        logger.warning(f"Token for drive {self.name} expired, refreshing")
        return await self.force_refresh(stale_token=credential.access_token)

    async def force_refresh(self, stale_token: str | None = None) -> str:
        """
        Refresh the access token.

        Args:
            stale_token: The token the caller found expired or rejected.
                If the cached token no longer matches it once the lock is
                held, another caller already refreshed and that result is
                returned without a network call.

        Callers that queued behind an in-flight refresh share its outcome:
        the new token if it succeeded, its error if it failed.

        Returns:
            The new access token

        Raises:
            TokenRefreshError: If the refresh fails; not retried
        """
        generation = self._generation
        async with self._lock:
            if self._generation != generation:
                if self._refresh_error is not None:
                    raise self._refresh_error
                return self._credential.access_token

            current = self._credential
            if stale_token is not None and current.access_token != stale_token:
                return current.access_token

            try:
                refreshed = await asyncio.to_thread(self._refresh, current)
            except Exception as e:
                self._refresh_error = e
                logger.error(f"Token refresh for drive {self.name} failed: {e}")
                raise
            else:
                self._refresh_error = None
            finally:
                self._generation += 1

            self._credential = refreshed
            await asyncio.to_thread(self.store.set_credential, self.name, refreshed)

            logger.info(f"Refreshed token for drive {self.name}")
            return refreshed.access_token


async def authorized_call(
    authorizer: Authorizer,
    operation: Callable[[str], Awaitable[T]],
) -> T:
    """
    Run ``operation`` with a bearer token, recovering from one rejection.

    ``operation`` receives the access token and raises AuthExpiredError when
    the remote answers 401. The first rejection forces a refresh and the
    operation is attempted once more; a second rejection is final. Any other
    error propagates from the attempt that raised it.

    Raises:
        AuthInvalidError: If the refreshed token is rejected as well
    """
    token = await authorizer.token()
    try:
        return await operation(token)
    except AuthExpiredError:
        logger.info(f"Token for drive {authorizer.name} rejected, forcing refresh")

    token = await authorizer.force_refresh(stale_token=token)
    try:
        return await operation(token)
    except AuthExpiredError as e:
        raise AuthInvalidError(
            f"Refreshed token for drive {authorizer.name} was rejected; "
            "the drive probably needs to be re-added"
        ) from e
