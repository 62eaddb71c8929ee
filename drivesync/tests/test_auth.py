"""Tests for credential refresh and the authorized call wrapper."""

import asyncio
import shutil
import tempfile
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

from django.core.exceptions import ImproperlyConfigured
from django.test import SimpleTestCase, override_settings
from google.auth.exceptions import RefreshError

from drivesync.auth import Authorizer, authorized_call, get_client_config, refresh_credential
from drivesync.exceptions import (
    AuthExpiredError,
    AuthInvalidError,
    NotFoundError,
    TokenRefreshError,
)
from drivesync.secrets import Credential, IdentityStore


def _credential(token: str = "token-0", expires_in: int = 3600) -> Credential:
    return Credential(
        access_token=token,
        refresh_token="refresh",
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        scopes=["https://www.googleapis.com/auth/drive"],
    )


class CountingRefresher:
    """Refresher handing out token-1, token-2, ... after a short delay."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, credential: Credential) -> Credential:
        time.sleep(self.delay)
        with self._lock:
            self.calls += 1
            number = self.calls
        return _credential(token=f"token-{number}")


class AuthTestCase(SimpleTestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = IdentityStore(Path(self.temp_dir) / "identities.json")

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _authorizer(self, credential: Credential, refresher=None) -> Authorizer:
        self.store.set_credential("work", credential)
        return Authorizer("work", self.store, refresher=refresher or CountingRefresher())


class AuthorizerTests(AuthTestCase):
    def test_unknown_drive_is_rejected(self):
        with self.assertRaises(AuthInvalidError):
            Authorizer("missing", self.store)

    async def test_fresh_token_is_returned_without_refresh(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(_credential(), refresher)

        self.assertEqual(await authorizer.token(), "token-0")
        self.assertEqual(refresher.calls, 0)

    async def test_expired_token_is_refreshed_and_persisted(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(_credential(expires_in=-10), refresher)

        self.assertEqual(await authorizer.token(), "token-1")
        self.assertEqual(refresher.calls, 1)
        self.assertEqual(self.store.get_credential("work").access_token, "token-1")

    @override_settings(DRIVE_TOKEN_EXPIRY_MARGIN=120)
    async def test_token_inside_expiry_margin_is_refreshed(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(_credential(expires_in=60), refresher)

        self.assertEqual(await authorizer.token(), "token-1")

    async def test_missing_expiry_is_treated_as_expired(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(replace(_credential(), expires_at=None), refresher)

        self.assertEqual(await authorizer.token(), "token-1")

    async def test_concurrent_callers_share_one_refresh(self):
        refresher = CountingRefresher(delay=0.05)
        authorizer = self._authorizer(_credential(expires_in=-10), refresher)

        tokens = await asyncio.gather(*(authorizer.token() for _ in range(10)))

        self.assertEqual(refresher.calls, 1)
        self.assertEqual(set(tokens), {"token-1"})

    async def test_concurrent_callers_share_one_failed_refresh(self):
        calls = []

        def failing(credential):
            calls.append(credential.access_token)
            time.sleep(0.05)
            raise TokenRefreshError("invalid_grant")

        authorizer = self._authorizer(_credential(expires_in=-10), failing)

        results = await asyncio.gather(
            *(authorizer.token() for _ in range(5)),
            return_exceptions=True,
        )

        self.assertEqual(len(calls), 1)
        self.assertTrue(all(isinstance(r, TokenRefreshError) for r in results))

        # A later call makes a fresh attempt
        with self.assertRaises(TokenRefreshError):
            await authorizer.token()
        self.assertEqual(len(calls), 2)

    async def test_force_refresh_with_outdated_stale_token_is_a_no_op(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(_credential(token="token-7"), refresher)

        self.assertEqual(await authorizer.force_refresh(stale_token="token-3"), "token-7")
        self.assertEqual(refresher.calls, 0)

    async def test_refresh_failure_propagates(self):
        def failing(credential):
            raise TokenRefreshError("invalid_grant")

        authorizer = self._authorizer(_credential(expires_in=-10), failing)

        with self.assertRaises(TokenRefreshError):
            await authorizer.token()


class AuthorizedCallTests(AuthTestCase):
    async def test_success_needs_no_refresh(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(_credential(), refresher)

        async def operation(token):
            return f"used {token}"

        self.assertEqual(await authorized_call(authorizer, operation), "used token-0")
        self.assertEqual(refresher.calls, 0)

    async def test_single_rejection_is_recovered(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(_credential(), refresher)
        seen = []

        async def operation(token):
            seen.append(token)
            if token == "token-0":
                raise AuthExpiredError("401")
            return "ok"

        self.assertEqual(await authorized_call(authorizer, operation), "ok")
        self.assertEqual(seen, ["token-0", "token-1"])
        self.assertEqual(refresher.calls, 1)

    async def test_second_rejection_fails_without_third_attempt(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(_credential(), refresher)
        attempts = []

        async def operation(token):
            attempts.append(token)
            raise AuthExpiredError("401")

        with self.assertRaises(AuthInvalidError):
            await authorized_call(authorizer, operation)

        self.assertEqual(len(attempts), 2)
        self.assertEqual(refresher.calls, 1)

    async def test_other_errors_are_not_retried(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(_credential(), refresher)
        attempts = []

        async def operation(token):
            attempts.append(token)
            raise NotFoundError("404")

        with self.assertRaises(NotFoundError):
            await authorized_call(authorizer, operation)

        self.assertEqual(len(attempts), 1)
        self.assertEqual(refresher.calls, 0)

    async def test_concurrent_rejections_share_one_refresh(self):
        refresher = CountingRefresher(delay=0.05)
        authorizer = self._authorizer(_credential(), refresher)

        async def operation(token):
            if token == "token-0":
                raise AuthExpiredError("401")
            return token

        results = await asyncio.gather(
            *(authorized_call(authorizer, operation) for _ in range(5))
        )

        self.assertEqual(results, ["token-1"] * 5)
        self.assertEqual(refresher.calls, 1)

    async def test_expiry_between_calls_is_transparent(self):
        refresher = CountingRefresher()
        authorizer = self._authorizer(_credential(), refresher)

        async def operation(token):
            return token

        self.assertEqual(await authorized_call(authorizer, operation), "token-0")

        # The credential lapses between two calls of the same run
        authorizer._credential = replace(
            authorizer.credential,
            expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
        )

        self.assertEqual(await authorized_call(authorizer, operation), "token-1")
        self.assertEqual(refresher.calls, 1)


class ClientConfigTests(AuthTestCase):
    @override_settings(GOOGLE_CLIENT_ID="id", GOOGLE_CLIENT_SECRET="secret")
    def test_settings_take_precedence(self):
        self.store.set_oauth_client_config("google", "stored-id", "stored-secret")

        config = get_client_config(self.store)

        self.assertEqual(config, {"client_id": "id", "client_secret": "secret"})

    @override_settings(GOOGLE_CLIENT_ID="", GOOGLE_CLIENT_SECRET="")
    def test_falls_back_to_identity_store(self):
        self.store.set_oauth_client_config("google", "stored-id", "stored-secret")

        config = get_client_config(self.store)

        self.assertEqual(config["client_id"], "stored-id")

    @override_settings(GOOGLE_CLIENT_ID="", GOOGLE_CLIENT_SECRET="")
    def test_missing_client_is_improperly_configured(self):
        with self.assertRaises(ImproperlyConfigured):
            get_client_config(self.store)


class RefreshCredentialTests(SimpleTestCase):
    @patch("drivesync.auth.Credentials")
    def test_refresh_returns_new_credential(self, mock_credentials_cls):
        mock_credentials = MagicMock()
        mock_credentials.token = "new-token"
        mock_credentials.refresh_token = None
        mock_credentials.expiry = datetime(2030, 1, 1, 12, 0, 0)
        mock_credentials.granted_scopes = None
        mock_credentials_cls.return_value = mock_credentials

        refreshed = refresh_credential(
            _credential(),
            {"client_id": "id", "client_secret": "secret"},
        )

        self.assertEqual(refreshed.access_token, "new-token")
        self.assertEqual(refreshed.refresh_token, "refresh")
        self.assertEqual(refreshed.expires_at, datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc))
        mock_credentials.refresh.assert_called_once()

    @patch("drivesync.auth.Credentials")
    def test_rejected_refresh_raises(self, mock_credentials_cls):
        mock_credentials_cls.return_value.refresh.side_effect = RefreshError("invalid_grant")

        with self.assertRaises(TokenRefreshError):
            refresh_credential(_credential(), {"client_id": "id", "client_secret": "secret"})

    def test_missing_refresh_token_raises(self):
        credential = replace(_credential(), refresh_token="")

        with self.assertRaises(TokenRefreshError):
            refresh_credential(credential, {"client_id": "id", "client_secret": "secret"})
