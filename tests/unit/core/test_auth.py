# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Unit tests for CredentialManager."""

import asyncio
import inspect
import os
import threading
import time

import pytest
import requests
from unittest.mock import ANY, MagicMock, patch

from azure.core.credentials import AccessToken, TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import AuthenticationRequiredError

from kusto_sdk.core._auth import (
    Certificate,
    CredentialManager,
    Interactive,
    ManagedIdentity,
    SharedSecret,
    StaticToken,
    TokenCallback,
    TokenCredentialMode,
    resolve_authority_host,
)
from kusto_sdk.core._error_codes import (
    AUTH_ACQUISITION_FAILED,
    AUTH_CALLBACK_FAILED,
    AUTH_CALLBACK_IN_RUNNING_LOOP,
    AUTH_CALLBACK_TIMEOUT,
    AUTH_INVALID_AUTHORITY,
)
from kusto_sdk.core.errors import AuthError, ClientError

CLUSTER = "https://mycluster.kusto.windows.net"


def _token(value="tok", lifetime=3600):
    return AccessToken(value, int(time.time()) + lifetime)


def _credential_manager(credential, **kwargs):
    return CredentialManager(CLUSTER, TokenCredentialMode(credential), **kwargs)


class TestStaticAndCallbackModes:
    def test_static_token_is_returned_verbatim(self):
        manager = CredentialManager(CLUSTER, StaticToken("abc"))
        assert manager.get_access_token() == "abc"
        assert manager.get_access_token() == "abc"

    def test_sync_callback_is_invoked_every_time(self):
        fn = MagicMock(side_effect=["t1", "t2"])
        manager = CredentialManager(CLUSTER, TokenCallback(fn))
        assert manager.get_access_token() == "t1"
        assert manager.get_access_token() == "t2"

    def test_async_callback_is_awaited(self):
        async def provide():
            await asyncio.sleep(0)
            return "async-token"

        manager = CredentialManager(CLUSTER, TokenCallback(provide))
        assert manager.get_access_token() == "async-token"

    def test_async_callback_timeout(self):
        async def slow():
            await asyncio.sleep(5)
            return "late"

        manager = CredentialManager(CLUSTER, TokenCallback(slow), callback_timeout=0.01)
        with pytest.raises(AuthError) as exc_info:
            manager.get_access_token()
        assert exc_info.value.subcode == AUTH_CALLBACK_TIMEOUT

    def test_callback_failure_becomes_auth_error(self):
        manager = CredentialManager(CLUSTER, TokenCallback(MagicMock(side_effect=RuntimeError("vault down"))))
        with pytest.raises(AuthError) as exc_info:
            manager.get_access_token()
        assert exc_info.value.subcode == AUTH_CALLBACK_FAILED
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_async_callback_inside_running_loop_is_rejected(self):
        created = []

        async def provide():
            return "never"

        def fn():
            coro = provide()
            created.append(coro)
            return coro

        manager = CredentialManager(CLUSTER, TokenCallback(fn))

        async def call_from_loop():
            return manager.get_access_token()

        with pytest.raises(ClientError) as exc_info:
            asyncio.run(call_from_loop())
        assert exc_info.value.subcode == AUTH_CALLBACK_IN_RUNNING_LOOP
        assert inspect.getcoroutinestate(created[0]) == inspect.CORO_CLOSED

    def test_callback_returning_empty_token(self):
        manager = CredentialManager(CLUSTER, TokenCallback(lambda: ""))
        with pytest.raises(AuthError):
            manager.get_access_token()


class TestTokenCache:
    def test_scope_is_cluster_default(self):
        manager = _credential_manager(MagicMock(spec=TokenCredential))
        assert manager.scope == "https://mycluster.kusto.windows.net/.default"

    def test_blank_cluster_url_rejected(self):
        with pytest.raises(ClientError):
            CredentialManager("  ", StaticToken("x"))

    def test_fresh_cached_token_makes_no_further_calls(self):
        credential = MagicMock(spec=TokenCredential)
        credential.get_token.return_value = _token("cached")
        manager = _credential_manager(credential)

        assert manager.get_access_token() == "cached"
        assert manager.get_access_token() == "cached"
        assert manager.get_access_token() == "cached"
        credential.get_token.assert_called_once_with("https://mycluster.kusto.windows.net/.default")

    def test_token_expiring_within_a_minute_is_reacquired(self):
        credential = MagicMock(spec=TokenCredential)
        credential.get_token.side_effect = [_token("old", lifetime=30), _token("new")]
        manager = _credential_manager(credential)

        assert manager.get_access_token() == "old"
        assert manager.get_access_token() == "new"
        assert credential.get_token.call_count == 2

    def test_concurrent_callers_trigger_single_acquisition(self):
        calls = []

        def slow_get_token(scope):
            calls.append(scope)
            time.sleep(0.05)
            return _token("shared")

        credential = MagicMock(spec=TokenCredential)
        credential.get_token.side_effect = slow_get_token
        manager = _credential_manager(credential)

        results = []
        start = threading.Barrier(8)

        def worker():
            start.wait()
            results.append(manager.get_access_token())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert results == ["shared"] * 8

    def test_acquisition_failure_becomes_auth_error(self):
        credential = MagicMock(spec=TokenCredential)
        credential.get_token.side_effect = ClientAuthenticationError("bad secret")
        manager = _credential_manager(credential)

        with pytest.raises(AuthError) as exc_info:
            manager.get_access_token()
        assert exc_info.value.subcode == AUTH_ACQUISITION_FAILED
        assert exc_info.value.is_permanent

    def test_non_azure_credential_failure_becomes_auth_error(self):
        credential = MagicMock(spec=TokenCredential)
        credential.get_token.side_effect = RuntimeError("vault unreachable")
        manager = _credential_manager(credential)

        with pytest.raises(AuthError) as exc_info:
            manager.get_access_token()
        assert exc_info.value.subcode == AUTH_ACQUISITION_FAILED
        assert "vault unreachable" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_failed_silent_refresh_falls_back_to_new_acquisition(self):
        credential = MagicMock(spec=TokenCredential)
        credential.get_token.side_effect = [
            _token("old", lifetime=10),
            ClientAuthenticationError("refresh failed"),
            _token("fresh"),
        ]
        manager = _credential_manager(credential)

        manager.get_access_token()
        assert manager.get_access_token() == "fresh"
        assert credential.get_token.call_count == 3

    def test_clear_cache_forces_reacquisition(self):
        credential = MagicMock(spec=TokenCredential)
        credential.get_token.side_effect = [_token("a"), _token("b")]
        manager = _credential_manager(credential)

        manager.get_access_token()
        manager.clear_cache()
        assert manager.get_access_token() == "b"


class TestAuthorityHost:
    def test_default_public_cloud(self):
        assert resolve_authority_host({}) == "https://login.microsoftonline.com"

    def test_sovereign_override(self):
        assert resolve_authority_host({"AadAuthorityUri": "https://login.microsoftonline.us/"}) == (
            "https://login.microsoftonline.us"
        )

    @pytest.mark.parametrize("value", ["http://login.example.com", "not a url", "https://"])
    def test_malformed_authority_rejected(self, value):
        with pytest.raises(AuthError) as exc_info:
            resolve_authority_host({"AadAuthorityUri": value})
        assert exc_info.value.subcode == AUTH_INVALID_AUTHORITY


class TestOAuthModes:
    @patch.dict(os.environ, {"AadAuthorityUri": "https://login.microsoftonline.us"})
    @patch("kusto_sdk.core._auth.ClientSecretCredential")
    def test_shared_secret_uses_client_secret_credential(self, mock_cls):
        mock_cls.return_value.get_token.return_value = _token("app")
        manager = CredentialManager(CLUSTER, SharedSecret("app-id", "s3cret", "tenant-1"))

        assert manager.get_access_token() == "app"
        mock_cls.assert_called_once_with(
            "tenant-1",
            "app-id",
            "s3cret",
            authority="https://login.microsoftonline.us",
            transport=ANY,
        )

    @patch.dict(os.environ, {"AadAuthorityUri": "https://login.microsoftonline.com"})
    @patch("kusto_sdk.core._auth.ClientSecretCredential")
    def test_shared_secret_defaults_to_organizations(self, mock_cls):
        CredentialManager(CLUSTER, SharedSecret("app-id", "s3cret"))
        assert mock_cls.call_args[0][0] == "organizations"

    @patch.dict(os.environ, {"AadAuthorityUri": "ftp://nowhere"})
    def test_invalid_authority_fails_construction(self):
        with pytest.raises(AuthError):
            CredentialManager(CLUSTER, SharedSecret("app-id", "s3cret"))

    @patch.dict(os.environ, {"AadAuthorityUri": "https://login.microsoftonline.com"})
    @patch("kusto_sdk.core._auth.CertificateCredential")
    def test_certificate_concatenates_separate_key(self, mock_cls):
        CredentialManager(CLUSTER, Certificate("app-id", b"CERT", private_key=b"KEY", authority_id="t"))
        kwargs = mock_cls.call_args[1]
        assert kwargs["certificate_data"] == b"KEY\nCERT"
        assert kwargs["send_certificate_chain"] is False

    @patch("kusto_sdk.core._auth.ManagedIdentityCredential")
    def test_managed_identity(self, mock_cls):
        mock_cls.return_value.get_token.return_value = _token("mi")
        manager = CredentialManager(CLUSTER, ManagedIdentity(client_id="uami"))
        assert manager.get_access_token() == "mi"
        assert mock_cls.call_args[1]["client_id"] == "uami"


class TestInteractiveMode:
    @pytest.fixture
    def browser(self):
        with patch.dict(os.environ, {"AadAuthorityUri": "https://login.microsoftonline.com"}):
            with patch("kusto_sdk.core._auth.InteractiveBrowserCredential") as mock_cls:
                yield mock_cls

    def test_first_acquisition_authenticates(self, browser):
        credential = browser.return_value
        credential.authenticate.return_value = "record"
        credential.get_token.return_value = _token("user")

        manager = CredentialManager(CLUSTER, Interactive(username_hint="me@contoso.com"), interactive_timeout=42)

        assert manager.get_access_token() == "user"
        credential.authenticate.assert_called_once_with(scopes=["https://mycluster.kusto.windows.net/.default"])
        kwargs = browser.call_args[1]
        assert kwargs["login_hint"] == "me@contoso.com"
        assert kwargs["client_id"] == "db662dc1-0cfe-4e1c-a843-19a68e65be58"
        assert kwargs["timeout"] == 42
        assert kwargs["disable_automatic_authentication"] is True

    def test_expiring_token_is_refreshed_silently(self, browser):
        credential = browser.return_value
        credential.authenticate.return_value = "record"
        credential.get_token.side_effect = [_token("first", lifetime=5), _token("silent")]

        manager = CredentialManager(CLUSTER, Interactive())
        manager.get_access_token()

        assert manager.get_access_token() == "silent"
        credential.authenticate.assert_called_once()

    def test_silent_failure_prompts_again(self, browser):
        credential = browser.return_value
        credential.authenticate.return_value = "record"
        credential.get_token.side_effect = [
            _token("first", lifetime=5),
            AuthenticationRequiredError(["scope"]),
            _token("second"),
        ]

        manager = CredentialManager(CLUSTER, Interactive())
        manager.get_access_token()

        assert manager.get_access_token() == "second"
        assert credential.authenticate.call_count == 2


class TestClose:
    @patch("kusto_sdk.core._auth.ManagedIdentityCredential")
    @patch("kusto_sdk.core._auth.RequestsTransport")
    def test_close_releases_owned_transport(self, mock_transport, mock_cred):
        manager = CredentialManager(CLUSTER, ManagedIdentity())
        assert mock_transport.call_args[1]["session_owner"] is True

        manager.close()
        manager.close()

        mock_transport.return_value.close.assert_called_once()

    @patch("kusto_sdk.core._auth.ManagedIdentityCredential")
    def test_close_leaves_shared_session_open(self, mock_cred):
        session = MagicMock(spec=requests.Session)
        manager = CredentialManager(CLUSTER, ManagedIdentity(), session=session)

        manager.close()

        session.close.assert_not_called()

    def test_close_drops_cached_token(self):
        credential = MagicMock(spec=TokenCredential)
        credential.get_token.side_effect = [_token("a"), _token("b")]
        manager = _credential_manager(credential)

        manager.get_access_token()
        manager.close()

        assert manager.get_access_token() == "b"
