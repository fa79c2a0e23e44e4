# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Bearer token acquisition for Kusto clusters.

:class:`CredentialManager` binds exactly one :data:`AuthMode` at construction and
owns the token cache for that connection. OAuth flows are delegated to
``azure-identity`` credentials that share the client's HTTP transport.
"""

from __future__ import annotations

import asyncio
import datetime as _dt
import inspect
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlparse

import requests
from azure.core.credentials import TokenCredential
from azure.core.pipeline.transport import RequestsTransport
from azure.identity import (
    AuthenticationRequiredError,
    CertificateCredential,
    ClientSecretCredential,
    InteractiveBrowserCredential,
    ManagedIdentityCredential,
)

from ..common.constants import (
    AUTHORITY_ENV_VARIABLE,
    DEFAULT_AUTHORITY_ID,
    DEFAULT_KUSTO_CLIENT_APP_ID,
    DEFAULT_PUBLIC_LOGIN_URL,
)
from ._error_codes import (
    AUTH_ACQUISITION_FAILED,
    AUTH_CALLBACK_FAILED,
    AUTH_CALLBACK_IN_RUNNING_LOOP,
    AUTH_CALLBACK_TIMEOUT,
    AUTH_INVALID_AUTHORITY,
    VALIDATION_BLANK_ARGUMENT,
)
from .errors import AuthError, ClientError, KustoError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TIMEOUT = 20.0
DEFAULT_INTERACTIVE_TIMEOUT = 300.0
DEFAULT_CALLBACK_TIMEOUT = 30.0
TOKEN_EXPIRY_SKEW = _dt.timedelta(minutes=1)


@dataclass(frozen=True)
class SharedSecret:
    """Application id and secret (client credentials flow)."""

    client_id: str
    secret: str
    authority_id: Optional[str] = None


@dataclass(frozen=True)
class Certificate:
    """
    Application id and X.509 certificate (client credentials flow).

    ``certificate`` is the PEM encoded certificate. When the private key is held
    separately, pass it PEM encoded as ``private_key``.
    """

    client_id: str
    certificate: bytes
    private_key: Optional[bytes] = None
    authority_id: Optional[str] = None
    send_certificate_chain: bool = False


@dataclass(frozen=True)
class Interactive:
    """Browser based user login."""

    username_hint: Optional[str] = None
    client_id: str = DEFAULT_KUSTO_CLIENT_APP_ID
    authority_id: Optional[str] = None


@dataclass(frozen=True)
class StaticToken:
    """A pre-acquired bearer token, used verbatim."""

    token: str


@dataclass(frozen=True)
class TokenCallback:
    """
    Caller supplied token provider.

    ``fn`` takes no arguments and returns either the token string or an awaitable
    resolving to it.
    """

    fn: Callable[[], Union[str, Awaitable[str]]]


@dataclass(frozen=True)
class ManagedIdentity:
    """Azure managed identity. ``client_id`` selects a user-assigned identity."""

    client_id: Optional[str] = None


@dataclass(frozen=True)
class TokenCredentialMode:
    """Any ``azure.core.credentials.TokenCredential``."""

    credential: TokenCredential


AuthMode = Union[
    SharedSecret,
    Certificate,
    Interactive,
    StaticToken,
    TokenCallback,
    ManagedIdentity,
    TokenCredentialMode,
]


@dataclass(frozen=True)
class _TokenCacheEntry:
    access_token: str
    expires_at: _dt.datetime
    account_ref: Any = None

    def is_fresh(self, now: _dt.datetime) -> bool:
        return self.expires_at > now + TOKEN_EXPIRY_SKEW


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def resolve_authority_host(env: Optional[dict] = None) -> str:
    """
    Return the login authority host, honoring the ``AadAuthorityUri`` override.

    :raises ~kusto_sdk.core.errors.AuthError: If the configured value is not an https URL.
    """
    env = os.environ if env is None else env
    value = (env.get(AUTHORITY_ENV_VARIABLE) or DEFAULT_PUBLIC_LOGIN_URL).strip()
    parsed = urlparse(value)
    if parsed.scheme != "https" or not parsed.netloc:
        raise AuthError(
            f"Invalid authority URL '{value}'",
            subcode=AUTH_INVALID_AUTHORITY,
            details={"authority": value},
        )
    return value.rstrip("/")


class _OAuthStrategy:
    """Acquisition for one azure-identity credential."""

    def __init__(self, credential: Any) -> None:
        self.credential = credential

    def acquire(self, scope: str) -> _TokenCacheEntry:
        token = self.credential.get_token(scope)
        return _entry_from_access_token(token)

    def acquire_silent(self, scope: str, account_ref: Any) -> Optional[_TokenCacheEntry]:
        # The credential keeps its own MSAL cache, so a plain request refreshes silently.
        return self.acquire(scope)


class _InteractiveStrategy(_OAuthStrategy):
    def acquire(self, scope: str) -> _TokenCacheEntry:
        record = self.credential.authenticate(scopes=[scope])
        token = self.credential.get_token(scope)
        return _entry_from_access_token(token, account_ref=record)

    def acquire_silent(self, scope: str, account_ref: Any) -> Optional[_TokenCacheEntry]:
        if account_ref is None:
            return None
        try:
            token = self.credential.get_token(scope)
        except AuthenticationRequiredError:
            return None
        return _entry_from_access_token(token, account_ref=account_ref)


def _entry_from_access_token(token: Any, account_ref: Any = None) -> _TokenCacheEntry:
    expires_at = _dt.datetime.fromtimestamp(token.expires_on, tz=_dt.timezone.utc)
    return _TokenCacheEntry(access_token=token.token, expires_at=expires_at, account_ref=account_ref)


class CredentialManager:
    """
    Issue bearer tokens for a Kusto cluster using a single bound :data:`AuthMode`.

    Cached modes (shared secret, certificate, interactive, managed identity and
    token credential) are single-flight: one lock guards the decision and the
    acquisition, so concurrent callers on an empty or stale cache trigger
    exactly one acquisition and then all observe the same token.

    :param cluster_url: Cluster URL, used to build the ``{cluster}/.default`` scope.
    :type cluster_url: :class:`str`
    :param auth: The authentication mode.
    :param session: Optional ``requests.Session`` shared with the token endpoints.
    :type session: :class:`requests.Session` | None
    :param token_timeout: Timeout in seconds for non-interactive acquisition.
    :param interactive_timeout: Timeout in seconds for interactive login.
    :param callback_timeout: Timeout in seconds for asynchronous token callbacks.
    """

    def __init__(
        self,
        cluster_url: str,
        auth: AuthMode,
        *,
        session: Optional[requests.Session] = None,
        token_timeout: Optional[float] = None,
        interactive_timeout: Optional[float] = None,
        callback_timeout: Optional[float] = None,
    ) -> None:
        if not cluster_url or not cluster_url.strip():
            raise ClientError("cluster_url is required", subcode=VALIDATION_BLANK_ARGUMENT)
        self.cluster_url = cluster_url.strip().rstrip("/")
        self.scope = f"{self.cluster_url}/.default"
        self.auth = auth
        self.token_timeout = token_timeout if token_timeout is not None else DEFAULT_TOKEN_TIMEOUT
        self.interactive_timeout = (
            interactive_timeout if interactive_timeout is not None else DEFAULT_INTERACTIVE_TIMEOUT
        )
        self.callback_timeout = callback_timeout if callback_timeout is not None else DEFAULT_CALLBACK_TIMEOUT

        self._lock = threading.Lock()
        self._cache: Optional[_TokenCacheEntry] = None
        self._transport: Optional[RequestsTransport] = None
        self._strategy: Optional[_OAuthStrategy] = self._build_strategy(auth, session)

    def _build_strategy(self, auth: AuthMode, session: Optional[requests.Session]) -> Optional[_OAuthStrategy]:
        if isinstance(auth, (StaticToken, TokenCallback)):
            return None
        if isinstance(auth, TokenCredentialMode):
            return _OAuthStrategy(auth.credential)

        transport = RequestsTransport(
            session=session,
            session_owner=session is None,
            connection_timeout=self.token_timeout,
            read_timeout=self.token_timeout,
        )
        self._transport = transport
        if isinstance(auth, ManagedIdentity):
            return _OAuthStrategy(ManagedIdentityCredential(client_id=auth.client_id, transport=transport))

        authority = resolve_authority_host()
        if isinstance(auth, SharedSecret):
            return _OAuthStrategy(
                ClientSecretCredential(
                    auth.authority_id or DEFAULT_AUTHORITY_ID,
                    auth.client_id,
                    auth.secret,
                    authority=authority,
                    transport=transport,
                )
            )
        if isinstance(auth, Certificate):
            data = auth.certificate
            if auth.private_key:
                data = auth.private_key + b"\n" + auth.certificate
            return _OAuthStrategy(
                CertificateCredential(
                    auth.authority_id or DEFAULT_AUTHORITY_ID,
                    auth.client_id,
                    certificate_data=data,
                    send_certificate_chain=auth.send_certificate_chain,
                    authority=authority,
                    transport=transport,
                )
            )
        if isinstance(auth, Interactive):
            return _InteractiveStrategy(
                InteractiveBrowserCredential(
                    tenant_id=auth.authority_id or DEFAULT_AUTHORITY_ID,
                    client_id=auth.client_id,
                    login_hint=auth.username_hint,
                    authority=authority,
                    timeout=self.interactive_timeout,
                    disable_automatic_authentication=True,
                    transport=transport,
                )
            )
        raise ClientError(f"Unsupported authentication mode: {type(auth).__name__}")

    def get_access_token(self) -> str:
        """
        Return a bearer token for the cluster.

        :return: The access token.
        :rtype: :class:`str`
        :raises ~kusto_sdk.core.errors.AuthError: If no token could be obtained.
        """
        if isinstance(self.auth, StaticToken):
            return self.auth.token
        if isinstance(self.auth, TokenCallback):
            return self._invoke_callback(self.auth.fn)

        with self._lock:
            entry = self._cache
            if entry is not None and entry.is_fresh(_utcnow()):
                logger.debug("Using cached token for %s", self.scope)
                return entry.access_token

            self._cache = None
            new_entry = None
            if entry is not None:
                new_entry = self._try_silent(entry)
            if new_entry is None:
                new_entry = self._acquire_new()
            self._cache = new_entry
            return new_entry.access_token

    def _try_silent(self, entry: _TokenCacheEntry) -> Optional[_TokenCacheEntry]:
        logger.debug("Cached token for %s is expiring, attempting silent reacquisition", self.scope)
        try:
            return self._strategy.acquire_silent(self.scope, entry.account_ref)
        except Exception as e:
            logger.debug("Silent token reacquisition failed, acquiring a new token: %s", e)
            return None

    def _acquire_new(self) -> _TokenCacheEntry:
        logger.debug("Acquiring new token for %s", self.scope)
        try:
            return self._strategy.acquire(self.scope)
        except KustoError:
            raise
        except Exception as e:
            # Custom TokenCredentials may raise anything, not only azure-core errors.
            raise AuthError(
                f"Failed to obtain an access token for '{self.scope}': {e}",
                subcode=AUTH_ACQUISITION_FAILED,
                details={"scope": self.scope, "mode": type(self.auth).__name__},
            ) from e

    def _invoke_callback(self, fn: Callable[[], Any]) -> str:
        try:
            result = fn()
        except Exception as e:
            raise AuthError(f"Token callback failed: {e}", subcode=AUTH_CALLBACK_FAILED) from e
        if inspect.isawaitable(result):
            result = self._run_awaitable(result)
        if not isinstance(result, str) or not result:
            raise AuthError("Token callback returned no token", subcode=AUTH_CALLBACK_FAILED)
        return result

    def _run_awaitable(self, awaitable: Awaitable[str]) -> Any:
        if _in_running_loop():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise ClientError(
                "An asynchronous token callback cannot be awaited from inside a running event loop; "
                "call the client from a worker thread or pass a synchronous callback",
                subcode=AUTH_CALLBACK_IN_RUNNING_LOOP,
            )
        try:
            return asyncio.run(_await_with_timeout(awaitable, self.callback_timeout))
        except asyncio.TimeoutError as e:
            raise AuthError(
                f"Token callback did not complete within {self.callback_timeout} seconds",
                subcode=AUTH_CALLBACK_TIMEOUT,
            ) from e
        except Exception as e:
            raise AuthError(f"Token callback failed: {e}", subcode=AUTH_CALLBACK_FAILED) from e

    def clear_cache(self) -> None:
        with self._lock:
            self._cache = None

    def close(self) -> None:
        """Drop the cached token and close the token transport if it owns its session. Idempotent."""
        with self._lock:
            self._cache = None
            if self._transport is not None:
                self._transport.close()
                self._transport = None


async def _await_with_timeout(awaitable: Awaitable[str], timeout: float) -> str:
    return await asyncio.wait_for(awaitable, timeout)


def _in_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


__all__ = [
    "AuthMode",
    "SharedSecret",
    "Certificate",
    "Interactive",
    "StaticToken",
    "TokenCallback",
    "ManagedIdentity",
    "TokenCredentialMode",
    "CredentialManager",
    "resolve_authority_host",
]
