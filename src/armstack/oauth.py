"""OAuth2 client-credentials token management for the management API.

The token is cached per TokenManager and refreshed lazily on the calling
path once it is within OAUTH_TOKEN_BUFFER_SECONDS of expiry. There is no
background refresh; the refresh is a check-then-act sequence and is not
safe for unsynchronized use from several threads.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from azure.core.credentials import AccessToken
from azure.core.exceptions import ClientAuthenticationError

from .config import OAUTH_TOKEN_BUFFER_SECONDS, Credentials
from .transport import RequestError, Transport

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class AuthenticationFailure(ClientAuthenticationError):
    """Raised when the token endpoint rejects the client credentials.

    Fatal for the calling operation; never retried automatically.
    """

    def __init__(self, message: str, status: int | None = None, body: Any = None) -> None:
        super().__init__(message=message)
        self.status = status
        self.status_code = status
        self.body = body


class TokenAcquisitionFailed(AuthenticationFailure):
    """Raised when a bearer token cannot be acquired or parsed."""

    pass


@dataclass(frozen=True)
class CachedToken:
    """Bearer token as returned by the token endpoint."""

    access_token: str
    expires_on: datetime
    not_before: datetime

    @classmethod
    def from_response(cls, payload: dict[str, Any]) -> CachedToken:
        """Build from a token endpoint response body.

        expires_on and not_before arrive as epoch seconds (often as strings).

        Raises:
            TokenAcquisitionFailed: If a required field is missing or malformed.
        """
        try:
            access_token = payload["access_token"]
            expires_on = datetime.fromtimestamp(int(payload["expires_on"]), UTC)
            not_before = datetime.fromtimestamp(int(payload.get("not_before", 0)), UTC)
        except (KeyError, TypeError, ValueError) as e:
            raise TokenAcquisitionFailed(f"Malformed token response: missing or invalid {e}") from e
        if not access_token:
            raise TokenAcquisitionFailed("Malformed token response: empty access_token")
        return cls(access_token=access_token, expires_on=expires_on, not_before=not_before)


class TokenManager:
    """Acquires and caches a client-credentials bearer token.

    Also usable wherever an ``azure.core`` TokenCredential is accepted via
    get_token().
    """

    def __init__(
        self,
        credentials: Credentials,
        transport: Transport,
        clock: Clock | None = None,
        buffer_seconds: int = OAUTH_TOKEN_BUFFER_SECONDS,
    ) -> None:
        self._credentials = credentials
        self._transport = transport
        self._clock = clock or utc_now
        self._buffer = timedelta(seconds=buffer_seconds)
        self._token: CachedToken | None = None

    @property
    def token_information(self) -> CachedToken | None:
        """The cached token, or None before the first acquisition."""
        return self._token

    @property
    def token_url(self) -> str:
        return "/".join(
            [self._credentials.login_url.rstrip("/"), self._credentials.tenant_id, "oauth2", "token"]
        )

    def access_token_expired(self) -> bool:
        """True if no token is cached or it is inside the refresh buffer."""
        if self._token is None:
            return True
        return self._clock() >= self._token.expires_on - self._buffer

    def client_access_token(self) -> str:
        """Return a valid access token, acquiring a new one if required."""
        if self.access_token_expired():
            self.request_client_token()
        assert self._token is not None
        return self._token.access_token

    def request_client_token(self) -> CachedToken:
        """Perform the client-credentials grant and replace the cache.

        Raises:
            TokenAcquisitionFailed: On any non-2xx response or malformed body.
        """
        form = {
            "grant_type": "client_credentials",
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "resource": self._credentials.resource,
        }
        try:
            response = self._transport.execute(
                "POST",
                self.token_url,
                data=form,
                expects=range(200, 300),
            )
        except RequestError as e:
            logger.error(
                "Token acquisition failed",
                extra={"status": e.status, "tenant_id": self._credentials.tenant_id},
            )
            raise TokenAcquisitionFailed(
                f"Token endpoint returned status {e.status}", status=e.status, body=e.body
            ) from e

        payload = response.body
        if not isinstance(payload, dict):
            raise TokenAcquisitionFailed("Token endpoint returned a non-JSON body")

        token = CachedToken.from_response(payload)
        self._token = token
        logger.info(
            "Acquired management access token",
            extra={
                "tenant_id": self._credentials.tenant_id,
                "expires_on": token.expires_on.isoformat(),
            },
        )
        return token

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        """TokenCredential protocol: scopes are fixed by Credentials.resource."""
        token = self.client_access_token()
        assert self._token is not None
        return AccessToken(token, int(self._token.expires_on.timestamp()))
