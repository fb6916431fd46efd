"""Per-request authentication and routing.

Each client instance uses exactly one strategy, chosen at construction:

- Signed (storage): ``x-ms-date`` and ``x-ms-version`` headers are added
  and the SharedKey ``Authorization`` header is computed over the final
  request. The path is left untouched.
- Bearer (management): the cached OAuth token is attached, ``api-version``
  is added as a query parameter, and the service root path is inserted
  between the host and the caller's logical path.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from email.utils import format_datetime
from typing import Any
from urllib.parse import urlsplit

from .config import ConfigurationError, ServiceConfig
from .oauth import Clock, TokenManager, utc_now
from .signing import Signature
from .transport import DEFAULT_EXPECTED_STATUSES, Response, Transport

logger = logging.getLogger(__name__)


def time_rfc1123(clock: Clock = utc_now) -> str:
    """Current time formatted for the ``x-ms-date`` header."""
    return format_datetime(clock(), usegmt=True)


def join_url(base: str, path: str) -> str:
    """Join an endpoint and a logical path with exactly one separator."""
    if not path:
        return base.rstrip("/")
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


class RequestDispatcher:
    """Attaches authentication to outgoing calls and hands them to the transport."""

    def __init__(
        self,
        endpoint: str,
        transport: Transport,
        *,
        service: ServiceConfig | None = None,
        token_manager: TokenManager | None = None,
        signer: Signature | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            endpoint: Base URL of the target API.
            transport: Transport executing the requests.
            service: API version and root path of the target service.
            token_manager: Bearer token source (management clients).
            signer: Request signer (storage clients).
            clock: Time source for ``x-ms-date``.

        Raises:
            ConfigurationError: Unless exactly one of token_manager and signer
                is provided.
        """
        if (token_manager is None) == (signer is None):
            raise ConfigurationError(
                "RequestDispatcher requires exactly one of token_manager or signer"
            )
        self._endpoint = endpoint
        self._transport = transport
        self._service = service or ServiceConfig()
        self._token_manager = token_manager
        self._signer = signer
        self._clock = clock or utc_now

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def service(self) -> ServiceConfig:
        return self._service

    @property
    def signs_requests(self) -> bool:
        return self._signer is not None

    def destination(self, path: str) -> str:
        """Absolute URL for a logical path, including any root-path rewrite."""
        dest = join_url(self._endpoint, path)
        if self._signer is None and self._service.root_path:
            parts = urlsplit(dest)
            segments = [s for s in (self._service.root_path.strip("/"), parts.path.strip("/")) if s]
            dest = f"{parts.scheme}://{parts.netloc}/" + "/".join(segments)
        return dest

    def request(
        self,
        method: str,
        path: str = "",
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        data: Any = None,
        expects: Iterable[int] = DEFAULT_EXPECTED_STATUSES,
    ) -> Response:
        """Authenticate and execute a request.

        Raises:
            RequestError: If the response status is not in expects.
            AuthenticationFailure: If a bearer token cannot be acquired.
        """
        method = method.upper()
        request_params: dict[str, Any] = dict(params or {})
        request_headers: dict[str, str] = dict(headers or {})
        dest = self.destination(path)

        if self._signer is not None:
            request_headers["x-ms-date"] = time_rfc1123(self._clock)
            if self._service.api_version:
                request_headers["x-ms-version"] = self._service.api_version
            request_headers["Authorization"] = self._signer.generate(
                method,
                urlsplit(dest).path,
                headers=request_headers,
                params=request_params,
            )
        else:
            assert self._token_manager is not None
            request_headers["Authorization"] = (
                f"Bearer {self._token_manager.client_access_token()}"
            )
            if self._service.api_version:
                request_params["api-version"] = self._service.api_version

        return self._transport.execute(
            method,
            dest,
            headers=request_headers,
            params=request_params,
            json=json,
            data=data,
            expects=expects,
        )
