"""HTTP transport.

A thin wrapper over ``requests`` that executes one request, checks the
status against the caller's expectations, and returns a Response value.
Authentication is applied before requests reach this layer.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import requests
from azure.core.exceptions import HttpResponseError
from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

DEFAULT_EXPECTED_STATUSES: tuple[int, ...] = (200,)

# Body excerpt kept in error messages
MAX_ERROR_BODY_CHARS = 500


@dataclass
class Response:
    """Result of an executed request."""

    status: int
    headers: CaseInsensitiveDict[str] = field(default_factory=CaseInsensitiveDict)
    content: bytes = b""

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @property
    def body(self) -> Any:
        """JSON-decoded body when the payload is JSON, text otherwise."""
        if not self.content:
            return {}
        content_type = self.headers.get("Content-Type", "")
        if "json" in content_type or self.content.lstrip()[:1] in (b"{", b"["):
            try:
                return json.loads(self.content)
            except ValueError:
                return self.text
        return self.text

    @classmethod
    def from_requests(cls, response: requests.Response) -> Response:
        return cls(
            status=response.status_code,
            headers=CaseInsensitiveDict(response.headers),
            content=response.content,
        )


class RequestError(HttpResponseError):
    """Raised when a management or storage call returns an unexpected status.

    Carries the request method and URL plus the raw response so callers
    can inspect the status and body before deciding whether to retry.
    """

    def __init__(self, method: str, url: str, response: Response) -> None:
        excerpt = response.text[:MAX_ERROR_BODY_CHARS]
        super().__init__(
            message=f"{method} {urlsplit(url).path} returned unexpected status "
            f"{response.status}: {excerpt}"
        )
        self.method = method
        self.url = url
        self.path = urlsplit(url).path
        self.status = response.status
        self.status_code = response.status
        self.headers = response.headers
        self.body = response.body
        self.http_response = response


class Transport:
    """Executes HTTP requests through a shared ``requests.Session``."""

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout_seconds: float = 60,
    ) -> None:
        self._session = session or requests.Session()
        self._timeout_seconds = timeout_seconds

    def execute(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Any = None,
        expects: Iterable[int] = DEFAULT_EXPECTED_STATUSES,
    ) -> Response:
        """Send a request and verify the response status.

        Args:
            method: HTTP method.
            url: Absolute destination URL.
            headers: Request headers.
            params: Query parameters.
            json: JSON body (mutually exclusive with data).
            data: Form mapping or raw bytes body.
            expects: Status codes treated as success.

        Returns:
            The response.

        Raises:
            RequestError: If the status is not in expects.
        """
        method = method.upper()
        response = self.send(
            method,
            url,
            headers=dict(headers or {}),
            params=dict(params or {}),
            json=json,
            data=data,
        )
        logger.debug(
            "HTTP request complete",
            extra={
                "method": method,
                "host": urlsplit(url).netloc,
                "path": urlsplit(url).path,
                "status": response.status,
            },
        )
        if response.status not in tuple(expects):
            raise RequestError(method, url, response)
        return response

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, Any],
        json: Any,
        data: Any,
    ) -> Response:
        result = self._session.request(
            method,
            url,
            headers=headers,
            params=params or None,
            json=json,
            data=data,
            timeout=self._timeout_seconds,
        )
        return Response.from_requests(result)

    def close(self) -> None:
        self._session.close()
