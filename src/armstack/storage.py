"""Blob storage client.

Every call is SharedKey-signed through a RequestDispatcher. Only the
operations needed for template externalization and blob enumeration are
provided.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import timedelta
from typing import Any
from urllib.parse import urlencode

from .config import BLOB_API_VERSION, ConfigurationError, Credentials, ServiceConfig
from .dispatcher import RequestDispatcher
from .models import BlobInfo
from .oauth import Clock, utc_now
from .pagination import all_result_pages
from .signing import SasBlobSignature, SharedKeySignature, uri_escape
from .transport import RequestError, Response, Transport

logger = logging.getLogger(__name__)

REQUIRED_CREDENTIALS: tuple[str, ...] = ("blob_secret_key", "blob_account_name")

CONTAINER_PARAMS = {"restype": "container"}


def _parse_xml(response: Response) -> ET.Element:
    try:
        return ET.fromstring(response.content)
    except ET.ParseError as e:
        raise ValueError(f"Malformed XML listing from storage: {e}") from e


def _text(element: ET.Element, path: str) -> str | None:
    found = element.find(path)
    return found.text if found is not None else None


def parse_blob_listing(root: ET.Element) -> dict[str, Any]:
    """Normalize an ``EnumerationResults`` document into a page mapping.

    Returns ``{"EnumerationResults": {"Blobs": [...], "NextMarker": ...,
    "IsTruncated": bool}}`` so the generic pagination helper can walk it.
    """
    blobs = []
    for blob in root.iterfind("Blobs/Blob"):
        name = _text(blob, "Name")
        blobs.append(
            {
                "Key": name,
                "Name": name,
                "Size": int(_text(blob, "Properties/Content-Length") or 0),
                "Etag": _text(blob, "Properties/Etag"),
                "ContentType": _text(blob, "Properties/Content-Type"),
                "LastModified": _text(blob, "Properties/Last-Modified"),
            }
        )
    next_marker = _text(root, "NextMarker")
    return {
        "EnumerationResults": {
            "Blobs": blobs,
            "NextMarker": next_marker,
            "IsTruncated": bool(next_marker),
        }
    }


class BlobStorage:
    """Storage account client."""

    def __init__(
        self,
        credentials: Credentials,
        transport: Transport,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the client.

        Raises:
            ConfigurationError: If the blob account credentials are missing
                or the shared key is not valid base64.
        """
        for name in REQUIRED_CREDENTIALS:
            if not getattr(credentials, name):
                raise ConfigurationError(f"Missing required credential `{name}`")
        assert credentials.blob_account_name is not None
        assert credentials.blob_secret_key is not None

        self._account_name = credentials.blob_account_name
        self._clock = clock or utc_now
        try:
            self._signer = SharedKeySignature(credentials.blob_secret_key, self._account_name)
            self._url_signer = SasBlobSignature(credentials.blob_secret_key, self._account_name)
        except ValueError as e:
            raise ConfigurationError(f"AZURE_BLOB_SECRET_KEY is invalid: {e}") from e

        self._api = RequestDispatcher(
            self.endpoint,
            transport,
            service=ServiceConfig(api_version=BLOB_API_VERSION),
            signer=self._signer,
            clock=self._clock,
        )

    @property
    def endpoint(self) -> str:
        return f"https://{self._account_name}.blob.core.windows.net"

    @property
    def api_version(self) -> str:
        return BLOB_API_VERSION

    @staticmethod
    def object_path(container: str, key: str) -> str:
        """Escaped ``container/key`` path; each key segment is escaped."""
        return "/".join([container, *(uri_escape(part) for part in key.split("/"))])

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def container_exists(self, name: str) -> bool:
        try:
            self._api.request("HEAD", name, params=CONTAINER_PARAMS)
        except RequestError as e:
            if e.status == 404:
                return False
            raise
        return True

    def ensure_container(self, name: str) -> bool:
        """Create the container unless it exists.

        Returns:
            True if the container was created by this call.
        """
        if self.container_exists(name):
            return False
        try:
            self._api.request(
                "PUT",
                name,
                params=CONTAINER_PARAMS,
                headers={"Content-Length": "0"},
                expects=(201,),
            )
        except RequestError as e:
            # Lost a creation race
            if e.status == 409:
                return False
            raise
        logger.info("Created storage container", extra={"container": name})
        return True

    def delete_container(self, name: str) -> bool:
        try:
            self._api.request("DELETE", name, params=CONTAINER_PARAMS, expects=(202,))
        except RequestError as e:
            if e.status == 404:
                return False
            raise
        return True

    def list_containers(self) -> list[str]:
        response = self._api.request("GET", "/", params={"comp": "list"})
        root = _parse_xml(response)
        return [
            name
            for name in (_text(c, "Name") for c in root.iterfind("Containers/Container"))
            if name
        ]

    # -------------------------------------------------------------------------
    # Blobs
    # -------------------------------------------------------------------------

    def list_blobs(self, container: str, prefix: str | None = None) -> list[BlobInfo]:
        """List blobs in a container across all pages."""

        def fetch_page(marker: dict[str, str]) -> dict[str, Any]:
            params: dict[str, str] = {"restype": "container", "comp": "list", **marker}
            if prefix:
                params["prefix"] = prefix
            response = self._api.request("GET", container, params=params)
            return parse_blob_listing(_parse_xml(response))

        entries = all_result_pages(None, ("EnumerationResults", "Blobs"), fetch_page)
        return [
            BlobInfo(
                container=container,
                name=entry["Name"],
                size=entry["Size"],
                etag=entry["Etag"],
                content_type=entry["ContentType"],
                updated=entry["LastModified"],
            )
            for entry in entries
        ]

    def put_object(
        self,
        container: str,
        key: str,
        data: bytes,
        content_type: str | None = None,
    ) -> str:
        """Upload a block blob and return its (unsigned) URL."""
        headers = {
            "Content-Length": str(len(data)),
            "x-ms-blob-type": "BlockBlob",
        }
        if content_type:
            headers["Content-Type"] = content_type
        path = self.object_path(container, key)
        self._api.request("PUT", path, headers=headers, data=data, expects=(201,))
        logger.info(
            "Stored blob",
            extra={"container": container, "blob": key, "size": len(data)},
        )
        return f"{self.endpoint}/{path}"

    def get_object(self, container: str, key: str) -> bytes:
        response = self._api.request("GET", self.object_path(container, key))
        return response.content

    def object_info(self, container: str, key: str) -> BlobInfo | None:
        """Blob properties from a HEAD request, or None if absent."""
        try:
            response = self._api.request("HEAD", self.object_path(container, key))
        except RequestError as e:
            if e.status == 404:
                return None
            raise
        return BlobInfo(
            container=container,
            name=key,
            size=int(response.headers.get("Content-Length", 0)),
            etag=response.headers.get("ETag"),
            content_type=response.headers.get("Content-Type"),
            updated=response.headers.get("Last-Modified"),
        )

    def delete_object(self, container: str, key: str) -> bool:
        """Delete a blob; False if it did not exist."""
        try:
            self._api.request("DELETE", self.object_path(container, key), expects=(202,))
        except RequestError as e:
            if e.status == 404:
                return False
            raise
        return True

    def blob_url(self, container: str, key: str, timeout_seconds: int) -> str:
        """Mint a read-only URL for one blob valid for timeout_seconds."""
        path = self.object_path(container, key)
        expiry = self._clock() + timedelta(seconds=timeout_seconds)
        params = {
            "sr": "b",
            "sv": self.api_version,
            "se": expiry.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "sp": "r",
        }
        params["sig"] = self._url_signer.generate("GET", path, params=params)
        return f"{self.endpoint}/{path}?{urlencode(params)}"
