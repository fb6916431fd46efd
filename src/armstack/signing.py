"""Request signing for the storage API.

Two signers share one canonicalization core:

- SharedKeySignature builds the canonical string for a full request
  (method, standard headers, ``x-ms-*`` headers, resource path and query
  parameters) and produces the ``Authorization`` header value.
- SasBlobSignature signs the smaller shared-access-signature string used
  to mint a time-limited read URL for a single blob. It returns only the
  raw signature; the caller assembles the query string.

The provider recomputes the same canonical string server-side, so every
byte matters: header order, escaping and line separators are fixed.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

# Characters left unescaped by safe_escape
_UNSAFE_CHARACTERS = re.compile(r"[^a-zA-Z0-9_.\-~]")

# Provider headers included in the canonical header block
CANONICAL_HEADER_PREFIX = "x-ms-"


def safe_escape(value: Any) -> str:
    """Percent-escape a string the way the provider canonicalizes it.

    ``A-Za-z0-9_.~-`` are preserved; every other byte of the UTF-8
    encoding is written as ``%XX`` with upper-case hex.
    """

    def _escape(match: re.Match[str]) -> str:
        return "".join(f"%{byte:02X}" for byte in match.group(0).encode("utf-8"))

    return _UNSAFE_CHARACTERS.sub(_escape, str(value))


uri_escape = safe_escape


class Hmac:
    """Keyed-hash helper.

    Every call builds a fresh digest object, so no state survives between
    calls.
    """

    def __init__(self, kind: str, key: bytes) -> None:
        hashlib.new(kind)  # fail early on unknown algorithms
        self._kind = kind
        self._key = key

    @property
    def kind(self) -> str:
        return self._kind

    def __str__(self) -> str:
        return f"Hmac{self._kind}"

    def hexdigest_of(self, content: str | bytes) -> str:
        """Plain (unkeyed) hex digest of content."""
        return hashlib.new(self._kind, _to_bytes(content)).hexdigest()

    def sign(self, data: str | bytes, key_override: bytes | None = None) -> bytes:
        """Return the raw HMAC of data."""
        return hmac.new(key_override or self._key, _to_bytes(data), self._kind).digest()

    def hex_sign(self, data: str | bytes, key_override: bytes | None = None) -> str:
        """Return the HMAC of data as a hex string."""
        return hmac.new(key_override or self._key, _to_bytes(data), self._kind).hexdigest()


def _to_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


class Signature(ABC):
    """Base signer. Subclasses implement generate()."""

    @abstractmethod
    def generate(
        self,
        http_method: str,
        path: str,
        headers: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> str:
        """Return the value that authenticates the request."""

    def safe_escape(self, value: Any) -> str:
        return safe_escape(value)


class SharedKeySignature(Signature):
    """SharedKey header signer for storage requests."""

    # Standard headers, in canonical order
    SIGNATURE_HEADERS: tuple[str, ...] = (
        "Content-Encoding",
        "Content-Language",
        "Content-Length",
        "Content-MD5",
        "Content-Type",
        "Date",
        "If-Modified-Since",
        "If-Match",
        "If-None-Match",
        "If-Unmodified-Since",
        "Range",
    )

    def __init__(self, shared_key: str, account_name: str) -> None:
        """Create a signer.

        Args:
            shared_key: Base64-encoded account key.
            account_name: Storage account name.

        Raises:
            ValueError: If shared_key is not valid base64.
        """
        try:
            decoded = base64.b64decode(shared_key, validate=True)
        except binascii.Error as e:
            raise ValueError("shared_key must be base64 encoded") from e
        self._hmac = Hmac("sha256", decoded)
        self._account_name = account_name

    @property
    def account_name(self) -> str:
        return self._account_name

    @property
    def hmac(self) -> Hmac:
        return self._hmac

    def generate(
        self,
        http_method: str,
        path: str,
        headers: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> str:
        """Return the ``Authorization`` header value for a request."""
        signature = self.generate_signature(http_method, headers or {}, path, params or {})
        return f"SharedKey {self._account_name}:{signature}"

    def generate_signature(
        self,
        http_method: str,
        headers: Mapping[str, Any],
        path: str,
        params: Mapping[str, Any],
    ) -> str:
        to_sign = self.string_to_sign(http_method, headers, path, params)
        return self.sign_request(to_sign)

    def string_to_sign(
        self,
        http_method: str,
        headers: Mapping[str, Any],
        path: str,
        params: Mapping[str, Any],
    ) -> str:
        lookup = _lower_keys(headers)
        if str(lookup.get("content-length", "")) == "0":
            del lookup["content-length"]
        return "\n".join(
            [
                http_method.upper(),
                *(str(lookup.get(name.lower(), "")) for name in self.SIGNATURE_HEADERS),
                self.build_canonical_headers(headers),
                self.build_canonical_resource(path, params),
            ]
        )

    def sign_request(self, to_sign: str) -> str:
        return base64.b64encode(self._hmac.sign(to_sign)).decode("ascii").strip()

    def build_canonical_headers(self, headers: Mapping[str, Any]) -> str:
        lines = []
        for key, value in headers.items():
            name = str(key).strip().lower()
            if name.startswith(CANONICAL_HEADER_PREFIX):
                lines.append(f"{name}:{str(value).strip()}")
        return "\n".join(sorted(lines))

    def build_canonical_resource(self, path: str, params: Mapping[str, Any]) -> str:
        lines = []
        for key, value in params.items():
            if isinstance(value, (list, tuple)):
                value = ",".join(sorted(str(v).strip() for v in value))
            lines.append(f"{str(key).lower().strip()}:{value}")
        return "\n".join([f"/{self._account_name}{path}", *sorted(lines)])


class SasBlobSignature(SharedKeySignature):
    """Shared access signature signer for single-blob read URLs.

    Never used for general API calls; see BlobStorage.blob_url().
    """

    SIGNATURE_HEADERS: tuple[str, ...] = (
        "Cache-Control",
        "Content-Disposition",
        "Content-Encoding",
        "Content-Language",
        "Content-Type",
    )

    def generate(
        self,
        http_method: str,
        path: str,
        headers: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> str:
        """Return the raw ``sig`` value for the given SAS parameters.

        http_method is accepted for interface parity; SAS strings do not
        include it.
        """
        return self.sign_request(self.string_to_sign(http_method, headers or {}, path, params or {}))

    def string_to_sign(
        self,
        http_method: str,
        headers: Mapping[str, Any],
        path: str,
        params: Mapping[str, Any],
    ) -> str:
        lookup = _lower_keys(headers)
        fields = [
            params.get("sp"),
            params.get("st"),
            params.get("se"),
            "/".join(["/blob", self.account_name, path.lstrip("/")]),
            params.get("si"),
            params.get("sip"),
            params.get("spr"),
            params.get("sv"),
            *(lookup.get(name.lower()) for name in self.SIGNATURE_HEADERS),
        ]
        return "\n".join("" if value is None else str(value) for value in fields)


def _lower_keys(headers: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key).lower(): value for key, value in headers.items()}
