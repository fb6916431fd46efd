"""Template externalization.

The deployment API accepts a template by reference but limits inline
request bodies, so templates are written to blob storage and the
deployment is pointed at a time-limited read URL.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .config import MAX_INLINE_TEMPLATE_BYTES
from .models import Stack
from .storage import BlobStorage

logger = logging.getLogger(__name__)


def template_size(template: dict[str, Any]) -> int:
    """Serialized size of a template in bytes."""
    return len(json.dumps(template).encode("utf-8"))


class TemplateStore:
    """Stores stack templates in a root container, one blob per stack."""

    def __init__(
        self,
        storage: BlobStorage,
        container: str,
        url_timeout_seconds: int,
    ) -> None:
        self._storage = storage
        self._container = container
        self._url_timeout_seconds = url_timeout_seconds

    @property
    def container(self) -> str:
        return self._container

    @staticmethod
    def should_externalize(template: dict[str, Any], always: bool) -> bool:
        return always or template_size(template) > MAX_INLINE_TEMPLATE_BYTES

    @staticmethod
    def template_key(stack: Stack) -> str:
        return f"{stack.name}.json"

    def save(self, stack: Stack) -> str:
        """Write the stack template and return a dereferenceable URL.

        Raises:
            ValueError: If the stack has no template.
            RequestError: If the storage calls fail.
        """
        if stack.template is None:
            raise ValueError(f"Stack '{stack.name}' has no template to store")
        self._storage.ensure_container(self._container)
        key = self.template_key(stack)
        self._storage.put_object(
            self._container,
            key,
            json.dumps(stack.template).encode("utf-8"),
            content_type="application/json",
        )
        logger.info(
            "Externalized stack template",
            extra={"stack": stack.name, "container": self._container, "blob": key},
        )
        return self._storage.blob_url(self._container, key, self._url_timeout_seconds)

    def url(self, stack: Stack) -> str:
        """Mint a fresh read URL for an already stored template."""
        return self._storage.blob_url(self._container, self.template_key(stack), self._url_timeout_seconds)

    def load(self, stack: Stack) -> dict[str, Any]:
        content = self._storage.get_object(self._container, self.template_key(stack))
        return json.loads(content)

    def delete(self, stack: Stack) -> bool:
        deleted = self._storage.delete_object(self._container, self.template_key(stack))
        if deleted:
            logger.info(
                "Deleted externalized template",
                extra={"stack": stack.name, "container": self._container},
            )
        return deleted
