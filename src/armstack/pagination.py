"""Marker-based pagination for provider listings."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from .config import MAX_RESULT_PAGES

logger = logging.getLogger(__name__)


def dig(data: Any, *path: str, default: Any = None) -> Any:
    """Walk nested mappings, returning default on the first missing key."""
    current = data
    for key in path:
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return current


def all_result_pages(
    next_token: str | None,
    result_key: Sequence[str],
    request: Callable[[dict[str, str]], Mapping[str, Any]],
    *,
    item_key: str = "Key",
    max_pages: int = MAX_RESULT_PAGES,
) -> list[Any]:
    """Collect every item from a marker-paged listing.

    Each page is requested by calling ``request({"marker": token})`` (an
    empty mapping for the first page when next_token is None). Items are
    read from ``result_key`` in the returned mapping; the mapping one level
    above holds the page flags. While that set reports ``IsTruncated`` the
    next marker is its ``NextMarker`` when present, otherwise the
    ``item_key`` of the last item on the page.

    Stops early, keeping what was collected, if the provider hands back a
    marker it already returned or max_pages is reached.

    Args:
        next_token: Marker for the first page, or None.
        result_key: Path to the item list within a page.
        request: Callable performing one page request.
        item_key: Item field used as the marker when NextMarker is absent.
        max_pages: Upper bound on requests.

    Returns:
        Items from all pages in provider order.
    """
    items: list[Any] = []
    seen_markers: set[str] = {next_token} if next_token else set()
    token = next_token
    pages = 0

    while True:
        if pages >= max_pages:
            logger.warning(
                "Pagination stopped at page limit",
                extra={"max_pages": max_pages, "items": len(items)},
            )
            break
        pages += 1

        result = request({"marker": token} if token else {})
        content = dig(result, *result_key)
        if isinstance(content, list):
            items.extend(content)
        elif content is not None:
            items.append(content)

        page_set = dig(result, *result_key[:-1]) if len(result_key) > 1 else result
        if not isinstance(page_set, Mapping) or not page_set.get("IsTruncated"):
            break

        marker = page_set.get("NextMarker")
        if not marker:
            last = content[-1] if isinstance(content, list) and content else content
            marker = last.get(item_key) if isinstance(last, Mapping) else None
        if not marker:
            break

        if marker == token or marker in seen_markers:
            logger.warning(
                "Provider repeated a pagination marker, stopping",
                extra={"marker": marker, "pages": pages},
            )
            break
        seen_markers.add(marker)
        token = marker

    return items
