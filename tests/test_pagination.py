"""Tests for marker pagination."""

from typing import Any

from armstack.pagination import all_result_pages, dig

RESULT_KEY = ("EnumerationResults", "Blobs")


def page(items: list[dict[str, Any]], next_marker: str | None = None, truncated: bool | None = None) -> dict[str, Any]:
    return {
        "EnumerationResults": {
            "Blobs": items,
            "NextMarker": next_marker,
            "IsTruncated": bool(next_marker) if truncated is None else truncated,
        }
    }


class PagedListing:
    """Serves pre-built pages keyed by marker and records the calls."""

    def __init__(self, pages: dict[str | None, dict[str, Any]]) -> None:
        self.pages = pages
        self.calls: list[dict[str, str]] = []

    def __call__(self, marker: dict[str, str]) -> dict[str, Any]:
        self.calls.append(marker)
        return self.pages[marker.get("marker")]


class TestDig:
    """Tests for nested lookup."""

    def test_found(self) -> None:
        """Test walking nested mappings."""
        assert dig({"a": {"b": 1}}, "a", "b") == 1

    def test_missing(self) -> None:
        """Test that a missing key returns the default."""
        assert dig({"a": {}}, "a", "b", default="x") == "x"
        assert dig({"a": 3}, "a", "b") is None


class TestAllResultPages:
    """Tests for all_result_pages."""

    def test_single_page(self) -> None:
        """Test that an untruncated page ends the listing."""
        listing = PagedListing({None: page([{"Key": "a"}])})

        assert all_result_pages(None, RESULT_KEY, listing) == [{"Key": "a"}]
        assert listing.calls == [{}]

    def test_three_pages_in_order(self) -> None:
        """Test that items from every page are concatenated in order."""
        listing = PagedListing(
            {
                None: page([{"Key": "a"}, {"Key": "b"}], next_marker="m1"),
                "m1": page([{"Key": "c"}], next_marker="m2"),
                "m2": page([{"Key": "d"}]),
            }
        )

        items = all_result_pages(None, RESULT_KEY, listing)

        assert [item["Key"] for item in items] == ["a", "b", "c", "d"]
        assert listing.calls == [{}, {"marker": "m1"}, {"marker": "m2"}]

    def test_starts_from_given_marker(self) -> None:
        """Test that an initial marker is sent with the first request."""
        listing = PagedListing({"m1": page([{"Key": "c"}])})

        assert all_result_pages("m1", RESULT_KEY, listing) == [{"Key": "c"}]
        assert listing.calls == [{"marker": "m1"}]

    def test_last_item_key_as_marker(self) -> None:
        """Test that the last item's key is used when NextMarker is absent."""
        listing = PagedListing(
            {
                None: page([{"Key": "a"}, {"Key": "b"}], truncated=True),
                "b": page([{"Key": "c"}]),
            }
        )

        items = all_result_pages(None, RESULT_KEY, listing)

        assert [item["Key"] for item in items] == ["a", "b", "c"]

    def test_repeated_marker_stops(self) -> None:
        """Test that a provider returning the same marker twice terminates."""
        listing = PagedListing(
            {
                None: page([{"Key": "a"}], next_marker="m1"),
                "m1": page([{"Key": "b"}], next_marker="m1"),
            }
        )

        items = all_result_pages(None, RESULT_KEY, listing)

        assert [item["Key"] for item in items] == ["a", "b"]
        assert len(listing.calls) == 2

    def test_marker_cycle_stops(self) -> None:
        """Test that a marker cycle through earlier pages terminates."""
        listing = PagedListing(
            {
                "m1": page([{"Key": "a"}], next_marker="m2"),
                "m2": page([{"Key": "b"}], next_marker="m1"),
            }
        )

        items = all_result_pages("m1", RESULT_KEY, listing)

        assert [item["Key"] for item in items] == ["a", "b"]

    def test_page_limit(self) -> None:
        """Test that max_pages bounds the number of requests."""

        def endless(marker: dict[str, str]) -> dict[str, Any]:
            n = int(marker.get("marker", "0")) + 1
            return page([{"Key": str(n)}], next_marker=str(n))

        items = all_result_pages(None, RESULT_KEY, endless, max_pages=3)

        assert [item["Key"] for item in items] == ["1", "2", "3"]

    def test_missing_result_set(self) -> None:
        """Test that a page without the result key yields nothing."""
        assert all_result_pages(None, RESULT_KEY, lambda marker: {}) == []
