"""Pytest configuration and fixtures."""

import sys
from collections.abc import Generator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import MockAzureContext  # noqa: E402


@pytest.fixture
def ctx() -> Generator[MockAzureContext, None, None]:
    """Simulated Azure with blob storage, for modules that don't override it."""
    with MockAzureContext() as context:
        yield context
