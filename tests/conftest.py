"""Root-level pytest fixtures for all tests."""

import pytest

from tests.helpers.fakes import FakeNavigator, FakeTransport


@pytest.fixture
def transport() -> FakeTransport:
    """In-memory transport with default canned results."""
    return FakeTransport()


@pytest.fixture
def navigator() -> FakeNavigator:
    """Navigator positioned away from the sign-in surface."""
    return FakeNavigator()
