import pytest

from helpers import FakeClock


@pytest.fixture
def clock():
    """Fake wall clock starting at a fixed epoch."""
    return FakeClock()
