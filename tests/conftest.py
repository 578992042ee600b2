import pytest

from fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def event_log():
    return []
