"""
Shared fixtures for Records service tests.
"""

import pytest

from service_records.app.domain.identity import Anonymous, Authenticated


class FakeClock:
    """Manually advanced clock for window and TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def farm_user():
    return Authenticated(user_id="u1", role="worker", tenant_id="42", address="10.0.0.1")


@pytest.fixture
def other_farm_user():
    return Authenticated(user_id="u2", role="worker", tenant_id="43", address="10.0.0.2")


@pytest.fixture
def anonymous():
    return Anonymous(address="10.0.0.9")
