import pytest


class FakeClock:
    """Manually advanced clock (seconds)."""
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSource:
    """Record source that returns whatever `records` holds, or raises `error`."""
    def __init__(self, records=None):
        self.records = list(records or [])
        self.error = None
        self.calls = 0
        self.closed = 0

    def fetch_records(self, limit, start_date=None, end_date=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.records[:limit])

    def authenticate(self):
        return "token"

    def close_session(self):
        self.closed += 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source():
    return FakeSource()
