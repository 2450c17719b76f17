import pytest

from common.schemas import ProbeResult
from common.storage import MemoryStorage


class ManualClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeProbe:
    """Returns scripted results per secret; unknown secrets succeed."""

    def __init__(self, results: dict[str, ProbeResult] | None = None):
        self.results = results or {}
        self.calls: list[str] = []

    async def test_connection(self, secret: str) -> ProbeResult:
        self.calls.append(secret)
        return self.results.get(secret, ProbeResult(success=True, message="Connected", status_code=200))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def probe_factory():
    return FakeProbe
