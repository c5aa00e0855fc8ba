"""Pytest configuration and fixtures."""

import itertools
import tempfile
from pathlib import Path

import pytest

from tierconvert.config.settings import get_settings
from tierconvert.converters.base import Document
from tierconvert.engine.launcher import EngineProcess
from tierconvert.exceptions import LaunchFailedError


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def isolate_settings(monkeypatch, temp_dir):
    """Keep environment and config files of the host out of the settings cache."""
    monkeypatch.chdir(temp_dir)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def simple_document() -> Document:
    """A small, valid HTML document."""
    return Document.from_string(
        "<!DOCTYPE html><html><head><title>Report</title></head>"
        "<body><h1>Quarterly Report</h1><p>Revenue grew by ten percent.</p></body></html>",
        title="Report",
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeLauncher:
    """Launcher returning fake engine processes with increasing pids.

    Processes carry no transport unless ``transport_factory`` is given.
    """

    def __init__(self, fail_times: int = 0, transport_factory=None) -> None:
        self.fail_times = fail_times
        self.transport_factory = transport_factory
        self.launched: list[EngineProcess] = []
        self.terminated: list[EngineProcess] = []
        self._pids = itertools.count(4000)

    async def launch(self) -> EngineProcess:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise LaunchFailedError("spawn failed")
        transport = self.transport_factory() if self.transport_factory else None
        engine = EngineProcess(pid=next(self._pids), transport=transport)
        self.launched.append(engine)
        return engine

    async def terminate(self, engine: EngineProcess) -> None:
        self.terminated.append(engine)


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()
