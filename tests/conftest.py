import dataclasses
import os as _os
import sys

import pytest

# Ensure project root is importable (so `import pdr...` works without installing the package)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from pdr import events  # noqa: E402
from pdr.agent import DiscoveryAgent, RecordingListener  # noqa: E402
from pdr.resolvers import StaticResolver  # noqa: E402
from pdr.runtime import BackoffPolicy, DiscoveryContext, EndpointState, Notifier, TrackedEndpoints  # noqa: E402
from pdr.settings import settings  # noqa: E402


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Point the event journal at an isolated sqlite file."""
    monkeypatch.setattr(events, "settings", dataclasses.replace(settings, db_path=str(tmp_path / "journal.db")))
    events.init_db()
    return events


class ManualClock:
    def __init__(self, now_ms: int = 1_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class ManualScheduler:
    """TimerService driven by the test: nothing runs until poll() or fire()."""

    def __init__(self, name: str = "manual") -> None:
        self.name = name
        self.running = False
        self.periodic: list[tuple] = []
        self.delayed: list[tuple] = []
        self.history: list[int] = []  # every delay ever scheduled

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        # Delayed callbacks already queued are kept: they may still fire after a stop.
        self.running = False
        self.periodic.clear()

    def run_periodically(self, task, interval_ms: int) -> None:
        self.periodic.append((task, interval_ms))

    def run_after_delay(self, task, delay_ms: int) -> None:
        self.delayed.append((task, delay_ms))
        self.history.append(delay_ms)

    def poll(self) -> None:
        for task, _ in list(self.periodic):
            task()

    def fire(self) -> int:
        """Run every queued delayed callback once; returns how many ran."""
        queued, self.delayed = self.delayed, []
        for task, _ in queued:
            task()
        return len(queued)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def ctx(clock, scheduler, listener):
    return DiscoveryContext(
        service_name="broker",
        transport_type="tcp",
        policy=BackoffPolicy(),
        tracked=TrackedEndpoints(),
        notifier=Notifier(listener, "broker"),
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture
def track(ctx):
    """Create an endpoint and install it in the tracked map, as a poll would."""

    def _track(address: str = "10.0.0.1", port: int = 61616) -> EndpointState:
        st = EndpointState(ctx, address, port)
        ctx.tracked.put(st)
        return st

    return _track


@pytest.fixture
def resolver():
    return StaticResolver("broker", {"10.0.0.1", "10.0.0.2"}, 61616)


@pytest.fixture
def agent(resolver, listener, scheduler, clock):
    a = DiscoveryAgent(
        resolver,
        listener,
        scheduler_factory=lambda name: scheduler,
        clock=clock,
        self_address=lambda: "10.0.0.99",
    )
    yield a
    a.stop()
