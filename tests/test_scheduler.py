import sqlite3
import threading
import time

from pdr import events
from pdr.agent import DiscoveryAgent, RecordingListener
from pdr.resolvers import StaticResolver
from pdr.runtime import BackoffPolicy
from pdr.scheduler import Scheduler


def _wait_for(predicate, timeout_s=3.0):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_periodic_task_runs_immediately_and_repeats():
    s = Scheduler()
    runs = []
    s.start()
    try:
        s.run_periodically(lambda: runs.append(time.monotonic()), 20)
        assert _wait_for(lambda: len(runs) >= 3)
    finally:
        s.stop()


def test_delayed_task_runs_once_on_scheduler_thread():
    s = Scheduler(name="test-scheduler")
    fired = threading.Event()
    names = []

    def task():
        names.append(threading.current_thread().name)
        fired.set()

    s.start()
    try:
        s.run_after_delay(task, 30)
        assert fired.wait(3)
        time.sleep(0.1)
        assert names == ["test-scheduler"]
    finally:
        s.stop()


def test_failing_task_is_logged_and_scheduler_keeps_running(journal):
    s = Scheduler()
    fired = threading.Event()

    def boom():
        raise RuntimeError("task exploded")

    s.start()
    try:
        s.run_after_delay(boom, 0)
        s.run_after_delay(fired.set, 20)
        assert fired.wait(3)
    finally:
        s.stop()

    messages = [e["message"] for e in journal.latest_events()]
    assert "Scheduled task failed: RuntimeError: task exploded" in messages


def test_failing_task_with_unwritable_journal_keeps_scheduler_alive(monkeypatch):
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("unable to open database file")

    monkeypatch.setattr(events, "log_event", broken)
    s = Scheduler()
    fired = threading.Event()

    def boom():
        raise RuntimeError("task exploded")

    s.start()
    try:
        s.run_after_delay(boom, 0)
        s.run_after_delay(fired.set, 20)
        assert fired.wait(3)
        assert s.is_running()
    finally:
        s.stop()


def test_stop_prevents_future_runs():
    s = Scheduler()
    runs = []
    s.start()
    s.run_periodically(lambda: runs.append(1), 10)
    assert _wait_for(lambda: len(runs) >= 1)

    s.stop()
    count = len(runs)
    time.sleep(0.1)

    assert len(runs) == count
    assert s.is_running() is False


def test_scheduler_can_be_restarted():
    s = Scheduler()
    s.start()
    s.stop()
    fired = threading.Event()
    s.start()
    try:
        s.run_after_delay(fired.set, 0)
        assert fired.wait(3)
    finally:
        s.stop()


def test_agent_with_real_scheduler_discovers_and_reconnects():
    listener = RecordingListener()
    resolver = StaticResolver("broker", {"10.0.0.1", "10.0.0.2"}, 61616)
    agent = DiscoveryAgent(
        resolver,
        listener,
        query_interval_s=0.05,
        policy=BackoffPolicy(min_connect_time_ms=20, initial_reconnect_delay_ms=20, max_reconnect_delay_ms=80),
        self_address=lambda: None,
    )
    agent.start()
    try:
        assert _wait_for(lambda: len(listener.uris("add")) == 2)

        agent.report_failure(agent.lookup("10.0.0.1"))
        assert _wait_for(lambda: listener.uris("add").count("tcp://10.0.0.1:61616") == 2)

        resolver.addresses = {"10.0.0.1"}
        assert _wait_for(lambda: listener.uris("remove").count("tcp://10.0.0.2:61616") == 1)
    finally:
        agent.stop()
