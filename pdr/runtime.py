from __future__ import annotations

import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Event, Lock, RLock
from typing import Callable

from . import events
from .protocol import Listener, TimerService

# Process-wide, so an epoch is never reused by a later start() of any agent.
_epochs = itertools.count(1)


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


@dataclass(frozen=True)
class BackoffPolicy:
    min_connect_time_ms: int = 1000
    initial_reconnect_delay_ms: int = 1000
    max_reconnect_delay_ms: int = 16000
    max_reconnect_attempts: int = 4  # <= 0 disables the cap

    def __post_init__(self) -> None:
        if self.min_connect_time_ms < 0:
            raise ValueError("min_connect_time_ms must be >= 0.")
        if self.initial_reconnect_delay_ms <= 0:
            raise ValueError("initial_reconnect_delay_ms must be > 0.")
        if self.max_reconnect_delay_ms < self.initial_reconnect_delay_ms:
            raise ValueError("max_reconnect_delay_ms must be >= initial_reconnect_delay_ms.")

    def next_delay(self, delay_ms: int) -> int:
        return min(delay_ms * 2, self.max_reconnect_delay_ms)

    def exhausted(self, connect_failures: int) -> bool:
        return self.max_reconnect_attempts > 0 and connect_failures >= self.max_reconnect_attempts


@dataclass(frozen=True)
class EndpointView:
    address: str
    uri: str
    state: str  # present|retrying|excluded
    connect_failures: int
    reconnect_delay_ms: int
    last_retry_delay_ms: int | None = None


@dataclass(frozen=True)
class Notification:
    kind: str  # add|remove
    handle: EndpointState


class Notifier:
    """Delivers listener notifications in order, outside of any tracking lock.

    Notifications are queued while the tracking locks are held and drained by
    whichever thread flushes first. A listener that causes new notifications
    from inside a callback only queues them; the draining thread delivers them.
    Once closed, queued and later notifications are dropped.
    """

    def __init__(self, listener: Listener | None, service_name: str | None = None) -> None:
        self.listener = listener
        self.service_name = service_name
        self._lock = Lock()
        self._queue: deque[Notification] = deque()
        self._draining = False
        self._closed = False

    def added(self, handle: EndpointState) -> None:
        with self._lock:
            if not self._closed:
                self._queue.append(Notification("add", handle))

    def removed(self, handle: EndpointState) -> None:
        with self._lock:
            if not self._closed:
                self._queue.append(Notification("remove", handle))

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._queue.clear()

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def flush(self) -> None:
        with self._lock:
            if self._draining:
                return
            self._draining = True
        try:
            while True:
                with self._lock:
                    if self._closed or not self._queue:
                        self._draining = False
                        return
                    n = self._queue.popleft()
                self._deliver(n)
        except BaseException:
            with self._lock:
                self._draining = False
            raise

    def _deliver(self, n: Notification) -> None:
        if self.listener is None:
            return
        try:
            if n.kind == "add":
                self.listener.on_add(n.handle)
            else:
                self.listener.on_remove(n.handle)
        except Exception as e:
            events.safe_log_event(
                "ERROR",
                f"Listener failed on {n.kind}: {type(e).__name__}: {e}",
                service_name=self.service_name,
                endpoint=n.handle.uri,
            )


class TrackedEndpoints:
    """address -> EndpointState. The only shared mutable state of an agent run.

    `lock` is held for a whole poll cycle and around the staleness checks of
    fail()/reconnect(). It is always taken before an endpoint's own lock.
    """

    def __init__(self) -> None:
        self.lock = RLock()
        self._endpoints: dict[str, EndpointState] = {}

    def __len__(self) -> int:
        with self.lock:
            return len(self._endpoints)

    def __contains__(self, address: object) -> bool:
        with self.lock:
            return address in self._endpoints

    def get(self, address: str) -> EndpointState | None:
        with self.lock:
            return self._endpoints.get(address)

    def addresses(self) -> set[str]:
        with self.lock:
            return set(self._endpoints)

    def endpoints(self) -> list[EndpointState]:
        with self.lock:
            return list(self._endpoints.values())

    def put(self, state: EndpointState) -> None:
        with self.lock:
            self._endpoints[state.address] = state

    def pop(self, address: str) -> EndpointState | None:
        with self.lock:
            return self._endpoints.pop(address, None)

    def clear(self) -> None:
        with self.lock:
            self._endpoints.clear()

    def is_tracked(self, state: EndpointState) -> bool:
        """True if `state` is the instance currently installed for its address."""
        with self.lock:
            current = self._endpoints.get(state.address)
            return current is not None and current.epoch == state.epoch

    def snapshot(self) -> list[EndpointView]:
        with self.lock:
            return [s.view() for s in sorted(self._endpoints.values(), key=lambda s: s.address)]


@dataclass
class DiscoveryContext:
    """Everything an agent run shares between the reconciler and its endpoints."""

    service_name: str
    transport_type: str
    policy: BackoffPolicy
    tracked: TrackedEndpoints
    notifier: Notifier
    scheduler: TimerService
    clock: Callable[[], int] = monotonic_ms
    # Set by stop(); a poll still in flight must not touch the map after that.
    stopped: Event = field(default_factory=Event)

    def log(self, level: str, message: str, endpoint: str | None = None) -> None:
        events.safe_log_event(level, message, service_name=self.service_name, endpoint=endpoint)


class EndpointState:
    """Failure/backoff life-cycle of one tracked address.

    The instance doubles as the handle given to the listener and accepted back
    by report_failure(). States: present (not failed), retrying (failed, a
    reconnect is scheduled) and excluded (failed, attempts exhausted).
    """

    def __init__(self, ctx: DiscoveryContext, address: str, port: int) -> None:
        self.ctx = ctx
        self.address = address
        self.port = port
        self.uri = f"{ctx.transport_type}://{address}:{port}"
        self.epoch = next(_epochs)
        self.connect_failures = 0
        self.reconnect_delay_ms = ctx.policy.initial_reconnect_delay_ms
        self.connect_time_ms = ctx.clock()
        self.failed = False
        self.excluded = False
        self.last_retry_delay_ms: int | None = None
        self._lock = Lock()

    def __repr__(self) -> str:
        return f"EndpointState({self.uri}, failed={self.failed}, connect_failures={self.connect_failures})"

    @property
    def state(self) -> str:
        if not self.failed:
            return "present"
        return "excluded" if self.excluded else "retrying"

    def view(self) -> EndpointView:
        with self._lock:
            return EndpointView(
                address=self.address,
                uri=self.uri,
                state=self.state,
                connect_failures=self.connect_failures,
                reconnect_delay_ms=self.reconnect_delay_ms,
                last_retry_delay_ms=self.last_retry_delay_ms,
            )

    def present(self) -> None:
        """Seen healthy by a poll: forgive earlier backoff growth."""
        with self._lock:
            if self.failed:
                return
            self.connect_failures = 0
            self.reconnect_delay_ms = self.ctx.policy.initial_reconnect_delay_ms

    def fail(self) -> None:
        ctx = self.ctx
        policy = ctx.policy
        with ctx.tracked.lock, self._lock:
            if self.failed or not ctx.tracked.is_tracked(self):
                return

            if ctx.clock() - self.connect_time_ms < policy.min_connect_time_ms:
                # Died fast: keep climbing the backoff curve.
                self.connect_failures += 1
                retry_delay = self.reconnect_delay_ms
            else:
                # A real connection that dropped later is retried promptly.
                retry_delay = policy.min_connect_time_ms

            self.failed = True
            ctx.notifier.removed(self)

            if policy.exhausted(self.connect_failures):
                self.excluded = True
            else:
                self.last_retry_delay_ms = retry_delay
                ctx.scheduler.run_after_delay(self.reconnect, retry_delay)

        ctx.notifier.flush()
        if self.excluded:
            ctx.log(
                "WARN",
                f"Reconnect attempts exceeded after {policy.max_reconnect_attempts} tries. "
                f"Reconnecting has been disabled for: {self!r}",
                endpoint=self.uri,
            )
        else:
            ctx.log("INFO", f"Endpoint failed, retrying in {retry_delay} ms: {self!r}", endpoint=self.uri)

    def reconnect(self) -> None:
        ctx = self.ctx
        with ctx.tracked.lock, self._lock:
            if not ctx.tracked.is_tracked(self):
                return
            self.reconnect_delay_ms = ctx.policy.next_delay(self.reconnect_delay_ms)
            self.connect_time_ms = ctx.clock()
            self.failed = False
            ctx.notifier.added(self)

        ctx.notifier.flush()
        ctx.log("INFO", f"Reconnecting endpoint: {self!r}", endpoint=self.uri)
