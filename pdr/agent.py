from __future__ import annotations

from collections import deque
from threading import Lock
from typing import Callable

from . import events
from .protocol import Listener, Resolver, TimerService
from .reconciler import Reconciler
from .resolvers import build_resolver, local_address
from .runtime import (
    BackoffPolicy,
    DiscoveryContext,
    EndpointState,
    EndpointView,
    Notifier,
    TrackedEndpoints,
    monotonic_ms,
)
from .scheduler import Scheduler
from .settings import Settings, settings


class RecordingListener:
    """Keeps the notification stream, newest last. `maxlen` bounds the history."""

    def __init__(self, maxlen: int | None = None) -> None:
        self._lock = Lock()
        self._items: deque[tuple[str, EndpointState]] = deque(maxlen=maxlen)

    def on_add(self, handle: EndpointState) -> None:
        with self._lock:
            self._items.append(("add", handle))

    def on_remove(self, handle: EndpointState) -> None:
        with self._lock:
            self._items.append(("remove", handle))

    def notifications(self) -> list[tuple[str, EndpointState]]:
        with self._lock:
            return list(self._items)

    def uris(self, kind: str) -> list[str]:
        return [h.uri for k, h in self.notifications() if k == kind]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class DiscoveryAgent:
    """Keeps a listener informed about the live peers of one service.

    start() polls the resolver immediately and then every `query_interval_s`;
    report_failure() feeds connection failures back into the per-endpoint
    backoff; stop() halts polling and forgets every tracked endpoint.
    """

    def __init__(
        self,
        resolver: Resolver,
        listener: Listener | None = None,
        *,
        query_interval_s: float = 30,
        transport_type: str = "tcp",
        policy: BackoffPolicy | None = None,
        scheduler_factory: Callable[[str], TimerService] = Scheduler,
        clock: Callable[[], int] = monotonic_ms,
        self_address: Callable[[], str | None] = local_address,
    ) -> None:
        if query_interval_s <= 0:
            raise ValueError("query_interval_s must be > 0.")
        if not transport_type:
            raise ValueError("transport_type is required.")
        self.resolver = resolver
        self.listener = listener
        self.query_interval_s = query_interval_s
        self.transport_type = transport_type
        self.policy = policy or BackoffPolicy()
        self.scheduler_factory = scheduler_factory
        self.clock = clock
        self.self_address = self_address
        self._lock = Lock()
        self._ctx: DiscoveryContext | None = None

    @classmethod
    def from_settings(
        cls,
        cfg: Settings = settings,
        listener: Listener | None = None,
        resolver: Resolver | None = None,
    ) -> DiscoveryAgent:
        return cls(
            resolver or build_resolver(cfg),
            listener,
            query_interval_s=cfg.query_interval_s,
            transport_type=cfg.transport_type,
            policy=cfg.backoff_policy(),
        )

    def set_listener(self, listener: Listener | None) -> None:
        """Takes effect on the next start()."""
        self.listener = listener

    @property
    def running(self) -> bool:
        with self._lock:
            return self._ctx is not None

    def start(self) -> None:
        with self._lock:
            if self._ctx is not None:
                return
            service_name = self.resolver.service_name()
            events.init_db()
            ctx = DiscoveryContext(
                service_name=service_name,
                transport_type=self.transport_type,
                policy=self.policy,
                tracked=TrackedEndpoints(),
                notifier=Notifier(self.listener, service_name),
                scheduler=self.scheduler_factory(f"pdr discovery: {service_name}"),
                clock=self.clock,
            )
            ctx.log("INFO", f"Starting discovery agent for service {service_name} transport type {self.transport_type}")
            reconciler = Reconciler(ctx, self.resolver, self.self_address)
            ctx.scheduler.start()
            try:
                ctx.scheduler.run_periodically(reconciler.run, int(self.query_interval_s * 1000))
            except Exception:
                ctx.stopped.set()
                ctx.scheduler.stop()
                raise
            self._ctx = ctx

    def stop(self) -> None:
        with self._lock:
            ctx, self._ctx = self._ctx, None
        if ctx is None:
            return
        ctx.stopped.set()
        ctx.notifier.close()
        ctx.log("INFO", f"Stopping discovery agent for service {ctx.service_name} transport type {self.transport_type}")
        ctx.scheduler.stop()
        ctx.tracked.clear()

    def report_failure(self, handle: EndpointState) -> None:
        """Connection to `handle` failed. Handles of removed or superseded endpoints are ignored."""
        if not isinstance(handle, EndpointState):
            raise TypeError(f"Not an endpoint handle: {handle!r}")
        handle.fail()

    def lookup(self, address: str) -> EndpointState | None:
        with self._lock:
            ctx = self._ctx
        if ctx is None:
            return None
        return ctx.tracked.get(address)

    def snapshot(self) -> list[EndpointView]:
        with self._lock:
            ctx = self._ctx
        if ctx is None:
            return []
        return ctx.tracked.snapshot()
