from __future__ import annotations

from typing import Callable

from .protocol import Resolver
from .resolvers import local_address
from .runtime import DiscoveryContext, EndpointState


class Reconciler:
    """Diffs what the resolver reports against the tracked endpoints, once per tick."""

    def __init__(
        self,
        ctx: DiscoveryContext,
        resolver: Resolver,
        self_address: Callable[[], str | None] = local_address,
    ) -> None:
        self.ctx = ctx
        self.resolver = resolver
        self.self_address = self_address

    def run(self) -> None:
        """Scheduler entry point: one poll cycle, never raises."""
        try:
            self._tick()
        except Exception as e:
            self.ctx.log("ERROR", f"Error polling service: {type(e).__name__}: {e}")

    def _tick(self) -> None:
        # Everything that can fail happens before the tracked map is touched.
        observed = set(self.resolver.peer_addresses())
        port = self.resolver.service_port()
        me = self.self_address()

        ctx = self.ctx
        tracked = ctx.tracked
        added: list[EndpointState] = []
        removed: list[EndpointState] = []

        with tracked.lock:
            if ctx.stopped.is_set():
                return

            for address in tracked.addresses() - observed:
                st = tracked.pop(address)
                if st is not None:
                    removed.append(st)
                    ctx.notifier.removed(st)

            for st in tracked.endpoints():
                st.present()

            for address in sorted(observed - tracked.addresses()):
                if address == me:
                    continue
                st = EndpointState(ctx, address, port)
                tracked.put(st)
                added.append(st)
                ctx.notifier.added(st)

        ctx.notifier.flush()
        for st in removed:
            ctx.log("INFO", f"Removing service: {st!r}", endpoint=st.uri)
        for st in added:
            ctx.log("INFO", f"Adding service: {st!r}", endpoint=st.uri)
