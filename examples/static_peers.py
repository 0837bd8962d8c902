from __future__ import annotations

import time

from pdr.agent import DiscoveryAgent
from pdr.resolvers import StaticResolver
from pdr.runtime import BackoffPolicy, EndpointState


class PrintingListener:
    def on_add(self, handle: EndpointState) -> None:
        print(f"+ {handle.uri}")

    def on_remove(self, handle: EndpointState) -> None:
        print(f"- {handle.uri}")


def main() -> None:
    resolver = StaticResolver("broker", {"10.0.0.1", "10.0.0.2"}, 61616)
    agent = DiscoveryAgent(
        resolver,
        PrintingListener(),
        query_interval_s=1,
        policy=BackoffPolicy(min_connect_time_ms=200, initial_reconnect_delay_ms=200, max_reconnect_delay_ms=1600),
        self_address=lambda: None,
    )
    agent.start()
    try:
        time.sleep(1.5)
        # Pretend the transport could not connect to one peer: it drops out and comes back after the backoff.
        agent.report_failure(agent.lookup("10.0.0.1"))
        time.sleep(1)
        resolver.addresses.discard("10.0.0.2")
        time.sleep(1.5)
    finally:
        agent.stop()


if __name__ == "__main__":
    main()
