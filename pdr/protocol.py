"""Collaborator protocols: how peers are resolved, how time passes, who is told."""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .runtime import EndpointState


@runtime_checkable
class Resolver(Protocol):
    """
    Where peer addresses come from (DNS, Kubernetes, docker, static config).
    Called from the scheduler thread once per poll; errors are contained by the reconciler.
    """

    def service_name(self) -> str:
        ...

    def peer_addresses(self) -> set[str]:
        """Current addresses of the service members."""
        ...

    def service_port(self) -> int:
        """Port shared by all members."""
        ...


@runtime_checkable
class Listener(Protocol):
    """Receives add/remove notifications. The handle is what report_failure() expects back."""

    def on_add(self, handle: EndpointState) -> None:
        ...

    def on_remove(self, handle: EndpointState) -> None:
        ...


@runtime_checkable
class TimerService(Protocol):
    """Runs periodic and one-shot callbacks on a thread other than the caller's."""

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def run_periodically(self, task: Callable[[], None], interval_ms: int) -> None:
        ...

    def run_after_delay(self, task: Callable[[], None], delay_ms: int) -> None:
        ...
