from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .runtime import BackoffPolicy


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_opt_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("PDR_DB_PATH", "pdr.db")
    query_interval_s: int = _env_int("PDR_QUERY_INTERVAL_S", 30)
    transport_type: str = os.getenv("PDR_TRANSPORT_TYPE", "tcp")

    # Backoff
    min_connect_time_ms: int = _env_int("PDR_MIN_CONNECT_TIME_MS", 1000)
    # None means "same as min_connect_time_ms".
    initial_reconnect_delay_ms: int | None = _env_opt_int("PDR_INITIAL_RECONNECT_DELAY_MS")
    max_reconnect_delay_ms: int = _env_int("PDR_MAX_RECONNECT_DELAY_MS", 16000)
    max_reconnect_attempts: int = _env_int("PDR_MAX_RECONNECT_ATTEMPTS", 4)

    # Resolution
    resolver: str = os.getenv("PDR_RESOLVER", "dns")  # dns|kube|docker|static
    service_name: str = os.getenv("PDR_SERVICE_NAME", "")
    service_port: int = _env_int("PDR_SERVICE_PORT", 0)  # 0 -> ask the resolver
    static_peers: tuple[str, ...] = _env_list("PDR_STATIC_PEERS")
    kube_api_url: str = os.getenv("PDR_KUBE_API_URL", "https://kubernetes.default.svc")
    kube_namespace: str | None = os.getenv("PDR_KUBE_NAMESPACE")
    kube_port_name: str | None = os.getenv("PDR_KUBE_PORT_NAME")
    kube_verify_tls: bool = _env_bool("PDR_KUBE_VERIFY_TLS", True)
    docker_network: str = os.getenv("PDR_DOCKER_NETWORK", "pdr")
    resolver_timeout_s: int = _env_int("PDR_RESOLVER_TIMEOUT_S", 5)

    def backoff_policy(self) -> BackoffPolicy:
        from .runtime import BackoffPolicy

        initial = self.initial_reconnect_delay_ms
        if initial is None:
            initial = self.min_connect_time_ms
        return BackoffPolicy(
            min_connect_time_ms=self.min_connect_time_ms,
            initial_reconnect_delay_ms=initial,
            max_reconnect_delay_ms=self.max_reconnect_delay_ms,
            max_reconnect_attempts=self.max_reconnect_attempts,
        )


settings = Settings()
