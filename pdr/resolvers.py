from __future__ import annotations

import os
import socket
import ssl
from typing import Any, Iterable

import docker
import httpx
from docker.errors import DockerException

from .protocol import Resolver
from .settings import Settings

SERVICE_LABEL = "pdr.service"
PORT_LABEL = "pdr.port"

SA_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"


class ResolutionError(Exception):
    pass


def local_address() -> str:
    """The address this node is known by; a node never tracks itself as a peer."""
    return socket.gethostbyname(socket.gethostname())


def _require_port(service_name: str, port: int | None) -> int:
    if not port or port <= 0:
        raise ResolutionError(f"No service port configured for '{service_name}'.")
    return int(port)


class StaticResolver:
    """Fixed peer list; handy for tests and for small hand-wired meshes."""

    def __init__(self, service_name: str, addresses: Iterable[str], port: int) -> None:
        self._service_name = service_name
        self.addresses = set(addresses)
        self.port = port

    def service_name(self) -> str:
        return self._service_name

    def peer_addresses(self) -> set[str]:
        return set(self.addresses)

    def service_port(self) -> int:
        return _require_port(self._service_name, self.port)


class DnsResolver:
    """A records of a (headless) service name. The port must be configured."""

    def __init__(self, service_name: str, port: int) -> None:
        if not service_name:
            raise ValueError("service_name is required.")
        self._service_name = service_name
        self.port = port

    def service_name(self) -> str:
        return self._service_name

    def peer_addresses(self) -> set[str]:
        try:
            infos = socket.getaddrinfo(self._service_name, None, socket.AF_INET, socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise ResolutionError(f"DNS lookup failed for '{self._service_name}': {e}") from e
        return {info[4][0] for info in infos}

    def service_port(self) -> int:
        return _require_port(self._service_name, self.port)


def _read_file(path: str) -> str | None:
    try:
        with open(path, encoding="utf-8") as fh:
            return fh.read().strip()
    except OSError:
        return None


class KubernetesResolver:
    """Ready addresses of a service's Endpoints object, read from the API server.

    When no port is configured, the port of the last fetched Endpoints object
    is used: by `port_name` if given, otherwise the first one listed.
    """

    def __init__(
        self,
        service_name: str,
        namespace: str | None = None,
        port: int | None = None,
        port_name: str | None = None,
        api_url: str = "https://kubernetes.default.svc",
        token: str | None = None,
        verify: bool | ssl.SSLContext = True,
        timeout_s: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not service_name:
            raise ValueError("service_name is required.")
        self._service_name = service_name
        self.namespace = namespace or _read_file(os.path.join(SA_DIR, "namespace")) or "default"
        self.port = port
        self.port_name = port_name
        self.api_url = api_url.rstrip("/")
        self.token = token if token is not None else _read_file(os.path.join(SA_DIR, "token"))
        ca_path = os.path.join(SA_DIR, "ca.crt")
        if verify is True and os.path.exists(ca_path):
            verify = ssl.create_default_context(cafile=ca_path)
        self.verify = verify
        self.timeout_s = timeout_s
        self._transport = transport
        self._last_port: int | None = None

    def service_name(self) -> str:
        return self._service_name

    def _fetch(self) -> dict[str, Any]:
        url = f"{self.api_url}/api/v1/namespaces/{self.namespace}/endpoints/{self._service_name}"
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            with httpx.Client(timeout=self.timeout_s, verify=self.verify, transport=self._transport) as client:
                resp = client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise ResolutionError(f"Endpoints lookup failed: {type(e).__name__}: {e}") from e
        if resp.status_code != 200:
            raise ResolutionError(f"Endpoints lookup for '{self._service_name}' returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ResolutionError("Endpoints lookup returned invalid JSON") from e
        if not isinstance(data, dict):
            raise ResolutionError(f"Unexpected endpoints payload: {data!r}")
        return data

    def peer_addresses(self) -> set[str]:
        data = self._fetch()
        addresses: set[str] = set()
        ports: list[dict[str, Any]] = []
        for subset in data.get("subsets") or []:
            for addr in subset.get("addresses") or []:
                ip = addr.get("ip")
                if ip:
                    addresses.add(ip)
            ports.extend(subset.get("ports") or [])
        self._last_port = self._pick_port(ports)
        return addresses

    def _pick_port(self, ports: list[dict[str, Any]]) -> int | None:
        if self.port_name:
            for p in ports:
                if p.get("name") == self.port_name:
                    return int(p["port"])
            return None
        return int(ports[0]["port"]) if ports else None

    def service_port(self) -> int:
        if self.port:
            return int(self.port)
        return _require_port(self._service_name, self._last_port)


class DockerResolver:
    """Running containers labelled `pdr.service=<name>`, by IP on one docker network."""

    def __init__(self, service_name: str, network: str, port: int | None = None) -> None:
        if not service_name:
            raise ValueError("service_name is required.")
        self._service_name = service_name
        self.network = network
        self.port = port
        self._last_port: int | None = None

    def service_name(self) -> str:
        return self._service_name

    def _client(self) -> docker.DockerClient:
        return docker.from_env()

    def peer_addresses(self) -> set[str]:
        try:
            containers = self._client().containers.list(
                filters={"label": [f"{SERVICE_LABEL}={self._service_name}"], "status": "running"}
            )
        except DockerException as e:
            raise ResolutionError(f"Docker lookup failed: {type(e).__name__}: {e}") from e

        addresses: set[str] = set()
        self._last_port = None
        for c in containers:
            networks = (c.attrs.get("NetworkSettings") or {}).get("Networks") or {}
            ip = (networks.get(self.network) or {}).get("IPAddress")
            if ip:
                addresses.add(ip)
            label_port = (c.labels or {}).get(PORT_LABEL)
            if label_port and self._last_port is None:
                try:
                    self._last_port = int(label_port)
                except ValueError:
                    pass
        return addresses

    def service_port(self) -> int:
        if self.port:
            return int(self.port)
        return _require_port(self._service_name, self._last_port)


def build_resolver(cfg: Settings) -> Resolver:
    """Resolver named by `cfg.resolver`."""
    kind = cfg.resolver.strip().lower()
    port = cfg.service_port or None
    if kind == "static":
        return StaticResolver(cfg.service_name, cfg.static_peers, cfg.service_port)
    if kind == "dns":
        return DnsResolver(cfg.service_name, cfg.service_port)
    if kind == "kube":
        return KubernetesResolver(
            cfg.service_name,
            namespace=cfg.kube_namespace,
            port=port,
            port_name=cfg.kube_port_name,
            api_url=cfg.kube_api_url,
            verify=cfg.kube_verify_tls,
            timeout_s=cfg.resolver_timeout_s,
        )
    if kind == "docker":
        return DockerResolver(cfg.service_name, cfg.docker_network, port=port)
    raise ValueError(f"Unknown resolver '{cfg.resolver}'. Use dns, kube, docker or static.")
