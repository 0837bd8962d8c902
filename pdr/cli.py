from __future__ import annotations

import argparse
import json
import sys

import requests

from .resolvers import ResolutionError, build_resolver
from .settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Peer Discovery Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("endpoints", help="List tracked endpoints")

    s_ev = sub.add_parser("events", help="Show journal events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_not = sub.add_parser("notifications", help="Show add/remove notifications")
    s_not.add_argument("--limit", type=int, default=20)

    s_fail = sub.add_parser("fail", help="Report a connection failure for a tracked endpoint")
    s_fail.add_argument("address")

    sub.add_parser("resolve", help="Run the configured resolver once (no API needed)")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "endpoints":
        _print(requests.get(f"{base}/endpoints", timeout=10).json())
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "notifications":
        _print(requests.get(f"{base}/notifications", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "fail":
        r = requests.post(f"{base}/endpoints/{args.address}/fail", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "resolve":
        try:
            resolver = build_resolver(settings)
            addresses = sorted(resolver.peer_addresses())
            port = resolver.service_port()
        except (ResolutionError, ValueError) as e:
            _print({"error": str(e)})
            return 1
        _print({"service": resolver.service_name(), "port": port, "addresses": addresses})
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
