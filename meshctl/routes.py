"""Conversion of MetaProtocol routes to RDS route configurations and their cache."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

DUMMY_VIRTUAL_HOST = "dummy"


@dataclass
class Snapshot:
    """A versioned set of route configurations served to one node."""

    version: str
    routes: list[dict[str, Any]] = field(default_factory=list)


class SnapshotCache:
    """Route snapshots per node, and the nodes that have subscribed to routes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[str, Snapshot] = {}
        self._statuses: dict[str, None] = {}

    def set_snapshot(self, node: str, snapshot: Snapshot) -> None:
        """Store the snapshot served to ``node``."""
        with self._lock:
            self._snapshots[node] = snapshot

    def get_snapshot(self, node: str) -> Snapshot:
        """Return the snapshot of ``node``; raise KeyError if it has none."""
        with self._lock:
            try:
                return self._snapshots[node]
            except KeyError:
                raise KeyError(f"no snapshot found for node {node}") from None

    def status_keys(self) -> list[str]:
        """Nodes that have subscribed to routes, in subscription order."""
        with self._lock:
            return list(self._statuses)

    def _watch(self, node: str) -> None:
        with self._lock:
            self._statuses[node] = None


def meta_protocol_route_to_http_route(meta_route: Mapping[str, Any]) -> dict[str, Any]:
    """Carry a MetaProtocol route configuration as an HTTP route configuration."""
    routes: list[dict[str, Any]] = []
    for route in meta_route.get("routes", []):
        headers = [dict(metadata) for metadata in route.get("match", {}).get("metadata", [])]
        action = route.get("route", {})
        if action.get("weighted_clusters") is not None:
            route_action = {"weighted_clusters": action["weighted_clusters"]}
        else:
            route_action = {"cluster": action.get("cluster", "")}
        routes.append(
            {
                "name": route.get("name", ""),
                "match": {"prefix": "/", "headers": headers},
                "route": route_action,
            }
        )
    return {
        "name": meta_route.get("name", ""),
        "virtual_hosts": [
            {"name": DUMMY_VIRTUAL_HOST, "domains": ["*"], "routes": routes},
        ],
    }


def generate_snapshot(meta_routes: Iterable[Mapping[str, Any]]) -> Snapshot:
    """Build a snapshot versioned by the current Unix time in seconds."""
    return Snapshot(
        version=str(int(time.time())),
        routes=[meta_protocol_route_to_http_route(route) for route in meta_routes],
    )