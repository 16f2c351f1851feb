"""Builds the MetaProtocol route cache served over RDS."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Iterable, Optional, Protocol as TypingProtocol

from .debounce import Debouncer
from .model import (
    SERVICE_ENTRY_KIND,
    Config,
    Event,
    MetaRoute,
    MetaRouter,
    ServiceEntry,
    TrafficDirection,
    build_cluster_name,
    build_meta_protocol_route_name,
)
from .protocol import get_layer7_protocol_from_port_name
from .routes import SnapshotCache, generate_snapshot

log = logging.getLogger(__name__)

DEBOUNCE_AFTER = 1.0
DEBOUNCE_MAX = 10.0
PUSH_QUEUE_SIZE = 100
META_PROTOCOL_PORT_PREFIX = "tcp-metaprotocol"


class RouteCacheError(RuntimeError):
    """Raised when the route cache cannot be rebuilt."""


class _ConfigStore(TypingProtocol):
    def list(self, kind: str, namespace: str) -> list[Config]: ...


MetaRouterLister = Callable[[], Iterable[MetaRouter]]


class CacheMgr:
    """Keeps the route snapshots of subscribed nodes in sync with the config."""

    def __init__(
        self,
        config_store: _ConfigStore,
        meta_router_lister: Optional[MetaRouterLister] = None,
        *,
        debounce_after: float = DEBOUNCE_AFTER,
        debounce_max: float = DEBOUNCE_MAX,
    ) -> None:
        self._store = config_store
        self.meta_router_lister = meta_router_lister
        self._cache = SnapshotCache()
        self._debounce_after = debounce_after
        self._debounce_max = debounce_max
        self._push_queue: "queue.Queue[Event]" = queue.Queue(maxsize=PUSH_QUEUE_SIZE)

    @property
    def cache(self) -> SnapshotCache:
        """The route snapshot cache."""
        return self._cache

    def run(self, stop: threading.Event) -> threading.Thread:
        """Start processing events in the background until ``stop`` is set."""
        thread = threading.Thread(
            target=self._main_loop, args=(stop,), name="route-cache", daemon=True
        )
        thread.start()
        return thread

    def _main_loop(self, stop: threading.Event) -> None:
        debouncer = Debouncer(self._debounce_after, self._debounce_max, self._update_debounced)
        try:
            while not stop.is_set():
                try:
                    event = self._push_queue.get(timeout=0.05)
                except queue.Empty:
                    continue
                log.debug("receive event from push queue: %s", event)
                debouncer.bounce()
        finally:
            debouncer.stop()

    def _update_debounced(self) -> None:
        try:
            self.update_route_cache()
        except Exception as exc:
            log.error("%s", exc)
            self._push_queue.put(Event.UPDATE)
        else:
            log.info("route cache updated")

    def update_route_cache(self) -> None:
        """Rebuild the routes of all MetaProtocol services for every subscribed node."""
        nodes = self._cache.status_keys()
        if not nodes:
            log.info("no rds subscriber, ignore this update")
            return
        try:
            service_entries = self._store.list(SERVICE_ENTRY_KIND, "")
        except Exception as exc:
            raise RouteCacheError(f"failed to list service entry configs: {exc}") from exc

        routes: list[dict[str, Any]] = []
        for config in service_entries:
            service = config.spec
            if not isinstance(service, ServiceEntry):
                log.error("failed in getting a service entry: %s", config.meta.labels)
                return
            if not service.ports:
                continue
            if not get_layer7_protocol_from_port_name(service.ports[0].name).is_meta_protocol():
                continue
            if not service.hosts:
                log.error("host should not be empty: %s", config.name)
                # Retrying cannot help here.
                return
            if len(service.hosts) > 1:
                log.warning(
                    "multiple hosts found for service: %s, only the first one will be processed",
                    config.name,
                )
            try:
                meta_router = self.find_related_meta_router(service)
            except Exception as exc:
                log.error("failed to list meta router for service: %s: %s", config.name, exc)
                meta_router = None
            if meta_router is not None:
                log.debug("found meta router %s for %s", meta_router.name, config.name)
                routes.append(self.construct_route(service, meta_router))
            else:
                log.debug("no meta router for %s", config.name)
                routes.append(self.default_route(service))

        snapshot = generate_snapshot(routes)
        for node in nodes:
            log.debug("set route cache for: %s", node)
            self._cache.set_snapshot(node, snapshot)

    def construct_route(self, service: ServiceEntry, meta_router: MetaRouter) -> dict[str, Any]:
        """Route configuration of a service from the routes of its MetaRouter."""
        return {
            "name": build_meta_protocol_route_name(service.hosts[0], service.ports[0].number),
            "routes": [
                {
                    "name": route.name,
                    "match": self.construct_match(route),
                    "route": self.construct_action(service, route),
                }
                for route in meta_router.routes
            ],
        }

    def construct_match(self, route: MetaRoute) -> dict[str, Any]:
        """Header matchers for the attribute matches of a route."""
        metadata: list[dict[str, Any]] = []
        for name, attribute in (route.match or {}).items():
            kind = attribute.match_type
            if kind == "exact":
                metadata.append({"name": name, "exact_match": attribute.exact})
            elif kind == "prefix":
                metadata.append({"name": name, "prefix_match": attribute.prefix})
            elif kind == "regex":
                metadata.append(
                    {
                        "name": name,
                        "safe_regex_match": {"google_re2": {}, "regex": attribute.regex},
                    }
                )
        return {"metadata": metadata}

    def construct_action(self, service: ServiceEntry, route: MetaRoute) -> dict[str, Any]:
        """Route action: a single cluster, or weighted clusters for several destinations."""

        def cluster_name(destination) -> str:
            port = destination.port or service.ports[0].number
            return build_cluster_name(
                TrafficDirection.OUTBOUND, destination.subset, destination.host, port
            )

        if len(route.route) == 1:
            return {"cluster": cluster_name(route.route[0].destination)}
        clusters = [
            {"name": cluster_name(rd.destination), "weight": rd.weight} for rd in route.route
        ]
        return {
            "weighted_clusters": {
                "clusters": clusters,
                "total_weight": sum(rd.weight for rd in route.route),
            }
        }

    def default_route(self, service: ServiceEntry) -> dict[str, Any]:
        """Route configuration sending all traffic of a service to its own cluster."""
        host, port = service.hosts[0], service.ports[0].number
        return {
            "name": build_meta_protocol_route_name(host, port),
            "routes": [
                {
                    "name": "default",
                    "match": {"metadata": []},
                    "route": {
                        "cluster": build_cluster_name(TrafficDirection.OUTBOUND, "", host, port)
                    },
                }
            ],
        }

    def find_related_meta_router(self, service: ServiceEntry) -> Optional[MetaRouter]:
        """Return the MetaRouter whose hosts include the service's first host."""
        if self.meta_router_lister is None:
            raise RuntimeError("no MetaRouter client configured")
        for meta_router in self.meta_router_lister():
            if service.hosts[0] in meta_router.hosts:
                return meta_router
        return None

    def config_updated(self, prev: Optional[Config], curr: Config, event: Event) -> None:
        """Queue a rebuild when a MetaProtocol ServiceEntry changes."""
        if curr.group_version_kind != SERVICE_ENTRY_KIND:
            return
        service = curr.spec
        if not isinstance(service, ServiceEntry):
            log.error("failed in getting a service entry: %s", curr.name)
            return
        if service.ports and service.ports[0].name.startswith(META_PROTOCOL_PORT_PREFIX):
            self._push_queue.put(event)

    def update_route(self) -> None:
        """Queue a rebuild after a MetaRouter change."""
        self._push_queue.put(Event.UPDATE)

    def init_node(self, node: str) -> None:
        """Subscribe ``node`` and queue a rebuild to fill its cache.

        An update event is used because updates are debounced, so many nodes
        starting at once cause a single rebuild.
        """
        self._cache._watch(node)
        self._push_queue.put(Event.UPDATE)

    def has_node(self, node: str) -> bool:
        """Whether a snapshot has been built for ``node``."""
        try:
            self._cache.get_snapshot(node)
        except KeyError:
            return False
        return True


class Callbacks:
    """Reacts to route discovery requests from proxies."""

    def __init__(self, cache_mgr: CacheMgr) -> None:
        self._cache_mgr = cache_mgr

    def on_stream_request(self, node_id: str) -> None:
        """Initialise the route cache of a node on its first request."""
        log.info("receive rds request from: %s", node_id)
        if not self._cache_mgr.has_node(node_id):
            log.info("init rds cache for node: %s", node_id)
            self._cache_mgr.init_node(node_id)