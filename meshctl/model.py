"""Configuration objects shared by the controllers and generators."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

SERVICE_ENTRY_KIND = "networking.istio.io/v1alpha3/ServiceEntry"
VIRTUAL_SERVICE_KIND = "networking.istio.io/v1alpha3/VirtualService"
DESTINATION_RULE_KIND = "networking.istio.io/v1alpha3/DestinationRule"
ENVOY_FILTER_KIND = "networking.istio.io/v1alpha3/EnvoyFilter"


class Event(str, Enum):
    """Kind of change to a config object."""

    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"

    def __str__(self) -> str:
        return self.value


class Resolution(str, Enum):
    """Service discovery mode of a ServiceEntry."""

    NONE = "NONE"
    STATIC = "STATIC"
    DNS = "DNS"

    def __str__(self) -> str:
        return self.value


class TrafficDirection(str, Enum):
    """Whether traffic enters or leaves a service instance."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"

    def __str__(self) -> str:
        return self.value


@dataclass
class Meta:
    """Metadata of a config object."""

    group_version_kind: str = ""
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""


@dataclass
class Port:
    """A port exposed by a service."""

    number: int
    name: str = ""
    protocol: str = ""


@dataclass
class WorkloadSelector:
    """Labels that select the workloads a config applies to."""

    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ServiceEntry:
    """Specification of a service added to the mesh."""

    hosts: list[str] = field(default_factory=list)
    addresses: list[str] = field(default_factory=list)
    ports: list[Port] = field(default_factory=list)
    resolution: Resolution = Resolution.NONE
    workload_selector: Optional[WorkloadSelector] = None


@dataclass
class ServiceEntryWrapper:
    """A ServiceEntry together with its metadata."""

    spec: ServiceEntry
    meta: Meta = field(default_factory=Meta)


@dataclass
class VirtualService:
    """Specification of routing rules for a set of hosts."""

    hosts: list[str] = field(default_factory=list)


@dataclass
class VirtualServiceWrapper:
    """A VirtualService together with its metadata."""

    spec: VirtualService
    meta: Meta = field(default_factory=Meta)


@dataclass
class EnvoyFilterWrapper:
    """A generated EnvoyFilter spec and the name that identifies it."""

    name: str
    envoy_filter: dict[str, Any]
    namespace: str = ""


@dataclass
class StringMatch:
    """Matches a string exactly, by prefix or by regular expression."""

    exact: Optional[str] = None
    prefix: Optional[str] = None
    regex: Optional[str] = None

    def __post_init__(self) -> None:
        given = [v for v in (self.exact, self.prefix, self.regex) if v is not None]
        if len(given) > 1:
            raise ValueError("only one of exact, prefix and regex may be set")

    @property
    def match_type(self) -> Optional[str]:
        """Name of the populated match, or None when nothing is set."""
        if self.exact is not None:
            return "exact"
        if self.prefix is not None:
            return "prefix"
        if self.regex is not None:
            return "regex"
        return None


@dataclass
class Destination:
    """Target of a route. When port is None or 0 the service's first listed port is used."""

    host: str
    subset: str = ""
    port: Optional[int] = None


@dataclass
class RouteDestination:
    """A weighted destination of a route."""

    destination: Destination
    weight: int = 0


@dataclass
class MetaRoute:
    """A MetaProtocol route: attribute matches and destinations."""

    name: str = ""
    match: Optional[dict[str, StringMatch]] = None
    route: list[RouteDestination] = field(default_factory=list)


@dataclass
class MetaRouter:
    """Routing rules for MetaProtocol services."""

    name: str
    namespace: str = ""
    hosts: list[str] = field(default_factory=list)
    routes: list[MetaRoute] = field(default_factory=list)


@dataclass
class EnvoyFilterContext:
    """Everything an EnvoyFilter generator needs about one service."""

    service_entry: ServiceEntryWrapper
    virtual_service: Optional[VirtualServiceWrapper] = None
    meta_router: Optional[MetaRouter] = None


@dataclass
class Config:
    """A config object held in the config store."""

    meta: Meta
    spec: Any = None

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def group_version_kind(self) -> str:
        return self.meta.group_version_kind


def build_cluster_name(
    direction: TrafficDirection, subset_name: str, hostname: str, port: int
) -> str:
    """Build the cluster name for a service, subset and port."""
    direction = TrafficDirection(direction)
    if direction is TrafficDirection.INBOUND:
        hostname = ""
    return f"{direction.value}|{port}|{subset_name}|{hostname}"


def build_meta_protocol_route_name(host: str, port: int) -> str:
    """Build the route name for a MetaProtocol service."""
    return f"{host}_{port}"


def _encode(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def struct_to_json(obj: Any) -> Any:
    """Render an object as compact JSON text, or return it unchanged if it cannot be."""
    try:
        return json.dumps(obj, default=_encode, separators=(",", ":"))
    except (TypeError, ValueError):
        return obj