"""Generation of EnvoyFilters that patch protocol-specific network filters."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from .model import (
    EnvoyFilterContext,
    EnvoyFilterWrapper,
    ServiceEntry,
    ServiceEntryWrapper,
    WorkloadSelector,
)

log = logging.getLogger(__name__)

TCP_PROXY_FILTER = "envoy.filters.network.tcp_proxy"
TYPED_STRUCT_TYPE = "type.googleapis.com/udpa.type.v1.TypedStruct"
VIRTUAL_INBOUND_LISTENER = "virtualInbound"
NETWORK_FILTER = "NETWORK_FILTER"
INSERT_BEFORE = "INSERT_BEFORE"
REPLACE = "REPLACE"


class Generator(ABC):
    """Generates the EnvoyFilters for one protocol."""

    @abstractmethod
    def generate(self, context: EnvoyFilterContext) -> list[EnvoyFilterWrapper]:
        """Return the EnvoyFilters needed by the service described in ``context``."""


def generate_insert_before_network_filter(
    service: ServiceEntryWrapper,
    outbound_proxy: Optional[Mapping[str, Any]],
    inbound_proxy: Optional[Mapping[str, Any]],
    filter_name: str,
    filter_type: str,
) -> list[EnvoyFilterWrapper]:
    """EnvoyFilters inserting a protocol filter before the TCP proxy."""
    return _generate_network_filter(
        service, outbound_proxy, inbound_proxy, filter_name, filter_type, INSERT_BEFORE
    )


def generate_replace_network_filter(
    service: ServiceEntryWrapper,
    outbound_proxy: Optional[Mapping[str, Any]],
    inbound_proxy: Optional[Mapping[str, Any]],
    filter_name: str,
    filter_type: str,
) -> list[EnvoyFilterWrapper]:
    """EnvoyFilters replacing the TCP proxy with a protocol-specific proxy."""
    return _generate_network_filter(
        service, outbound_proxy, inbound_proxy, filter_name, filter_type, REPLACE
    )


def _listener_patch(listener: dict[str, Any], operation: str, value: dict[str, Any]) -> dict[str, Any]:
    return {
        "applyTo": NETWORK_FILTER,
        "match": {"listener": listener},
        "patch": {"operation": operation, "value": value},
    }


def _generate_network_filter(
    service: ServiceEntryWrapper,
    outbound_proxy: Optional[Mapping[str, Any]],
    inbound_proxy: Optional[Mapping[str, Any]],
    filter_name: str,
    filter_type: str,
    operation: str,
) -> list[EnvoyFilterWrapper]:
    spec = service.spec
    outbound_patch = None
    if outbound_proxy is not None:
        try:
            value = generate_value(outbound_proxy, filter_name, filter_type)
        except (TypeError, ValueError) as exc:
            log.error("failed to generate outbound EnvoyFilter: %s", exc)
            return []
        if not spec.addresses:
            log.info("service doesn't have VIP: %s", service)
        else:
            listener = {
                "name": f"{spec.addresses[0]}_{spec.ports[0].number}",
                "filterChain": {"filter": {"name": TCP_PROXY_FILTER}},
            }
            outbound_patch = _listener_patch(listener, operation, value)

    selector = inbound_envoy_filter_workload_selector(service)

    # An inbound filter must select workloads so it does not override the
    # inbound config of other services listening on the same port.
    inbound_patch = None
    if inbound_proxy is not None and selector.labels:
        try:
            value = generate_value(inbound_proxy, filter_name, filter_type)
        except (TypeError, ValueError) as exc:
            log.error("failed to generate inbound EnvoyFilter: %s", exc)
        else:
            listener = {
                "name": VIRTUAL_INBOUND_LISTENER,
                "filterChain": {
                    "destinationPort": spec.ports[0].number,
                    "filter": {"name": TCP_PROXY_FILTER},
                },
            }
            inbound_patch = _listener_patch(listener, operation, value)

    filters: list[EnvoyFilterWrapper] = []
    if outbound_patch is not None:
        filters.append(
            EnvoyFilterWrapper(
                name=outbound_envoy_filter_name(spec),
                envoy_filter={"configPatches": [outbound_patch]},
            )
        )
    if inbound_patch is not None:
        filters.append(
            EnvoyFilterWrapper(
                name=inbound_envoy_filter_name(spec),
                envoy_filter={
                    "workloadSelector": {"labels": dict(selector.labels)},
                    "configPatches": [inbound_patch],
                },
            )
        )
    return filters


def inbound_envoy_filter_workload_selector(service: ServiceEntryWrapper) -> WorkloadSelector:
    """Workload selector for the inbound filter of a service.

    Falls back to an ``app`` label taken from the ``workloadSelector``
    annotation when the ServiceEntry selects no workloads itself.
    """
    existing = service.spec.workload_selector
    selector = WorkloadSelector(labels=dict(existing.labels) if existing else {})
    if not selector.labels:
        label = service.meta.annotations.get("workloadSelector", "").replace(" ", "")
        if label:
            selector.labels["app"] = label
    return selector


def outbound_envoy_filter_name(service: ServiceEntry) -> str:
    """Name of the outbound EnvoyFilter of a service."""
    return "aeraki-outbound-" + service.hosts[0]


def inbound_envoy_filter_name(service: ServiceEntry) -> str:
    """Name of the inbound EnvoyFilter of a service."""
    return "aeraki-inbound-" + service.hosts[0]


def generate_value(proxy: Mapping[str, Any], filter_name: str, filter_type: str) -> dict[str, Any]:
    """Wrap a proxy config as a named filter with a typed struct config.

    Raises TypeError or ValueError if the config is not a JSON object.
    """
    value = json.loads(json.dumps(proxy))
    if not isinstance(value, dict):
        raise TypeError("proxy config must be a JSON object")
    return {
        "name": filter_name,
        "typed_config": {
            "@type": TYPED_STRUCT_TYPE,
            "type_url": filter_type,
            "value": value,
        },
    }