"""Dispatch of config store changes to handlers that care about them."""

from __future__ import annotations

import logging
from typing import Callable, Container, Optional, Protocol as TypingProtocol

from .model import (
    DESTINATION_RULE_KIND,
    ENVOY_FILTER_KIND,
    SERVICE_ENTRY_KIND,
    VIRTUAL_SERVICE_KIND,
    Config,
    Event,
    ServiceEntry,
    VirtualService,
)
from .protocol import Protocol, get_layer7_protocol_from_port_name

log = logging.getLogger(__name__)

WATCHED_KINDS = (
    SERVICE_ENTRY_KIND,
    VIRTUAL_SERVICE_KIND,
    DESTINATION_RULE_KIND,
    ENVOY_FILTER_KIND,
)

Handler = Callable[[Optional[Config], Config, Event], None]


class _ConfigStore(TypingProtocol):
    def list(self, kind: str, namespace: str) -> list[Config]: ...


class ConfigController:
    """Notifies registered handlers when watched config objects change."""

    def __init__(self, store: _ConfigStore, config_server_addr: str = "") -> None:
        self.store = store
        self.config_server_addr = config_server_addr
        self._handlers: dict[str, list[Handler]] = {kind: [] for kind in WATCHED_KINDS}

    def register_event_handler(self, protocols: Container[Protocol], handler: Handler) -> None:
        """Register ``handler`` for changes relevant to services using ``protocols``."""

        def wrapper(prev: Optional[Config], curr: Config, event: Event) -> None:
            prev_spec = prev.spec if prev is not None else None
            if event is Event.UPDATE and prev_spec == curr.spec:
                return
            kind = curr.group_version_kind
            if kind == SERVICE_ENTRY_KIND:
                self._on_service_entry(prev, curr, event, handler)
            elif kind == VIRTUAL_SERVICE_KIND:
                self._on_virtual_service(prev, curr, event, protocols, handler)

        for kind in WATCHED_KINDS:
            self._handlers[kind].append(wrapper)

    @staticmethod
    def _on_service_entry(
        prev: Optional[Config], curr: Config, event: Event, handler: Handler
    ) -> None:
        service = curr.spec
        if not isinstance(service, ServiceEntry):
            log.error("failed in getting a service entry: %s", curr.name)
            return
        for port in service.ports:
            if port.name.startswith("tcp"):
                handler(prev, curr, event)

    def _on_virtual_service(
        self,
        prev: Optional[Config],
        curr: Config,
        event: Event,
        protocols: Container[Protocol],
        handler: Handler,
    ) -> None:
        log.info("virtual service changed: %s %s", event, curr.name)
        vs = curr.spec
        if not isinstance(vs, VirtualService):
            log.error("failed in getting a virtual service: %s", curr.name)
            return
        try:
            service_entries = self.store.list(SERVICE_ENTRY_KIND, "")
        except Exception as exc:
            log.error("failed to list configs: %s", exc)
            return
        for config in service_entries:
            service = config.spec
            if not isinstance(service, ServiceEntry):
                log.error("failed in getting a service entry: %s", config.meta.labels)
                return
            if not vs.hosts:
                continue
            for host in service.hosts:
                if host != vs.hosts[0]:
                    continue
                for port in service.ports:
                    if get_layer7_protocol_from_port_name(port.name) in protocols:
                        handler(prev, curr, event)

    def dispatch(self, prev: Optional[Config], curr: Config, event: Event) -> None:
        """Deliver a change of ``curr`` to the handlers registered for its kind."""
        for handler in list(self._handlers.get(curr.group_version_kind, ())):
            handler(prev, curr, event)