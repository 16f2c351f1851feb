"""Keeps the generated EnvoyFilters in the API server in sync with the config store."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Mapping, Optional, Protocol as TypingProtocol

from .debounce import Debouncer
from .model import (
    SERVICE_ENTRY_KIND,
    VIRTUAL_SERVICE_KIND,
    Config,
    EnvoyFilterContext,
    EnvoyFilterWrapper,
    Event,
    ServiceEntry,
    ServiceEntryWrapper,
    VirtualService,
    VirtualServiceWrapper,
    struct_to_json,
)
from .network_filter import Generator
from .protocol import Protocol, get_layer7_protocol_from_port_name

log = logging.getLogger(__name__)

DEBOUNCE_AFTER = 1.0
DEBOUNCE_MAX = 10.0
CONFIG_ROOT_NS = "istio-system"
FIELD_MANAGER = "Aeraki"
MANAGER_LABEL_SELECTOR = "manager=" + FIELD_MANAGER
PUSH_QUEUE_SIZE = 100


class EnvoyFilterPushError(RuntimeError):
    """Raised when EnvoyFilters could not be generated or pushed."""


class _ConfigStore(TypingProtocol):
    def list(self, kind: str, namespace: str) -> list[Config]: ...


class _EnvoyFilterClient(TypingProtocol):
    def list(self, namespace: str, label_selector: str) -> list[dict[str, Any]]: ...

    def create(self, namespace: str, crd: dict[str, Any], field_manager: str) -> Any: ...

    def update(self, namespace: str, crd: dict[str, Any], field_manager: str) -> Any: ...

    def delete(self, namespace: str, name: str) -> Any: ...


class EnvoyFilterController:
    """Generates EnvoyFilters for services and pushes them to the API server."""

    def __init__(
        self,
        client: _EnvoyFilterClient,
        config_store: _ConfigStore,
        generators: Mapping[Protocol, Generator],
        *,
        debounce_after: float = DEBOUNCE_AFTER,
        debounce_max: float = DEBOUNCE_MAX,
    ) -> None:
        self._client = client
        self._store = config_store
        self._generators = generators
        self._debounce_after = debounce_after
        self._debounce_max = debounce_max
        self._push_queue: "queue.Queue[Event]" = queue.Queue(maxsize=PUSH_QUEUE_SIZE)

    def run(self, stop: threading.Event) -> threading.Thread:
        """Start processing events in the background until ``stop`` is set."""
        thread = threading.Thread(
            target=self._main_loop, args=(stop,), name="envoyfilter-controller", daemon=True
        )
        thread.start()
        return thread

    def _main_loop(self, stop: threading.Event) -> None:
        debouncer = Debouncer(self._debounce_after, self._debounce_max, self._push_debounced)
        try:
            while not stop.is_set():
                try:
                    event = self._push_queue.get(timeout=0.1)
                except queue.Empty:
                    continue
                log.debug("receive event from push queue: %s", event)
                debouncer.bounce()
        finally:
            debouncer.stop()

    def _push_debounced(self) -> None:
        try:
            self.push_envoy_filters()
        except Exception as exc:
            log.error("%s", exc)
            # Retry on the next debounce round.
            self.config_updated(Event.UPDATE)

    def config_updated(self, event: Event) -> None:
        """Queue a config change that triggers regeneration of the EnvoyFilters."""
        self._push_queue.put(event)

    def push_envoy_filters(self) -> None:
        """Create, update and delete EnvoyFilters to match the generated ones."""
        try:
            generated = self.generate_envoy_filters()
        except Exception as exc:
            raise EnvoyFilterPushError(f"failed to generate EnvoyFilter: {exc}") from exc

        try:
            existing = self._client.list(CONFIG_ROOT_NS, MANAGER_LABEL_SELECTOR)
        except Exception as exc:
            raise EnvoyFilterPushError(f"failed to list EnvoyFilters: {exc}") from exc

        failures: list[str] = []
        for old in existing:
            name = old["metadata"]["name"]
            new = generated.pop(name, None)
            if new is None:
                log.info("deleting EnvoyFilter: %s", struct_to_json(old))
                try:
                    self._client.delete(CONFIG_ROOT_NS, name)
                except Exception as exc:
                    failures.append(f"failed to delete EnvoyFilter: {exc}")
            elif new.envoy_filter != old.get("spec"):
                log.info("updating EnvoyFilter: %s", struct_to_json(new.envoy_filter))
                try:
                    self._client.update(
                        CONFIG_ROOT_NS, self.to_envoy_filter_crd(new, old), FIELD_MANAGER
                    )
                except Exception as exc:
                    failures.append(f"failed to update EnvoyFilter: {exc}")
            else:
                log.info("envoyFilter: %s unchanged", name)

        for wrapper in generated.values():
            log.info("creating EnvoyFilter: %s", struct_to_json(wrapper.envoy_filter))
            try:
                self._client.create(
                    CONFIG_ROOT_NS, self.to_envoy_filter_crd(wrapper, None), FIELD_MANAGER
                )
            except Exception as exc:
                failures.append(f"failed to create EnvoyFilter: {exc}")

        if failures:
            raise EnvoyFilterPushError("; ".join(failures))

    def to_envoy_filter_crd(
        self, new: EnvoyFilterWrapper, old: Optional[Mapping[str, Any]]
    ) -> dict[str, Any]:
        """Build the EnvoyFilter resource for a generated filter."""
        metadata: dict[str, Any] = {
            "name": new.name,
            "namespace": CONFIG_ROOT_NS,
            "labels": {"manager": FIELD_MANAGER},
        }
        if old is not None:
            metadata["resourceVersion"] = old.get("metadata", {}).get("resourceVersion", "")
        return {"metadata": metadata, "spec": new.envoy_filter}

    def generate_envoy_filters(self) -> dict[str, EnvoyFilterWrapper]:
        """Generate the EnvoyFilters of all services, keyed by filter name."""
        envoy_filters: dict[str, EnvoyFilterWrapper] = {}
        try:
            service_entries = self._store.list(SERVICE_ENTRY_KIND, "")
        except Exception as exc:
            raise EnvoyFilterPushError(f"failed to list configs: {exc}") from exc

        for config in service_entries:
            service = config.spec
            if not isinstance(service, ServiceEntry):
                raise EnvoyFilterPushError(
                    f"failed in getting a service entry: {config.meta.labels}"
                )
            if not service.hosts:
                log.error("host should not be empty: %s", config.name)
                # Retrying cannot help here.
                return envoy_filters
            if len(service.hosts) > 1:
                log.warning(
                    "multiple hosts found for service: %s, only the first one will be processed",
                    config.name,
                )

            try:
                related_vs = self.find_related_virtual_service(service)
            except Exception as exc:
                raise EnvoyFilterPushError(
                    f"failed in finding the related virtual service : {config.name}: {exc}"
                ) from exc

            context = EnvoyFilterContext(
                service_entry=ServiceEntryWrapper(spec=service, meta=config.meta),
                virtual_service=related_vs,
            )
            for port in service.ports:
                generator = self._generators.get(get_layer7_protocol_from_port_name(port.name))
                if generator is None:
                    continue
                log.info("found generator for port: %s", port.name)
                try:
                    wrappers = generator.generate(context)
                except Exception as exc:
                    log.error(
                        "failed to generate envoy filter: service: %s, port: %s, error: %s",
                        config.name,
                        port.name,
                        exc,
                    )
                else:
                    for wrapper in wrappers:
                        envoy_filters[wrapper.name] = wrapper
                break
        return envoy_filters

    def find_related_virtual_service(
        self, service: ServiceEntry
    ) -> Optional[VirtualServiceWrapper]:
        """Return the VirtualService whose hosts include the service's first host."""
        try:
            virtual_services = self._store.list(VIRTUAL_SERVICE_KIND, "")
        except Exception as exc:
            raise EnvoyFilterPushError(f"failed to list configs: {exc}") from exc

        for vs_config in virtual_services:
            vs = vs_config.spec
            if not isinstance(vs, VirtualService):
                raise EnvoyFilterPushError(
                    f"failed in getting a virtual service: {vs_config.name}"
                )
            if service.hosts[0] in vs.hosts:
                return VirtualServiceWrapper(spec=vs, meta=vs_config.meta)
        return None