"""Automatic VIP allocation for ServiceEntries that declare no address."""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Optional, Protocol as TypingProtocol

from .model import Config, Resolution, ServiceEntry, struct_to_json

log = logging.getLogger(__name__)

MAX_RETRIES = 5
FIELD_MANAGER = "Aeraki"
VIP_PREFIX = "240.240"
_OCTET_SPAN = 255


class ServiceEntryLookupError(RuntimeError):
    """Raised when a ServiceEntry cannot be fetched from the local store."""


class _ServiceEntryClient(TypingProtocol):
    def update(self, namespace: str, service_entry: Config, field_manager: str) -> Any: ...


class ServiceEntryController:
    """Allocates VIPs from 240.240.0.0/16 to ServiceEntries without an address.

    ``store`` is the local cache of ServiceEntries keyed by ``namespace/name``;
    ``client`` writes updated ServiceEntries back to the API server.
    """

    def __init__(self, client: _ServiceEntryClient, store: Mapping[str, Config]) -> None:
        self._client = client
        self._store = store
        self.service_ips: dict[str, str] = {}
        self.max_ip = 0
        self._lock = threading.Lock()
        self._queue: dict[str, None] = {}
        self._requeues: dict[str, int] = {}

    def _enqueue(self, key: str) -> None:
        with self._lock:
            self._queue[key] = None

    def on_add(self, key: str) -> None:
        """Queue a newly added ServiceEntry."""
        log.info("processing add: %s", key)
        self._enqueue(key)

    def on_update(self, key: str, old: Any, new: Any) -> None:
        """Queue an updated ServiceEntry unless nothing changed."""
        if old is new or old == new:
            return
        log.info("processing update: %s", key)
        self._enqueue(key)

    def on_delete(self, key: str) -> None:
        """Queue a deleted ServiceEntry."""
        log.info("processing delete: %s", key)
        self._enqueue(key)

    def _pop(self) -> Optional[str]:
        with self._lock:
            if not self._queue:
                return None
            key = next(iter(self._queue))
            del self._queue[key]
            return key

    def process_pending(self) -> int:
        """Process queued keys until the queue is empty; return how many were processed.

        A key that fails is retried up to ``MAX_RETRIES`` times before it is dropped.
        """
        processed = 0
        while (key := self._pop()) is not None:
            processed += 1
            try:
                self.process_item(key)
            except Exception as exc:
                retries = self._requeues.get(key, 0)
                if retries < MAX_RETRIES:
                    log.error("error processing %s (will retry): %s", key, exc)
                    self._requeues[key] = retries + 1
                    self._enqueue(key)
                else:
                    log.error("error processing %s (giving up): %s", key, exc)
                    self._requeues.pop(key, None)
            else:
                self._requeues.pop(key, None)
        return processed

    def process_item(self, key: str) -> None:
        """Allocate a VIP for the ServiceEntry stored under ``key``, if it still exists."""
        try:
            obj = self._store.get(key)
        except Exception as exc:
            raise ServiceEntryLookupError(f"error fetching object {key} error: {exc}") from exc
        if obj is not None:
            self.auto_allocate_ip(key, obj)

    def _exists(self, key: str) -> Optional[bool]:
        """Whether ``key`` is in the store, or None if the store failed."""
        try:
            return key in self._store
        except Exception as exc:
            log.error("failed to get serviceEntry from informer local store: %s", exc)
            return None

    def auto_allocate_ip(self, key: str, service_entry: Config) -> None:
        """Give ``service_entry`` a VIP if it has none, or a fresh one if its VIP conflicts."""
        spec: ServiceEntry = service_entry.spec
        if spec.resolution is Resolution.NONE:
            return
        if not spec.addresses:
            spec.addresses = [self.next_available_ip()]
            self._update_service_entry(service_entry, key)
            return

        address = spec.addresses[0]
        # Addresses outside the reserved range are left alone.
        if not address.startswith(VIP_PREFIX):
            return
        owner = self.service_ips.get(address)
        if owner is None:
            self.service_ips[address] = key
            return
        if owner == key:
            return
        exists = self._exists(owner)
        if exists is None:
            return
        if not exists:
            self.service_ips[address] = key
        else:
            log.info("update conflicting vip for serviceEntry %s", service_entry)
            spec.addresses[0] = self.next_available_ip()
            self._update_service_entry(service_entry, key)

    def _update_service_entry(self, service_entry: Config, key: str) -> None:
        try:
            self._client.update(service_entry.meta.namespace, service_entry, FIELD_MANAGER)
        except Exception as exc:
            log.error("failed to update serviceEntry %s, error: %s", service_entry.name, exc)
        else:
            self.service_ips[service_entry.spec.addresses[0]] = key
            log.info("allocate vip for serviceEntry %s", struct_to_json(service_entry))

    def next_available_ip(self) -> str:
        """Return the next VIP that is free or held by a deleted ServiceEntry."""
        while True:
            ip = self._next_ip()
            owner = self.service_ips.get(ip)
            if owner is None:
                return ip
            exists = self._exists(owner)
            if exists is False:
                # Release the VIP of a ServiceEntry that has been deleted.
                del self.service_ips[ip]
                return ip

    def _next_ip(self) -> str:
        if self.max_ip % _OCTET_SPAN == 0:
            self.max_ip += 1
        if self.max_ip >= _OCTET_SPAN * _OCTET_SPAN:
            log.error("out of IPs to allocate for service entries, restart from 0")
            self.max_ip = 0
        third, fourth = divmod(self.max_ip, _OCTET_SPAN)
        self.max_ip += 1
        return f"{VIP_PREFIX}.{third}.{fourth}"