"""Reconcilers that react to changes of the mesh's own custom resources."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Iterable, Optional

from .metaprotocol import set_application_protocol_codec

log = logging.getLogger(__name__)

REDIS_SERVICE_KIND = "RedisService"
REDIS_DESTINATION_KIND = "RedisDestination"
DUBBO_AUTHORIZATION_POLICY_KIND = "DubboAuthorizationPolicy"
APPLICATION_PROTOCOL_KIND = "ApplicationProtocol"
META_ROUTER_KIND = "MetaRouter"

REDIS_KINDS = (REDIS_SERVICE_KIND, REDIS_DESTINATION_KIND)
DUBBO_KINDS = (DUBBO_AUTHORIZATION_POLICY_KIND,)
APPLICATION_PROTOCOL_KINDS = (APPLICATION_PROTOCOL_KIND,)
META_ROUTER_KINDS = (META_ROUTER_KIND,)

Trigger = Callable[[], None]


@dataclass
class Resource:
    """A custom resource as seen by a reconciler."""

    kind: str
    name: str
    namespace: str = ""
    spec: Any = field(default_factory=dict)
    generation: int = 0
    deletion_timestamp: Optional[str] = None


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation."""

    requeue: bool = False


class ReconcileError(RuntimeError):
    """Raised when a reconciliation fails; ``result`` says whether to requeue."""

    def __init__(self, message: str, result: ReconcileResult) -> None:
        super().__init__(message)
        self.result = result


def _run_trigger(trigger: Optional[Trigger], what: str) -> None:
    if trigger is None:
        return
    try:
        trigger()
    except Exception as exc:
        raise ReconcileError(f"failed to {what}: {exc}", ReconcileResult(requeue=True)) from exc


class PushReconciler:
    """Triggers a push of generated config whenever a watched resource changes.

    Used for RedisService, RedisDestination and DubboAuthorizationPolicy.
    """

    def __init__(self, trigger_push: Optional[Trigger] = None) -> None:
        self._trigger_push = trigger_push

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Trigger one push for the changed resource."""
        log.info("reconcile: %s/%s", namespace, name)
        _run_trigger(self._trigger_push, "trigger push")
        return ReconcileResult()


class ApplicationProtocolReconciler:
    """Registers the codecs declared by ApplicationProtocol resources.

    ``lister`` returns every ApplicationProtocol; each spec carries the
    ``protocol`` name and the ``codec`` that handles it.
    """

    def __init__(
        self,
        lister: Callable[[], Iterable[Resource]],
        trigger_push: Optional[Trigger] = None,
    ) -> None:
        self._lister = lister
        self._trigger_push = trigger_push

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Register all declared codecs, pushing before and after."""
        log.info("reconcile: %s/%s", namespace, name)
        _run_trigger(self._trigger_push, "trigger push")
        try:
            protocols = list(self._lister())
        except Exception as exc:
            raise ReconcileError(
                f"failed to list application protocols: {exc}", ReconcileResult()
            ) from exc
        for item in protocols:
            protocol, codec = item.spec["protocol"], item.spec["codec"]
            log.debug("register application protocol: %s, codec: %s", protocol, codec)
            set_application_protocol_codec(protocol, codec)
        _run_trigger(self._trigger_push, "trigger push")
        return ReconcileResult()


class MetaRouterReconciler:
    """Rebuilds the route cache whenever a MetaRouter changes."""

    def __init__(self, update_route_cache: Optional[Trigger] = None) -> None:
        self._update_route_cache = update_route_cache

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Request one rebuild of the route cache."""
        log.info("reconcile: %s/%s", namespace, name)
        _run_trigger(self._update_route_cache, "update route cache")
        return ReconcileResult()


def update_predicate(kinds: Collection[str], old: Resource, new: Resource) -> bool:
    """Whether an update from ``old`` to ``new`` needs reconciling.

    Only resources of one of ``kinds`` count, and only when the kind is
    unchanged and the spec, deletion timestamp or generation differ.
    """
    if old.kind not in kinds or new.kind != old.kind:
        return False
    return (
        old.spec != new.spec
        or old.deletion_timestamp != new.deletion_timestamp
        or old.generation != new.generation
    )