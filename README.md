# meshctl

Control-plane logic for a service mesh that carries layer-7 protocols other
than HTTP: Dubbo, Thrift, Mongo, Redis, MySQL, Kafka, Zookeeper and the
generic "meta protocol". It has no dependencies outside the standard library.

## What is in it

- `meshctl.protocol`: the `Protocol` enum, `parse` (case-insensitive, unknown
  names give `Protocol.UNSUPPORTED`) and `get_layer7_protocol_from_port_name`,
  which reads the second dash-separated part of a port name such as
  `tcp-dubbo`.
- `meshctl.metaprotocol`: a thread-safe registry of codecs for application
  protocols carried over the meta protocol. `dubbo` and `thrift` are
  registered by default; `set_application_protocol_codec` adds or replaces one,
  `get_application_protocol_codec` raises `CodecNotFoundError` for an unknown
  protocol, and `get_application_protocol_from_port_name` takes the third part
  of a name like `tcp-metaprotocol-dubbo` (raising `ValueError` if there is none).
- `meshctl.model`: dataclasses for config objects (`Meta`, `Port`,
  `ServiceEntry`, `VirtualService`, `MetaRouter`, `Config`, ...), the `Event`,
  `Resolution` and `TrafficDirection` enums, `build_cluster_name`
  (`outbound|<port>|<subset>|<host>`; inbound names leave the host empty),
  `build_meta_protocol_route_name` (`<host>_<port>`) and `struct_to_json`.
- `meshctl.debounce.Debouncer`: runs a callback on a background thread once
  events have been quiet for `after` seconds, or at the latest `max_wait`
  seconds after the first pending event. Usable as a context manager.
- `meshctl.network_filter`: the `Generator` base class and
  `generate_insert_before_network_filter` / `generate_replace_network_filter`,
  which build an outbound EnvoyFilter (when the service has an address) and an
  inbound one (when it selects workloads, directly or through a
  `workloadSelector` annotation). Filters are named
  `aeraki-outbound-<host>` and `aeraki-inbound-<host>`.
- `meshctl.envoyfilter_controller.EnvoyFilterController`: generates the
  EnvoyFilters of every ServiceEntry in a config store with the generator for
  its port's protocol, and creates, updates or deletes stored filters through
  a client you supply (`list`, `create`, `update`, `delete`). Failures raise
  `EnvoyFilterPushError`; `run(stop)` processes queued events, debounced, on a
  background thread until the `threading.Event` is set.
- `meshctl.serviceentry.ServiceEntryController`: allocates VIPs from
  240.240.0.0/16 to ServiceEntries without an address, and moves conflicting
  ones, writing the change back through a client you supply. Events are queued
  with `on_add`, `on_update` and `on_delete` and handled by `process_pending`,
  which retries a failing key up to five times.
- `meshctl.config_controller.ConfigController`: handlers registered with
  `register_event_handler` are called by `dispatch` for ServiceEntry changes on
  `tcp*` ports and for VirtualService changes that concern a service using one
  of the given protocols. Updates that leave the spec unchanged are ignored.
- `meshctl.routes`: `Snapshot`, `SnapshotCache`,
  `meta_protocol_route_to_http_route` and `generate_snapshot`, which turn
  meta-protocol routes into RDS route configurations.
- `meshctl.cache_mgr`: `CacheMgr` builds the route snapshot of every
  meta-protocol service (from its `MetaRouter`, or a default route) for each
  subscribed node; `Callbacks.on_stream_request` subscribes a node on its
  first request.
- `meshctl.reconcilers`: `PushReconciler`, `ApplicationProtocolReconciler`
  (registers declared codecs), `MetaRouterReconciler`, the `Resource` and
  `ReconcileResult` types, `ReconcileError`, and `update_predicate`.
- `meshctl.options.AerakiArgs`: the service's configuration parameters.

## Example

```python
from meshctl.model import Meta, Port, ServiceEntry, ServiceEntryWrapper
from meshctl.network_filter import generate_replace_network_filter
from meshctl.protocol import Protocol, get_layer7_protocol_from_port_name
from meshctl.serviceentry import ServiceEntryController

assert get_layer7_protocol_from_port_name("tcp-dubbo-28001") is Protocol.DUBBO
assert get_layer7_protocol_from_port_name("Dubbo") is Protocol.UNSUPPORTED

service = ServiceEntryWrapper(
    spec=ServiceEntry(
        hosts=["dubbo-provider.svc"],
        addresses=["240.240.0.1"],
        ports=[Port(20880, "tcp-dubbo")],
    ),
    meta=Meta(annotations={"workloadSelector": "dubbo-provider"}),
)
filters = generate_replace_network_filter(
    service,
    {"stat_prefix": "dubbo"},
    {"stat_prefix": "dubbo"},
    "envoy.filters.network.dubbo_proxy",
    "type.googleapis.com/envoy.extensions.filters.network.dubbo_proxy.v3.DubboProxy",
)
print([f.name for f in filters])
# ['aeraki-outbound-dubbo-provider.svc', 'aeraki-inbound-dubbo-provider.svc']

controller = ServiceEntryController(client=None, store={})
print(controller.next_available_ip())
# 240.240.0.1
```

## What it does not do

meshctl holds the control logic only. It does not talk to a Kubernetes API
server or an xDS config server, does not serve routes over gRPC, and has no
command-line program or long-running service of its own. The controllers work
against config stores, clients and listers that you pass in, and events reach
them only through the methods you call (`dispatch`, `on_add`,
`config_updated`, `on_stream_request`, ...).

## Tests

Install the `test` extra and run the suite in `tests/` with pytest.