import threading

import pytest

from meshctl.envoyfilter_controller import (
    CONFIG_ROOT_NS,
    FIELD_MANAGER,
    EnvoyFilterController,
    EnvoyFilterPushError,
)
from meshctl.model import (
    SERVICE_ENTRY_KIND,
    VIRTUAL_SERVICE_KIND,
    Config,
    EnvoyFilterWrapper,
    Event,
    Meta,
    Port,
    ServiceEntry,
    VirtualService,
)
from meshctl.network_filter import Generator
from meshctl.protocol import Protocol

HOST = "dubbo.example.com"


class FakeStore:
    def __init__(self, service_entries=(), virtual_services=()):
        self.configs = {
            SERVICE_ENTRY_KIND: list(service_entries),
            VIRTUAL_SERVICE_KIND: list(virtual_services),
        }

    def list(self, kind, namespace):
        return list(self.configs.get(kind, []))


class FakeClient:
    def __init__(self, existing=(), fail_create=False):
        self.items = {crd["metadata"]["name"]: crd for crd in existing}
        self.fail_create = fail_create
        self.calls = []
        self.created = threading.Event()

    def list(self, namespace, label_selector):
        self.calls.append(("list", namespace, label_selector))
        return list(self.items.values())

    def create(self, namespace, crd, field_manager):
        self.calls.append(("create", crd["metadata"]["name"], field_manager))
        if self.fail_create:
            raise RuntimeError("conflict")
        self.items[crd["metadata"]["name"]] = crd
        self.created.set()

    def update(self, namespace, crd, field_manager):
        self.calls.append(("update", crd["metadata"]["name"], field_manager))
        self.items[crd["metadata"]["name"]] = crd

    def delete(self, namespace, name):
        self.calls.append(("delete", name))
        del self.items[name]


class FakeGenerator(Generator):
    def __init__(self, fail=False):
        self.fail = fail
        self.contexts = []

    def generate(self, context):
        self.contexts.append(context)
        if self.fail:
            raise RuntimeError("boom")
        host = context.service_entry.spec.hosts[0]
        return [
            EnvoyFilterWrapper(
                name="aeraki-outbound-" + host,
                envoy_filter={"configPatches": [{"host": host}]},
            )
        ]


def service_config(host=HOST, port_name="tcp-dubbo", name="svc"):
    return Config(
        meta=Meta(group_version_kind=SERVICE_ENTRY_KIND, name=name),
        spec=ServiceEntry(hosts=[host] if host else [], ports=[Port(number=20880, name=port_name)]),
    )


def vs_config(hosts, name="vs"):
    return Config(
        meta=Meta(group_version_kind=VIRTUAL_SERVICE_KIND, name=name),
        spec=VirtualService(hosts=list(hosts)),
    )


def make_controller(store, client=None, generator=None, **kwargs):
    generator = generator or FakeGenerator()
    return EnvoyFilterController(
        client or FakeClient(), store, {Protocol.DUBBO: generator}, **kwargs
    )


def test_generate_uses_generator_for_port_protocol():
    generator = FakeGenerator()
    store = FakeStore([service_config()], [vs_config([HOST])])
    filters = make_controller(store, generator=generator).generate_envoy_filters()
    assert list(filters) == ["aeraki-outbound-" + HOST]
    context = generator.contexts[0]
    assert context.service_entry.meta.name == "svc"
    assert context.virtual_service.spec.hosts == [HOST]


def test_generate_skips_ports_without_generator():
    store = FakeStore([service_config(port_name="tcp-redis")])
    assert make_controller(store).generate_envoy_filters() == {}


def test_generate_ignores_failing_generator():
    store = FakeStore([service_config()])
    controller = make_controller(store, generator=FakeGenerator(fail=True))
    assert controller.generate_envoy_filters() == {}


def test_generate_stops_at_service_without_host():
    store = FakeStore([service_config(host=""), service_config(name="other")])
    assert make_controller(store).generate_envoy_filters() == {}


def test_generate_rejects_wrong_spec():
    store = FakeStore([Config(meta=Meta(name="bad"), spec=VirtualService())])
    with pytest.raises(EnvoyFilterPushError):
        make_controller(store).generate_envoy_filters()


def test_find_related_virtual_service():
    store = FakeStore(virtual_services=[vs_config(["other"], "a"), vs_config([HOST], "b")])
    controller = make_controller(store)
    found = controller.find_related_virtual_service(ServiceEntry(hosts=[HOST]))
    assert found.meta.name == "b"
    assert controller.find_related_virtual_service(ServiceEntry(hosts=["missing"])) is None


def test_to_envoy_filter_crd_keeps_resource_version():
    controller = make_controller(FakeStore())
    wrapper = EnvoyFilterWrapper(name="f", envoy_filter={"configPatches": []})
    old = {"metadata": {"name": "f", "resourceVersion": "7"}, "spec": {}}
    crd = controller.to_envoy_filter_crd(wrapper, old)
    assert crd["metadata"] == {
        "name": "f",
        "namespace": CONFIG_ROOT_NS,
        "labels": {"manager": FIELD_MANAGER},
        "resourceVersion": "7",
    }
    assert crd["spec"] == wrapper.envoy_filter
    assert "resourceVersion" not in controller.to_envoy_filter_crd(wrapper, None)["metadata"]


def test_push_creates_updates_and_deletes():
    store = FakeStore([service_config(), service_config(host="b.example.com", name="b")])
    stale = {"metadata": {"name": "aeraki-outbound-stale"}, "spec": {}}
    changed = {"metadata": {"name": "aeraki-outbound-" + HOST}, "spec": {"old": True}}
    client = FakeClient(existing=[stale, changed])
    make_controller(store, client).push_envoy_filters()

    assert ("delete", "aeraki-outbound-stale") in client.calls
    assert ("update", "aeraki-outbound-" + HOST, FIELD_MANAGER) in client.calls
    assert ("create", "aeraki-outbound-b.example.com", FIELD_MANAGER) in client.calls
    assert client.calls[0] == ("list", CONFIG_ROOT_NS, "manager=" + FIELD_MANAGER)
    assert sorted(client.items) == ["aeraki-outbound-b.example.com", "aeraki-outbound-" + HOST]


def test_push_leaves_unchanged_filters_alone():
    store = FakeStore([service_config()])
    client = FakeClient()
    controller = make_controller(store, client)
    controller.push_envoy_filters()
    client.calls.clear()
    controller.push_envoy_filters()
    assert [call[0] for call in client.calls] == ["list"]


def test_push_reports_failures():
    store = FakeStore([service_config()])
    with pytest.raises(EnvoyFilterPushError, match="failed to create EnvoyFilter"):
        make_controller(store, FakeClient(fail_create=True)).push_envoy_filters()


def test_run_pushes_after_event():
    store = FakeStore([service_config()])
    client = FakeClient()
    controller = make_controller(store, client, debounce_after=0.01, debounce_max=0.1)
    stop = threading.Event()
    thread = controller.run(stop)
    controller.config_updated(Event.UPDATE)
    try:
        assert client.created.wait(5)
    finally:
        stop.set()
        thread.join(5)
    assert list(client.items) == ["aeraki-outbound-" + HOST]
    assert not thread.is_alive()