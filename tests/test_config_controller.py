from meshctl.config_controller import ConfigController
from meshctl.model import (
    DESTINATION_RULE_KIND,
    SERVICE_ENTRY_KIND,
    VIRTUAL_SERVICE_KIND,
    Config,
    Event,
    Meta,
    Port,
    ServiceEntry,
    VirtualService,
)
from meshctl.protocol import Protocol


class FakeStore:
    def __init__(self, entries=(), fail=False):
        self.entries = list(entries)
        self.fail = fail

    def list(self, kind, namespace):
        if self.fail:
            raise RuntimeError("store unavailable")
        return [c for c in self.entries if c.group_version_kind == kind]


def se_config(name, host, port_names):
    return Config(
        meta=Meta(group_version_kind=SERVICE_ENTRY_KIND, name=name),
        spec=ServiceEntry(
            hosts=[host],
            ports=[Port(number=20880 + i, name=n) for i, n in enumerate(port_names)],
        ),
    )


def vs_config(name, hosts):
    return Config(
        meta=Meta(group_version_kind=VIRTUAL_SERVICE_KIND, name=name),
        spec=VirtualService(hosts=list(hosts)),
    )


def recording_controller(store, protocols=(Protocol.DUBBO,)):
    calls = []
    controller = ConfigController(store)
    controller.register_event_handler(set(protocols), lambda p, c, e: calls.append((p, c, e)))
    return controller, calls


def test_service_entry_calls_handler_per_tcp_port():
    controller, calls = recording_controller(FakeStore())
    tcp_ports = ["tcp-dubbo", "tcp-thrift"]
    curr = se_config("a", "a.example.com", tcp_ports + ["http-web"])
    controller.dispatch(None, curr, Event.ADD)
    assert calls == [(None, curr, Event.ADD)] * len(tcp_ports)


def test_service_entry_without_tcp_port_is_ignored():
    controller, calls = recording_controller(FakeStore())
    controller.dispatch(None, se_config("a", "a.example.com", ["http-web"]), Event.ADD)
    assert calls == []


def test_update_with_unchanged_spec_is_ignored():
    controller, calls = recording_controller(FakeStore())
    prev = se_config("a", "a.example.com", ["tcp-dubbo"])
    curr = se_config("a", "a.example.com", ["tcp-dubbo"])
    controller.dispatch(prev, curr, Event.UPDATE)
    assert calls == []


def test_update_with_changed_spec_is_delivered():
    controller, calls = recording_controller(FakeStore())
    prev = se_config("a", "a.example.com", ["tcp-dubbo"])
    curr = se_config("a", "b.example.com", ["tcp-dubbo"])
    controller.dispatch(prev, curr, Event.UPDATE)
    assert calls == [(prev, curr, Event.UPDATE)]


def test_service_entry_kind_with_wrong_spec_is_ignored():
    controller, calls = recording_controller(FakeStore())
    bad = Config(meta=Meta(group_version_kind=SERVICE_ENTRY_KIND, name="a"), spec="bogus")
    controller.dispatch(None, bad, Event.ADD)
    assert calls == []


def test_virtual_service_for_supported_protocol_is_delivered():
    store = FakeStore([se_config("a", "a.example.com", ["tcp-dubbo"])])
    controller, calls = recording_controller(store)
    curr = vs_config("vs", ["a.example.com"])
    controller.dispatch(None, curr, Event.ADD)
    assert calls == [(None, curr, Event.ADD)]


def test_virtual_service_for_unregistered_protocol_is_ignored():
    store = FakeStore([se_config("a", "a.example.com", ["tcp-thrift"])])
    controller, calls = recording_controller(store)
    controller.dispatch(None, vs_config("vs", ["a.example.com"]), Event.ADD)
    assert calls == []


def test_virtual_service_for_other_host_is_ignored():
    store = FakeStore([se_config("a", "a.example.com", ["tcp-dubbo"])])
    controller, calls = recording_controller(store)
    controller.dispatch(None, vs_config("vs", ["other.example.com"]), Event.ADD)
    assert calls == []


def test_virtual_service_without_hosts_is_ignored():
    store = FakeStore([se_config("a", "a.example.com", ["tcp-dubbo"])])
    controller, calls = recording_controller(store)
    controller.dispatch(None, vs_config("vs", []), Event.ADD)
    assert calls == []


def test_virtual_service_with_failing_store_is_ignored():
    controller, calls = recording_controller(FakeStore(fail=True))
    controller.dispatch(None, vs_config("vs", ["a.example.com"]), Event.ADD)
    assert calls == []


def test_other_watched_kinds_do_not_reach_handler():
    controller, calls = recording_controller(FakeStore())
    rule = Config(meta=Meta(group_version_kind=DESTINATION_RULE_KIND, name="dr"), spec={})
    controller.dispatch(None, rule, Event.ADD)
    assert calls == []


def test_all_registered_handlers_are_notified():
    controller = ConfigController(FakeStore())
    first, second = [], []
    controller.register_event_handler({Protocol.DUBBO}, lambda p, c, e: first.append(c))
    controller.register_event_handler({Protocol.DUBBO}, lambda p, c, e: second.append(c))
    curr = se_config("a", "a.example.com", ["tcp-dubbo"])
    controller.dispatch(None, curr, Event.DELETE)
    assert first == [curr]
    assert second == [curr]


def test_store_is_exposed():
    store = FakeStore([se_config("a", "a.example.com", ["tcp-dubbo"])])
    controller = ConfigController(store, "istiod.istio-system:15010")
    assert controller.store.list(SERVICE_ENTRY_KIND, "") == store.entries
    assert controller.config_server_addr == "istiod.istio-system:15010"