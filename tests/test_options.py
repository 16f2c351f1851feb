from meshctl.model import EnvoyFilterContext
from meshctl.network_filter import Generator
from meshctl.options import AerakiArgs
from meshctl.protocol import Protocol


class _NullGenerator(Generator):
    def generate(self, context: EnvoyFilterContext):
        return []


def test_defaults_are_empty():
    args = AerakiArgs()
    assert args.istiod_addr == ""
    assert args.xds_addr == ""
    assert args.namespace == ""
    assert args.config_store_secret == ""
    assert args.election_id == ""
    assert args.log_level == ""
    assert args.protocols == {}


def test_protocols_are_not_shared_between_instances():
    first, second = AerakiArgs(), AerakiArgs()
    generator = _NullGenerator()
    first.protocols[Protocol.DUBBO] = generator
    assert first.protocols == {Protocol.DUBBO: generator}
    assert second.protocols == {}


def test_values_are_kept():
    args = AerakiArgs(istiod_addr="istiod:15010", namespace="mesh", election_id="leader")
    assert (args.istiod_addr, args.namespace, args.election_id) == (
        "istiod:15010",
        "mesh",
        "leader",
    )