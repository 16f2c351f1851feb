"""Layer-7 protocols carried by service ports."""

from __future__ import annotations

from enum import Enum


class Protocol(str, Enum):
    """Network protocol declared for a service port."""

    DUBBO = "Dubbo"
    THRIFT = "Thrift"
    MONGO = "Mongo"
    REDIS = "Redis"
    MYSQL = "MySQL"
    KAFKA = "Kafka"
    ZOOKEEPER = "Zookeeper"
    META_PROTOCOL = "MetaProtocol"
    UNSUPPORTED = "UnsupportedProtocol"

    def __str__(self) -> str:
        return self.value

    def is_dubbo(self) -> bool:
        """True for protocols that use Dubbo as transport."""
        return self is Protocol.DUBBO

    def is_thrift(self) -> bool:
        """True for protocols that use Thrift as transport."""
        return self is Protocol.THRIFT

    def is_meta_protocol(self) -> bool:
        """True for protocols that use MetaProtocol as transport."""
        return self is Protocol.META_PROTOCOL

    def is_unsupported(self) -> bool:
        """True for protocols that are not supported."""
        return self is Protocol.UNSUPPORTED


_BY_LOWER_NAME = {
    "dubbo": Protocol.DUBBO,
    "thrift": Protocol.THRIFT,
    "mongo": Protocol.MONGO,
    "redis": Protocol.REDIS,
    "mysql": Protocol.MYSQL,
    "kafka": Protocol.KAFKA,
    "zookeeper": Protocol.ZOOKEEPER,
    "metaprotocol": Protocol.META_PROTOCOL,
}


def parse(s: str) -> Protocol:
    """Parse a protocol name, ignoring case; unknown names are unsupported."""
    return _BY_LOWER_NAME.get(s.lower(), Protocol.UNSUPPORTED)


def get_layer7_protocol_from_port_name(name: str) -> Protocol:
    """Extract the layer-7 protocol from a port name such as ``tcp-dubbo``."""
    parts = name.split("-")
    if len(parts) > 1:
        return parse(parts[1])
    return Protocol.UNSUPPORTED