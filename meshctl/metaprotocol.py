"""Registry of codecs for application protocols carried over MetaProtocol."""

from __future__ import annotations

import threading


class CodecNotFoundError(LookupError):
    """Raised when no codec is registered for an application protocol."""


_lock = threading.Lock()
_application_protocols: dict[str, str] = {
    "dubbo": "aeraki.meta_protocol.codec.dubbo",
    "thrift": "aeraki.meta_protocol.codec.thrift",
}


def set_application_protocol_codec(protocol: str, codec: str) -> None:
    """Register the codec for an application protocol."""
    with _lock:
        _application_protocols[protocol] = codec


def get_application_protocol_codec(protocol: str) -> str:
    """Return the codec registered for an application protocol."""
    with _lock:
        codec = _application_protocols.get(protocol, "")
    if not codec:
        raise CodecNotFoundError(f"can't find codec for protocol: {protocol}")
    return codec


def get_application_protocol_from_port_name(port_name: str) -> str:
    """Extract the application protocol from a port name like ``tcp-metaprotocol-dubbo``."""
    parts = port_name.split("-")
    if len(parts) > 2:
        return parts[2]
    raise ValueError(f"can't find application protocol in port name: {port_name}")