"""Configuration parameters of the control plane service."""

from __future__ import annotations

from dataclasses import dataclass, field

from .network_filter import Generator
from .protocol import Protocol


@dataclass
class AerakiArgs:
    """All configuration parameters of the service; every field defaults to empty."""

    istiod_addr: str = ""
    xds_addr: str = ""
    namespace: str = ""
    config_store_secret: str = ""
    election_id: str = ""
    log_level: str = ""
    protocols: dict[Protocol, Generator] = field(default_factory=dict)