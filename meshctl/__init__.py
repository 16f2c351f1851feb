"""Service-mesh control logic for non-HTTP layer-7 protocols: protocol detection, EnvoyFilter generation, VIP allocation and meta-protocol route caching."""

__version__ = "0.1.0"