"""Error taxonomy for fleet operations.

Every error carries a stable ``kind`` string so per-node outcomes can be
compared and summarized without isinstance chains.
"""
from __future__ import annotations

from typing import Optional


class FleetError(Exception):
    kind = "FleetError"

    def __init__(self, message: str = "", *, scope: Optional[object] = None, stderr: str = ""):
        super().__init__(message)
        self.scope = scope
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__() or self.kind
        if self.stderr:
            return f"{base} ({self.stderr.strip()[-300:]})"
        return base


class ConfigError(FleetError):
    kind = "ConfigError"


class InvalidStateError(FleetError):
    kind = "InvalidState"


class RangeExceeded(FleetError):
    kind = "RangeExceeded"


class AlreadyExists(FleetError):
    kind = "AlreadyExists"


class NameConflict(FleetError):
    kind = "NameConflict"


class DomainNotFound(FleetError):
    kind = "DomainNotFound"


class LinkNotFound(FleetError):
    kind = "LinkNotFound"


class InvalidAddress(FleetError):
    kind = "InvalidAddress"


class RouteExists(FleetError):
    kind = "RouteExists"


class ProcessSpawnFailed(FleetError):
    kind = "ProcessSpawnFailed"


class SignalDeliveryFailed(FleetError):
    kind = "SignalDeliveryFailed"


class RemovalFailed(FleetError):
    kind = "RemovalFailed"


class HostCommandFailed(FleetError):
    """An ``ip`` invocation failed in a way none of the typed errors describe."""

    kind = "HostCommandFailed"


class ApiUnavailable(FleetError):
    kind = "ApiUnavailable"


class PeerNotFound(FleetError):
    kind = "PeerNotFound"


__all__ = [
    "FleetError",
    "ConfigError",
    "InvalidStateError",
    "RangeExceeded",
    "AlreadyExists",
    "NameConflict",
    "DomainNotFound",
    "LinkNotFound",
    "InvalidAddress",
    "RouteExists",
    "ProcessSpawnFailed",
    "SignalDeliveryFailed",
    "RemovalFailed",
    "HostCommandFailed",
    "ApiUnavailable",
    "PeerNotFound",
]
