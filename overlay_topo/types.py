from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .constants import HOST_SCOPE
from .errors import FleetError

# "host" or a 1-based node index
Scope = Union[str, int]


def scope_label(scope: Scope) -> str:
    if scope == HOST_SCOPE:
        return HOST_SCOPE
    return f"node{int(scope)}"


@dataclass(frozen=True)
class AddressPair:
    index: int
    inside: ipaddress.IPv4Interface
    outside: ipaddress.IPv4Interface

    @property
    def default_route_target(self) -> str:
        """Outside address without its prefix; the node's default gateway."""
        return str(self.outside.ip)

    @property
    def network(self) -> ipaddress.IPv4Network:
        return self.inside.network


@dataclass(frozen=True)
class RoutingDomain:
    index: int
    name: str
    addresses: AddressPair
    link_inside: str
    link_outside: str


@dataclass(frozen=True)
class DaemonSpec:
    """Everything needed to launch one daemon instance."""
    scope: Scope
    key_file: Path
    api_address: str
    peers: Tuple[str, ...]
    log_path: Path
    # None runs the daemon in the host domain
    domain: Optional[str] = None

    def argv(self, binary: str) -> List[str]:
        args = [binary, "--key-file", str(self.key_file), "--api-addr", self.api_address]
        if self.peers:
            args.append("--peers")
            args.extend(self.peers)
        return args


@dataclass(frozen=True)
class DaemonInstance:
    spec: DaemonSpec
    pid: int

    @property
    def scope(self) -> Scope:
        return self.spec.scope


@dataclass
class Outcome:
    scope: Scope
    action: str
    ok: bool
    error: Optional[FleetError] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return "ok" if self.ok else (self.error.kind if self.error else "error")

    def __str__(self) -> str:
        label = scope_label(self.scope)
        if self.ok:
            return f"{label}: {self.action} ok"
        return f"{label}: {self.action} failed [{self.kind}] {self.error}"


@dataclass
class OperationResult:
    action: str
    outcomes: List[Outcome] = field(default_factory=list)

    def success(self, scope: Scope, action: Optional[str] = None, **detail: Any) -> Outcome:
        out = Outcome(scope=scope, action=action or self.action, ok=True, detail=detail)
        self.outcomes.append(out)
        return out

    def failure(self, scope: Scope, error: FleetError, action: Optional[str] = None, **detail: Any) -> Outcome:
        out = Outcome(scope=scope, action=action or self.action, ok=False, error=error, detail=detail)
        self.outcomes.append(out)
        return out

    def extend(self, other: "OperationResult") -> None:
        self.outcomes.extend(other.outcomes)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def failures(self) -> List[Outcome]:
        return [o for o in self.outcomes if not o.ok]

    def for_scope(self, scope: Scope) -> List[Outcome]:
        return [o for o in self.outcomes if o.scope == scope]

    def __iter__(self) -> Iterator[Outcome]:
        return iter(self.outcomes)

    def __len__(self) -> int:
        return len(self.outcomes)

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for o in self.outcomes:
            counts[o.kind] = counts.get(o.kind, 0) + 1
        return counts


class FleetPhase(enum.Enum):
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    TEARING_DOWN = "tearing-down"


@dataclass
class FleetState:
    """Which domains and daemons currently exist. Owned by TopologyManager."""
    phase: FleetPhase = FleetPhase.ABSENT
    domains: Dict[int, RoutingDomain] = field(default_factory=dict)
    instances: Dict[Scope, DaemonInstance] = field(default_factory=dict)

    def clear(self) -> None:
        self.domains.clear()
        self.instances.clear()
        self.phase = FleetPhase.ABSENT
