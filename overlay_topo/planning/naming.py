from __future__ import annotations

import re
from pathlib import Path
from typing import Tuple, Union

from ..constants import HOST_SCOPE, KEY_FILE_TEMPLATE, LOG_FILE_TEMPLATE, MAX_IFNAME_LEN
from ..errors import ConfigError
from ..types import AddressPair, RoutingDomain, Scope, scope_label

_PREFIX_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def validate_prefix(prefix: str, max_index: int) -> None:
    """Reject prefixes that are not usable as both a domain and an interface name stem."""
    if not prefix or not _PREFIX_RE.match(prefix):
        raise ConfigError(f"domain prefix {prefix!r} must be alphanumeric and start with a letter")
    if prefix.lower() == HOST_SCOPE:
        raise ConfigError(f"domain prefix {prefix!r} collides with the host scope name")
    longest = max(len(n) for n in link_names(prefix, max(1, max_index)))
    if longest > MAX_IFNAME_LEN:
        raise ConfigError(
            f"domain prefix {prefix!r} yields interface names of {longest} chars (max {MAX_IFNAME_LEN})"
        )


def domain_name(prefix: str, index: int) -> str:
    return f"{prefix}{index}"


def link_names(prefix: str, index: int) -> Tuple[str, str]:
    """(inside end, outside end) of the node's point-to-point link."""
    base = domain_name(prefix, index)
    return f"{base}-in", f"{base}-out"


def routing_domain(prefix: str, pair: AddressPair) -> RoutingDomain:
    inside, outside = link_names(prefix, pair.index)
    return RoutingDomain(
        index=pair.index,
        name=domain_name(prefix, pair.index),
        addresses=pair,
        link_inside=inside,
        link_outside=outside,
    )


def key_file(work_dir: Union[str, Path], scope: Scope) -> Path:
    return Path(work_dir) / KEY_FILE_TEMPLATE.format(scope=scope_label(scope))


def log_file(work_dir: Union[str, Path], scope: Scope) -> Path:
    return Path(work_dir) / LOG_FILE_TEMPLATE.format(scope=scope_label(scope))


def endpoint(scheme: str, host: str, port: int) -> str:
    return f"{scheme}://{host}:{port}"
