"""``HostNetwork`` backed by the iproute2 ``ip`` tool.

Commands are built as argv lists and run without a shell, so names and
addresses never pass through quoting. Set ``OVTOPO_USE_SUDO=1`` (or pass
``use_sudo=True``) when the manager itself does not run as root; sudo is
invoked non-interactively.

The argv builders are module-level so ``plan`` can print the exact command
sequence for a node without touching the host.
"""
from __future__ import annotations

import ipaddress
import logging
import os
import subprocess
from typing import Dict, List, Optional, Sequence, Type

from ..errors import (
    AlreadyExists,
    DomainNotFound,
    FleetError,
    HostCommandFailed,
    InvalidAddress,
    LinkNotFound,
    NameConflict,
    RouteExists,
)
from ..types import RoutingDomain
from .base import LOOPBACK, HostNetwork

logger = logging.getLogger(__name__)

IP = "ip"

# Lower-cased stderr fragments -> typed error, checked in order per command
_MISSING_DOMAIN = {"cannot open network namespace": DomainNotFound}
_MISSING_LINK = {"cannot find device": LinkNotFound, "does not exist": LinkNotFound}
_BAD_ADDRESS = {
    "is expected rather than": InvalidAddress,
    "invalid prefix": InvalidAddress,
    "an inet prefix is expected": InvalidAddress,
}


def _env_flag(name: str, default_on: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default_on
    return val.strip().lower() in ("1", "true", "yes", "y", "on")


def _ns(domain: Optional[str]) -> List[str]:
    return ["-n", domain] if domain else []


def list_domains_cmd() -> List[str]:
    return [IP, "netns", "list"]


def add_domain_cmd(name: str) -> List[str]:
    return [IP, "netns", "add", name]


def delete_domain_cmd(name: str) -> List[str]:
    return [IP, "netns", "del", name]


def show_link_cmd(name: str, domain: Optional[str] = None) -> List[str]:
    return [IP, *_ns(domain), "link", "show", "dev", name]


def add_veth_cmd(name: str, peer: str) -> List[str]:
    return [IP, "link", "add", name, "type", "veth", "peer", "name", peer]


def delete_link_cmd(name: str, domain: Optional[str] = None) -> List[str]:
    return [IP, *_ns(domain), "link", "del", "dev", name]


def set_link_domain_cmd(name: str, domain: str) -> List[str]:
    return [IP, "link", "set", "dev", name, "netns", domain]


def show_addresses_cmd(ifname: str, domain: Optional[str] = None) -> List[str]:
    return [IP, *_ns(domain), "-o", "-4", "addr", "show", "dev", ifname]


def add_address_cmd(ifname: str, address: ipaddress.IPv4Interface, domain: Optional[str] = None) -> List[str]:
    return [IP, *_ns(domain), "addr", "add", str(address), "dev", ifname]


def link_up_cmd(ifname: str, domain: Optional[str] = None) -> List[str]:
    return [IP, *_ns(domain), "link", "set", "dev", ifname, "up"]


def show_default_route_cmd(domain: str) -> List[str]:
    return [IP, *_ns(domain), "-4", "route", "show", "default"]


def add_default_route_cmd(domain: str, via: ipaddress.IPv4Address) -> List[str]:
    return [IP, *_ns(domain), "route", "add", "default", "via", str(via)]


def exec_in_domain_cmd(domain: str) -> List[str]:
    return [IP, "netns", "exec", domain]


def node_bring_up_commands(domain: RoutingDomain) -> List[List[str]]:
    """Ordered host commands that provision one node's domain and link."""
    pair = domain.addresses
    return [
        add_domain_cmd(domain.name),
        add_veth_cmd(domain.link_inside, domain.link_outside),
        set_link_domain_cmd(domain.link_inside, domain.name),
        link_up_cmd(LOOPBACK, domain.name),
        add_address_cmd(domain.link_inside, pair.inside, domain.name),
        link_up_cmd(domain.link_inside, domain.name),
        add_address_cmd(domain.link_outside, pair.outside),
        link_up_cmd(domain.link_outside),
        add_default_route_cmd(domain.name, ipaddress.IPv4Address(pair.default_route_target)),
    ]


def node_tear_down_commands(domain: RoutingDomain) -> List[List[str]]:
    return [delete_link_cmd(domain.link_outside), delete_domain_cmd(domain.name)]


def parse_domain_list(stdout: str) -> List[str]:
    """Parse ``ip netns list`` output; lines look like ``name (id: 3)`` or ``name``."""
    names: List[str] = []
    for line in (stdout or "").splitlines():
        line = line.strip()
        if not line:
            continue
        names.append(line.split()[0])
    return names


def parse_addresses(stdout: str) -> List[ipaddress.IPv4Interface]:
    """Parse ``ip -o -4 addr show`` lines: ``2: eth0    inet 10.0.0.2/24 brd ... scope global eth0``."""
    out: List[ipaddress.IPv4Interface] = []
    for line in (stdout or "").splitlines():
        parts = line.split()
        for i, tok in enumerate(parts[:-1]):
            if tok == "inet":
                try:
                    out.append(ipaddress.IPv4Interface(parts[i + 1]))
                except ValueError:
                    logger.debug("unparseable address line: %s", line)
                break
    return out


class IpRoute2Network(HostNetwork):
    def __init__(self, use_sudo: Optional[bool] = None, ip_binary: str = IP):
        self.use_sudo = _env_flag("OVTOPO_USE_SUDO") if use_sudo is None else bool(use_sudo)
        self.ip_binary = ip_binary

    def _wrap(self, argv: Sequence[str]) -> List[str]:
        cmd = list(argv)
        if cmd and cmd[0] == IP and self.ip_binary != IP:
            cmd[0] = self.ip_binary
        if self.use_sudo:
            return ["sudo", "-n"] + cmd
        return cmd

    def _run(self, argv: Sequence[str]) -> subprocess.CompletedProcess:
        cmd = self._wrap(argv)
        logger.debug("[ip] %s", " ".join(cmd))
        try:
            return subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, check=False)
        except OSError as exc:
            raise HostCommandFailed(f"cannot execute {cmd[0]!r}: {exc}") from exc

    def _check(
        self,
        argv: Sequence[str],
        errors: Optional[Dict[str, Type[FleetError]]] = None,
        what: str = "",
    ) -> subprocess.CompletedProcess:
        proc = self._run(argv)
        if proc.returncode == 0:
            return proc
        stderr = (proc.stderr or "").strip()
        low = stderr.lower()
        for fragment, cls in (errors or {}).items():
            if fragment in low:
                raise cls(what or " ".join(argv), stderr=stderr)
        raise HostCommandFailed(f"{what or ' '.join(argv)} exited {proc.returncode}", stderr=stderr)

    def list_domains(self) -> List[str]:
        proc = self._check(list_domains_cmd(), what="list domains")
        return parse_domain_list(proc.stdout)

    def add_domain(self, name: str) -> None:
        self._check(add_domain_cmd(name), {"file exists": AlreadyExists}, f"create domain {name}")

    def delete_domain(self, name: str) -> None:
        self._check(delete_domain_cmd(name), {"no such file": DomainNotFound}, f"delete domain {name}")

    def link_exists(self, name: str, domain: Optional[str] = None) -> bool:
        proc = self._run(show_link_cmd(name, domain))
        if proc.returncode == 0:
            return True
        stderr = (proc.stderr or "").lower()
        if domain and "cannot open network namespace" in stderr:
            raise DomainNotFound(f"routing domain {domain!r} does not exist", stderr=proc.stderr)
        return False

    def add_veth(self, name: str, peer: str) -> None:
        self._check(add_veth_cmd(name, peer), {"file exists": NameConflict}, f"create link {name}/{peer}")

    def delete_link(self, name: str, domain: Optional[str] = None) -> None:
        self._check(delete_link_cmd(name, domain), {**_MISSING_DOMAIN, **_MISSING_LINK}, f"delete link {name}")

    def set_link_domain(self, name: str, domain: str) -> None:
        errors = {**_MISSING_LINK, "invalid netns value": DomainNotFound, "no such file": DomainNotFound}
        self._check(set_link_domain_cmd(name, domain), errors, f"move {name} into {domain}")

    def addresses(self, ifname: str, domain: Optional[str] = None) -> List[ipaddress.IPv4Interface]:
        proc = self._check(show_addresses_cmd(ifname, domain), {**_MISSING_DOMAIN, **_MISSING_LINK}, f"show {ifname}")
        return parse_addresses(proc.stdout)

    def add_address(self, ifname: str, address: ipaddress.IPv4Interface, domain: Optional[str] = None) -> None:
        errors = {**_MISSING_DOMAIN, **_MISSING_LINK, **_BAD_ADDRESS}
        self._check(add_address_cmd(ifname, address, domain), errors, f"address {address} on {ifname}")

    def set_link_up(self, ifname: str, domain: Optional[str] = None) -> None:
        self._check(link_up_cmd(ifname, domain), {**_MISSING_DOMAIN, **_MISSING_LINK}, f"bring up {ifname}")

    def has_default_route(self, domain: str) -> bool:
        proc = self._check(show_default_route_cmd(domain), _MISSING_DOMAIN, f"routes of {domain}")
        return bool((proc.stdout or "").strip())

    def add_default_route(self, domain: str, via: ipaddress.IPv4Address) -> None:
        errors = {**_MISSING_DOMAIN, "file exists": RouteExists, **_BAD_ADDRESS}
        self._check(add_default_route_cmd(domain, via), errors, f"default route in {domain} via {via}")

    def exec_prefix(self, domain: Optional[str]) -> List[str]:
        if not domain:
            return ["sudo", "-n"] if self.use_sudo else []
        return self._wrap(exec_in_domain_cmd(domain))


__all__ = [
    "IpRoute2Network",
    "node_bring_up_commands",
    "node_tear_down_commands",
    "parse_domain_list",
    "parse_addresses",
]
