"""Link provisioning on top of an abstract host networking capability.

``HostNetwork`` is the narrow set of primitives the host must offer (create a
domain, create a veth pair, move an end, add an address, ...). Backends only
perform the primitive; ``LinkProvisioner`` owns the preconditions so every
backend reports the same typed errors:

- ``create_domain``: AlreadyExists
- ``create_link``: NameConflict
- ``move_end_into_domain``: DomainNotFound / LinkNotFound
- ``configure_interface``: InvalidAddress / DomainNotFound / LinkNotFound
- ``install_default_route``: InvalidAddress / DomainNotFound / RouteExists
- ``remove_link_outside_end`` / ``remove_domain``: LinkNotFound / DomainNotFound / RemovalFailed

Configuring an interface checks that the interface already lives in the
named domain, so configuring an end before it was moved fails instead of
silently addressing the wrong side.
"""
from __future__ import annotations

import abc
import ipaddress
import logging
from typing import List, Optional, Union

from ..errors import (
    AlreadyExists,
    DomainNotFound,
    HostCommandFailed,
    InvalidAddress,
    LinkNotFound,
    NameConflict,
    RemovalFailed,
    RouteExists,
)

logger = logging.getLogger(__name__)

LOOPBACK = "lo"

Address = Union[str, ipaddress.IPv4Interface]


class HostNetwork(abc.ABC):
    """Primitive host networking operations. ``domain=None`` means the host domain."""

    @abc.abstractmethod
    def list_domains(self) -> List[str]: ...

    @abc.abstractmethod
    def add_domain(self, name: str) -> None: ...

    @abc.abstractmethod
    def delete_domain(self, name: str) -> None: ...

    @abc.abstractmethod
    def link_exists(self, name: str, domain: Optional[str] = None) -> bool: ...

    @abc.abstractmethod
    def add_veth(self, name: str, peer: str) -> None: ...

    @abc.abstractmethod
    def delete_link(self, name: str, domain: Optional[str] = None) -> None: ...

    @abc.abstractmethod
    def set_link_domain(self, name: str, domain: str) -> None: ...

    @abc.abstractmethod
    def addresses(self, ifname: str, domain: Optional[str] = None) -> List[ipaddress.IPv4Interface]: ...

    @abc.abstractmethod
    def add_address(self, ifname: str, address: ipaddress.IPv4Interface, domain: Optional[str] = None) -> None: ...

    @abc.abstractmethod
    def set_link_up(self, ifname: str, domain: Optional[str] = None) -> None: ...

    @abc.abstractmethod
    def has_default_route(self, domain: str) -> bool: ...

    @abc.abstractmethod
    def add_default_route(self, domain: str, via: ipaddress.IPv4Address) -> None: ...

    @abc.abstractmethod
    def exec_prefix(self, domain: Optional[str]) -> List[str]:
        """argv prefix that runs a program inside ``domain`` (empty for the host)."""


def _parse_interface_address(address: Address) -> ipaddress.IPv4Interface:
    if isinstance(address, ipaddress.IPv4Interface):
        return address
    text = str(address or "").strip()
    if "/" not in text:
        raise InvalidAddress(f"address {address!r} is missing a prefix length")
    try:
        return ipaddress.IPv4Interface(text)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as exc:
        raise InvalidAddress(f"malformed address {address!r}: {exc}") from exc


def _parse_gateway(via: Union[str, ipaddress.IPv4Address]) -> ipaddress.IPv4Address:
    if isinstance(via, ipaddress.IPv4Address):
        return via
    try:
        return ipaddress.IPv4Address(str(via or "").strip())
    except (ipaddress.AddressValueError, ValueError) as exc:
        raise InvalidAddress(f"malformed gateway {via!r}: {exc}") from exc


class LinkProvisioner:
    def __init__(self, network: HostNetwork):
        self.network = network

    def _require_domain(self, name: str) -> None:
        if name not in self.network.list_domains():
            raise DomainNotFound(f"routing domain {name!r} does not exist")

    def create_domain(self, name: str) -> None:
        if name in self.network.list_domains():
            raise AlreadyExists(f"routing domain {name!r} already exists")
        logger.debug("create domain %s", name)
        self.network.add_domain(name)

    def create_link(self, inside_end: str, outside_end: str) -> None:
        for end in (inside_end, outside_end):
            if self.network.link_exists(end):
                raise NameConflict(f"interface {end!r} already exists")
        logger.debug("create link %s <-> %s", inside_end, outside_end)
        self.network.add_veth(inside_end, outside_end)

    def move_end_into_domain(self, end: str, domain: str) -> None:
        self._require_domain(domain)
        if not self.network.link_exists(end):
            raise LinkNotFound(f"interface {end!r} not found in host domain")
        logger.debug("move %s into %s", end, domain)
        self.network.set_link_domain(end, domain)

    def configure_interface(
        self,
        domain: Optional[str],
        ifname: str,
        address: Optional[Address] = None,
        bring_up: bool = True,
    ) -> None:
        iface_addr = _parse_interface_address(address) if address is not None else None
        if domain is not None:
            self._require_domain(domain)
        if not self.network.link_exists(ifname, domain):
            where = domain or "host"
            raise LinkNotFound(f"interface {ifname!r} not found in domain {where}")
        if iface_addr is not None and iface_addr not in self.network.addresses(ifname, domain):
            logger.debug("address %s on %s (%s)", iface_addr, ifname, domain or "host")
            self.network.add_address(ifname, iface_addr, domain)
        if bring_up:
            self.network.set_link_up(ifname, domain)

    def install_default_route(self, domain: str, via: Union[str, ipaddress.IPv4Address]) -> None:
        gateway = _parse_gateway(via)
        self._require_domain(domain)
        if self.network.has_default_route(domain):
            raise RouteExists(f"domain {domain!r} already has a default route")
        logger.debug("default route in %s via %s", domain, gateway)
        self.network.add_default_route(domain, gateway)

    def remove_link_outside_end(self, end: str) -> None:
        """Delete the host-side end; the kernel removes its peer with it."""
        if not self.network.link_exists(end):
            raise LinkNotFound(f"interface {end!r} not found in host domain")
        try:
            self.network.delete_link(end)
        except HostCommandFailed as exc:
            raise RemovalFailed(f"could not remove interface {end!r}", stderr=exc.stderr) from exc

    def remove_domain(self, name: str) -> None:
        self._require_domain(name)
        try:
            self.network.delete_domain(name)
        except HostCommandFailed as exc:
            raise RemovalFailed(f"could not remove domain {name!r}", stderr=exc.stderr) from exc


__all__ = ["HostNetwork", "LinkProvisioner", "LOOPBACK"]
