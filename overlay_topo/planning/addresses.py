"""Deterministic per-node address plan.

Each node index ``i`` owns the ``i``-th /24 of the supernet. Inside that
block the host side of the node's link takes ``.1`` and the node side takes
``.2``; e.g. supernet 172.16.0.0/16, index 1 -> outside 172.16.1.1/24,
inside 172.16.1.2/24.

Block 0 is reserved for the host's own management address and the last
block is never handed out, so a /16 yields exactly indices 1..254.
"""
from __future__ import annotations

import ipaddress
from typing import List, Optional, Union

from ..constants import INSIDE_HOST_OFFSET, NODE_PREFIXLEN, OUTSIDE_HOST_OFFSET
from ..errors import InvalidAddress, RangeExceeded
from ..types import AddressPair

Supernet = Union[str, ipaddress.IPv4Network]

_BLOCK_SIZE = 1 << (32 - NODE_PREFIXLEN)


def parse_supernet(supernet: Supernet) -> ipaddress.IPv4Network:
    if isinstance(supernet, ipaddress.IPv4Network):
        net = supernet
    else:
        try:
            net = ipaddress.IPv4Network(str(supernet).strip(), strict=False)
        except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as exc:
            raise InvalidAddress(f"malformed supernet {supernet!r}: {exc}") from exc
    if net.prefixlen > NODE_PREFIXLEN:
        raise InvalidAddress(f"supernet {net} is narrower than /{NODE_PREFIXLEN}")
    return net


def capacity(supernet: Supernet) -> int:
    """Number of node indices the supernet can address."""
    net = parse_supernet(supernet)
    blocks = net.num_addresses // _BLOCK_SIZE
    return max(0, blocks - 2)


def _block_base(net: ipaddress.IPv4Network, index: int) -> int:
    return int(net.network_address) + index * _BLOCK_SIZE


def plan(supernet: Supernet, index: int) -> AddressPair:
    net = parse_supernet(supernet)
    cap = capacity(net)
    if not isinstance(index, int) or isinstance(index, bool) or index < 1 or index > cap:
        raise RangeExceeded(f"node index {index} outside 1..{cap} for supernet {net}", scope=index)
    base = _block_base(net, index)
    outside = ipaddress.IPv4Interface((base + OUTSIDE_HOST_OFFSET, NODE_PREFIXLEN))
    inside = ipaddress.IPv4Interface((base + INSIDE_HOST_OFFSET, NODE_PREFIXLEN))
    return AddressPair(index=index, inside=inside, outside=outside)


def plan_fleet(supernet: Supernet, fleet_size: int) -> List[AddressPair]:
    net = parse_supernet(supernet)
    cap = capacity(net)
    if fleet_size < 1:
        raise RangeExceeded(f"fleet size must be positive, got {fleet_size}")
    if fleet_size > cap:
        raise RangeExceeded(f"fleet size {fleet_size} exceeds capacity {cap} of supernet {net}")
    return [plan(net, i) for i in range(1, fleet_size + 1)]


def host_management_address(supernet: Supernet) -> ipaddress.IPv4Interface:
    net = parse_supernet(supernet)
    return ipaddress.IPv4Interface((_block_base(net, 0) + 1, NODE_PREFIXLEN))


def owner_of(supernet: Supernet, address: Union[str, ipaddress.IPv4Address, ipaddress.IPv4Interface]) -> Optional[int]:
    """Return the node index that owns ``address`` or None.

    Accepts bare addresses and prefixed ones. Only the two planned host
    offsets of a block count as owned.
    """
    net = parse_supernet(supernet)
    try:
        ip = ipaddress.IPv4Interface(str(address).strip()).ip
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as exc:
        raise InvalidAddress(f"malformed address {address!r}") from exc
    if ip not in net:
        return None
    offset = int(ip) - int(net.network_address)
    index, host = divmod(offset, _BLOCK_SIZE)
    if index < 1 or index > capacity(net):
        return None
    if host not in (INSIDE_HOST_OFFSET, OUTSIDE_HOST_OFFSET):
        return None
    return index


__all__ = [
    "parse_supernet",
    "capacity",
    "plan",
    "plan_fleet",
    "host_management_address",
    "owner_of",
]
