"""Host networking capability and the link provisioner built on it."""

from .base import HostNetwork, LinkProvisioner, LOOPBACK  # noqa: F401
from .iproute2 import IpRoute2Network, node_bring_up_commands, node_tear_down_commands  # noqa: F401

__all__ = [
    "HostNetwork",
    "LinkProvisioner",
    "LOOPBACK",
    "IpRoute2Network",
    "node_bring_up_commands",
    "node_tear_down_commands",
]
