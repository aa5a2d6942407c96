"""Small, shared constants used across overlay_topo.

Keep this module dependency-free to avoid import cycles.
"""

import signal

DEFAULT_SUPERNET: str = "172.16.0.0/16"
DEFAULT_FLEET_SIZE: int = 3
NODE_PREFIXLEN: int = 24

# Host offsets inside each per-node /24
OUTSIDE_HOST_OFFSET: int = 1
INSIDE_HOST_OFFSET: int = 2

DEFAULT_DAEMON_BINARY: str = "./mycelium"
DEFAULT_PEER_PORT: int = 9651
DEFAULT_API_PORT: int = 8989
DEFAULT_HOST_API_ADDR: str = "127.0.0.1:8989"
DEFAULT_PEER_SCHEME: str = "tcp"
PEER_SCHEMES = ("tcp", "quic")

DEFAULT_DOMAIN_PREFIX: str = "ovl"
HOST_SCOPE: str = "host"

# Linux IFNAMSIZ minus the terminating NUL
MAX_IFNAME_LEN: int = 15

KEY_FILE_TEMPLATE: str = "{scope}_key.bin"
LOG_FILE_TEMPLATE: str = "{scope}.log"

DIAGNOSTIC_SIGNAL = signal.SIGUSR1

DEFAULT_TERMINATE_TIMEOUT: float = 3.0
DEFAULT_API_TIMEOUT: float = 5.0
