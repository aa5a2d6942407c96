"""Address and name planning for the emulated fleet.

Both modules are pure: the same inputs always produce the same plan, and
nothing here touches the host.
"""

from .addresses import (  # noqa: F401
    capacity,
    host_management_address,
    owner_of,
    parse_supernet,
    plan,
    plan_fleet,
)
from .naming import (  # noqa: F401
    domain_name,
    endpoint,
    key_file,
    link_names,
    log_file,
    routing_domain,
    validate_prefix,
)

__all__ = [
    "capacity",
    "host_management_address",
    "owner_of",
    "parse_supernet",
    "plan",
    "plan_fleet",
    "domain_name",
    "endpoint",
    "key_file",
    "link_names",
    "log_file",
    "routing_domain",
    "validate_prefix",
]
