"""Fleet configuration.

Precedence, lowest first: built-in defaults, YAML file, ``OVTOPO_*``
environment variables, explicit overrides (CLI flags).

Example YAML::

    supernet: 172.16.0.0/16
    fleet_size: 8
    daemon_binary: ./mycelium
    bootstrap_peers:
      - tcp://203.0.113.10:9651
      - quic://203.0.113.11:9651
"""
from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError:  # pragma: no cover
    yaml = None  # type: ignore

from .constants import (
    DEFAULT_API_PORT,
    DEFAULT_API_TIMEOUT,
    DEFAULT_DAEMON_BINARY,
    DEFAULT_DOMAIN_PREFIX,
    DEFAULT_FLEET_SIZE,
    DEFAULT_HOST_API_ADDR,
    DEFAULT_PEER_PORT,
    DEFAULT_PEER_SCHEME,
    DEFAULT_SUPERNET,
    DEFAULT_TERMINATE_TIMEOUT,
    PEER_SCHEMES,
)
from .errors import ConfigError, InvalidAddress, RangeExceeded
from .planning import addresses, naming

logger = logging.getLogger(__name__)

_ENDPOINT_RE = re.compile(r"^(?P<scheme>[a-z][a-z0-9+.-]*)://(?P<host>\[[0-9A-Fa-f:.]+\]|[^\s:/]+):(?P<port>\d{1,5})$")
_HOSTPORT_RE = re.compile(r"^(?P<host>\[[0-9A-Fa-f:.]+\]|[^\s:/]+):(?P<port>\d{1,5})$")


@dataclass
class FleetConfig:
    supernet: str = DEFAULT_SUPERNET
    fleet_size: int = DEFAULT_FLEET_SIZE
    bootstrap_peers: List[str] = field(default_factory=list)
    daemon_binary: str = DEFAULT_DAEMON_BINARY
    work_dir: str = "."
    domain_prefix: str = DEFAULT_DOMAIN_PREFIX
    peer_port: int = DEFAULT_PEER_PORT
    api_port: int = DEFAULT_API_PORT
    host_api_addr: str = DEFAULT_HOST_API_ADDR
    peer_scheme: str = DEFAULT_PEER_SCHEME
    use_sudo: bool = False
    rollback_on_failure: bool = False
    terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT
    api_timeout: float = DEFAULT_API_TIMEOUT

    @property
    def work_path(self) -> Path:
        return Path(self.work_dir).expanduser().resolve()

    def validate(self) -> "FleetConfig":
        """Raise ConfigError / RangeExceeded when the request cannot be satisfied."""
        try:
            net = addresses.parse_supernet(self.supernet)
        except InvalidAddress as exc:
            raise ConfigError(str(exc)) from exc
        if not isinstance(self.fleet_size, int) or isinstance(self.fleet_size, bool) or self.fleet_size < 1:
            raise ConfigError(f"fleet_size must be a positive integer, got {self.fleet_size!r}")
        cap = addresses.capacity(net)
        if self.fleet_size > cap:
            raise RangeExceeded(f"fleet size {self.fleet_size} exceeds capacity {cap} of supernet {net}")
        naming.validate_prefix(self.domain_prefix, self.fleet_size)
        if self.peer_scheme not in PEER_SCHEMES:
            raise ConfigError(f"peer_scheme must be one of {', '.join(PEER_SCHEMES)}, got {self.peer_scheme!r}")
        for name in ("peer_port", "api_port"):
            port = getattr(self, name)
            if not isinstance(port, int) or not (0 < port < 65536):
                raise ConfigError(f"{name} must be a TCP/UDP port, got {port!r}")
        if not _HOSTPORT_RE.match(str(self.host_api_addr or "")):
            raise ConfigError(f"host_api_addr must be host:port, got {self.host_api_addr!r}")
        for peer in self.bootstrap_peers:
            if not _ENDPOINT_RE.match(str(peer)):
                raise ConfigError(f"bootstrap peer {peer!r} is not scheme://host:port")
        if not self.daemon_binary:
            raise ConfigError("daemon_binary must not be empty")
        if self.terminate_timeout <= 0 or self.api_timeout <= 0:
            raise ConfigError("timeouts must be positive")
        return self


_FIELDS = {f.name: f for f in dataclasses.fields(FleetConfig)}
_INT_FIELDS = {"fleet_size", "peer_port", "api_port"}
_FLOAT_FIELDS = {"terminate_timeout", "api_timeout"}
_BOOL_FIELDS = {"use_sudo", "rollback_on_failure"}

_ENV_VARS = {
    "OVTOPO_SUPERNET": "supernet",
    "OVTOPO_FLEET_SIZE": "fleet_size",
    "OVTOPO_BOOTSTRAP_PEERS": "bootstrap_peers",
    "OVTOPO_DAEMON_BINARY": "daemon_binary",
    "OVTOPO_WORK_DIR": "work_dir",
    "OVTOPO_DOMAIN_PREFIX": "domain_prefix",
    "OVTOPO_PEER_SCHEME": "peer_scheme",
    "OVTOPO_USE_SUDO": "use_sudo",
    "OVTOPO_ROLLBACK": "rollback_on_failure",
}


def _coerce(name: str, value: Any) -> Any:
    if name in _BOOL_FIELDS:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "y", "on")
    if name in _INT_FIELDS:
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if name in _FLOAT_FIELDS:
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if name == "bootstrap_peers":
        if value is None:
            return []
        if isinstance(value, str):
            return [p for p in re.split(r"[,\s]+", value) if p]
        if isinstance(value, (list, tuple)):
            return [str(p).strip() for p in value if str(p).strip()]
        raise ConfigError(f"bootstrap_peers must be a list, got {type(value).__name__}")
    return str(value)


def _apply(values: Dict[str, Any], source: Mapping[str, Any], origin: str) -> None:
    for key, value in source.items():
        name = str(key).replace("-", "_")
        if name not in _FIELDS:
            raise ConfigError(f"unknown configuration key {key!r} in {origin}")
        if value is None:
            continue
        values[name] = _coerce(name, value)


def load_yaml(path: str | Path) -> Dict[str, Any]:
    if yaml is None:
        raise ConfigError("PyYAML is required to load fleet configuration files")
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as f:
            doc = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read configuration {p}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {p}: {exc}") from exc
    if not isinstance(doc, dict):
        raise ConfigError("fleet configuration must be a mapping at the document root")
    return doc


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = os.environ if environ is None else environ
    return {field_name: env[var] for var, field_name in _ENV_VARS.items() if var in env}


def load_config(
    path: Optional[str | Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> FleetConfig:
    values: Dict[str, Any] = {}
    if path:
        _apply(values, load_yaml(path), str(path))
        logger.debug("loaded fleet configuration from %s", path)
    _apply(values, env_overrides(environ), "environment")
    _apply(values, overrides or {}, "overrides")
    return FleetConfig(**values).validate()


__all__ = ["FleetConfig", "load_config", "load_yaml", "env_overrides"]
