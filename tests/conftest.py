import ipaddress
import itertools
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure repository root is on sys.path so imports like 'overlay_topo.manager' work
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from overlay_topo import supervisor as supervisor_mod  # noqa: E402
from overlay_topo.config import FleetConfig  # noqa: E402
from overlay_topo.errors import HostCommandFailed, SignalDeliveryFailed  # noqa: E402
from overlay_topo.manager import TopologyManager  # noqa: E402
from overlay_topo.netops.base import HostNetwork  # noqa: E402
from overlay_topo.supervisor import DaemonSupervisor  # noqa: E402


class FakeHostNetwork(HostNetwork):
    """In-memory host: domains, veth pairs, addresses, link state and default routes.

    ``fail`` maps a method name to an exception raised the next time it is called,
    or to a callable ``(args) -> Optional[Exception]`` for targeted failures.
    """

    def __init__(self):
        self.domains: List[str] = []
        self.links: Dict[str, Optional[str]] = {}
        self.peers: Dict[str, str] = {}
        self.addrs: Dict[str, List[ipaddress.IPv4Interface]] = {}
        self.up: set = set()
        self.routes: Dict[str, ipaddress.IPv4Address] = {}
        self.calls: List[tuple] = []
        self.fail: Dict[str, object] = {}

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        rule = self.fail.get(name)
        if rule is None:
            return
        exc = rule(args) if callable(rule) and not isinstance(rule, BaseException) else rule
        if exc is not None:
            raise exc

    def _drop_link(self, name):
        peer = self.peers.pop(name, None)
        for n in (name, peer):
            if n is None:
                continue
            self.links.pop(n, None)
            self.peers.pop(n, None)
            self.addrs.pop(n, None)
            self.up.discard(n)

    def list_domains(self):
        return list(self.domains)

    def add_domain(self, name):
        self._record("add_domain", name)
        self.domains.append(name)

    def delete_domain(self, name):
        self._record("delete_domain", name)
        self.domains.remove(name)
        # the kernel destroys interfaces living in a removed namespace, peers included
        for link, where in list(self.links.items()):
            if where == name:
                self._drop_link(link)
        self.routes.pop(name, None)

    def link_exists(self, name, domain=None):
        if name == "lo":
            return domain is None or domain in self.domains
        return name in self.links and self.links[name] == domain

    def add_veth(self, name, peer):
        self._record("add_veth", name, peer)
        self.links[name] = None
        self.links[peer] = None
        self.peers[name] = peer
        self.peers[peer] = name

    def delete_link(self, name, domain=None):
        self._record("delete_link", name, domain)
        self._drop_link(name)

    def set_link_domain(self, name, domain):
        self._record("set_link_domain", name, domain)
        self.links[name] = domain

    def addresses(self, ifname, domain=None):
        return list(self.addrs.get(ifname, []))

    def add_address(self, ifname, address, domain=None):
        self._record("add_address", ifname, str(address), domain)
        self.addrs.setdefault(ifname, []).append(address)

    def set_link_up(self, ifname, domain=None):
        self._record("set_link_up", ifname, domain)
        self.up.add((domain, ifname))

    def has_default_route(self, domain):
        return domain in self.routes

    def add_default_route(self, domain, via):
        self._record("add_default_route", domain, str(via))
        self.routes[domain] = via

    def exec_prefix(self, domain):
        return ["ip", "netns", "exec", domain] if domain else []


class FakeProc:
    def __init__(self, pid, argv):
        self.pid = pid
        self.argv = list(argv)
        self.alive = True
        self.stubborn = False
        self.signals: List[int] = []

    def poll(self):
        return None if self.alive else -9

    def wait(self, timeout=None):
        return self.poll()


class FakeHandle:
    def __init__(self, proc: FakeProc):
        self.pid = proc.pid
        self.proc = proc

    def is_alive(self):
        return self.proc.alive

    def send_signal(self, sig):
        if not self.proc.alive:
            raise SignalDeliveryFailed(f"process {self.pid} is not running")
        self.proc.signals.append(sig)

    def kill(self, timeout=3.0):
        if not self.proc.alive:
            return False
        if self.proc.stubborn:
            raise SignalDeliveryFailed(f"process {self.pid} still alive after {timeout:.1f}s")
        self.proc.alive = False
        return True


class _ListedProcess:
    def __init__(self, proc: FakeProc):
        self.info = {"pid": proc.pid, "cmdline": proc.argv}


class FakeSpawner:
    """Stands in for ``subprocess.Popen`` and for the host process table."""

    def __init__(self):
        self._pids = itertools.count(4000)
        self.procs: Dict[int, FakeProc] = {}
        self.launches: List[dict] = []
        self.error: Optional[Exception] = None

    def __call__(self, argv, **kwargs):
        self.launches.append({"argv": list(argv), **kwargs})
        if self.error is not None:
            raise self.error
        proc = FakeProc(next(self._pids), argv)
        self.procs[proc.pid] = proc
        return proc

    def handle(self, pid, popen=None):
        return FakeHandle(self.procs[pid])

    def process_iter(self, attrs=None):
        return [_ListedProcess(p) for p in self.procs.values() if p.alive]

    def alive(self):
        return [p for p in self.procs.values() if p.alive]

    def by_key_suffix(self, suffix):
        for p in self.procs.values():
            if any(a.endswith(suffix) for a in p.argv):
                return p
        raise KeyError(suffix)


@pytest.fixture
def network():
    return FakeHostNetwork()


@pytest.fixture
def spawner(monkeypatch):
    sp = FakeSpawner()
    monkeypatch.setattr(supervisor_mod.psutil, "process_iter", sp.process_iter)
    return sp


@pytest.fixture
def config(tmp_path):
    return FleetConfig(fleet_size=3, work_dir=str(tmp_path), daemon_binary="/opt/mycelium/mycelium")


@pytest.fixture
def supervisor(network, spawner, config):
    return DaemonSupervisor(config.daemon_binary, network, popen=spawner, handle_factory=spawner.handle)


@pytest.fixture
def make_manager(network, spawner):
    def _make(cfg, net=None):
        net = net or network
        sup = DaemonSupervisor(cfg.daemon_binary, net, popen=spawner, handle_factory=spawner.handle)
        return TopologyManager(cfg, network=net, supervisor=sup)
    return _make


@pytest.fixture
def manager(make_manager, config):
    return make_manager(config)


@pytest.fixture
def host_error():
    return HostCommandFailed("ip exited 2", stderr="RTNETLINK answers: Device or resource busy")
