import signal
import subprocess
from pathlib import Path

import psutil
import pytest

import overlay_topo.supervisor as sup
from overlay_topo.errors import AlreadyExists, ProcessSpawnFailed, SignalDeliveryFailed
from overlay_topo.types import DaemonInstance, DaemonSpec


def _spec(tmp_path: Path, scope="host", domain=None, peers=()):
    name = "host" if scope == "host" else f"node{scope}"
    return DaemonSpec(
        scope=scope,
        key_file=tmp_path / f"{name}_key.bin",
        api_address="127.0.0.1:8989",
        peers=tuple(peers),
        log_path=tmp_path / "logs" / f"{name}.log",
        domain=domain,
    )


def test_launch_detaches_and_logs(supervisor, spawner, tmp_path):
    spec = _spec(tmp_path, 1, domain="ovl1", peers=["tcp://172.16.1.1:9651"])
    inst = supervisor.launch(spec)
    call = spawner.launches[0]
    assert call["argv"][:4] == ["ip", "netns", "exec", "ovl1"]
    assert call["argv"][4:] == [
        "/opt/mycelium/mycelium",
        "--key-file", str(spec.key_file),
        "--api-addr", "127.0.0.1:8989",
        "--peers", "tcp://172.16.1.1:9651",
    ]
    assert call["stdin"] is subprocess.DEVNULL
    assert call["stderr"] is subprocess.STDOUT
    assert call["start_new_session"] is True
    assert spec.log_path.exists()
    assert inst.pid == spawner.alive()[0].pid
    assert supervisor.is_alive(inst)


def test_host_daemon_without_peers_has_no_peers_flag(supervisor, spawner, tmp_path):
    supervisor.launch(_spec(tmp_path))
    assert "--peers" not in spawner.launches[0]["argv"]
    assert spawner.launches[0]["argv"][0] == "/opt/mycelium/mycelium"


def test_launch_refuses_duplicate_scope_and_key_file(supervisor, spawner, tmp_path):
    spec = _spec(tmp_path)
    supervisor.launch(spec)
    with pytest.raises(AlreadyExists):
        supervisor.launch(spec)

    # a second supervisor (fresh manager process) still sees the key file in use
    other = sup.DaemonSupervisor("/opt/mycelium/mycelium", supervisor.network, popen=spawner, handle_factory=spawner.handle)
    with pytest.raises(AlreadyExists):
        other.launch(spec)
    assert len(spawner.launches) == 1


def test_launch_spawn_failure(supervisor, spawner, tmp_path):
    spawner.error = FileNotFoundError(2, "No such file or directory", "/opt/mycelium/mycelium")
    with pytest.raises(ProcessSpawnFailed) as ei:
        supervisor.launch(_spec(tmp_path))
    assert ei.value.scope == "host"
    assert supervisor.tracked_scopes == []


def test_signal_all_collects_every_outcome(supervisor, spawner, tmp_path):
    a = supervisor.launch(_spec(tmp_path, 1, domain="ovl1"))
    b = supervisor.launch(_spec(tmp_path, 2, domain="ovl2"))
    spawner.procs[b.pid].alive = False
    stranger = DaemonInstance(spec=_spec(tmp_path, 3), pid=1)

    result = supervisor.signal_all([a, b, stranger])
    assert [o.ok for o in result] == [True, False, False]
    assert all(o.kind == "SignalDeliveryFailed" for o in result.failures)
    assert spawner.procs[a.pid].signals == [signal.SIGUSR1]


def test_terminate_all_is_idempotent(supervisor, spawner, tmp_path):
    a = supervisor.launch(_spec(tmp_path, 1, domain="ovl1"))
    b = supervisor.launch(_spec(tmp_path, 2, domain="ovl2"))
    spawner.procs[b.pid].alive = False

    first = supervisor.terminate_all([a, b])
    assert first.ok
    assert [o.detail["was_running"] for o in first] == [True, False]
    assert spawner.alive() == []
    assert supervisor.tracked_scopes == []

    second = supervisor.terminate_all([a, b])
    assert second.ok
    assert [o.detail["was_running"] for o in second] == [False, False]


def test_terminate_failure_keeps_handle(supervisor, spawner, tmp_path):
    a = supervisor.launch(_spec(tmp_path, 1, domain="ovl1"))
    spawner.procs[a.pid].stubborn = True
    result = supervisor.terminate_all([a])
    assert not result.ok
    assert result.failures[0].kind == "SignalDeliveryFailed"
    assert supervisor.tracked_scopes == [1]


def test_discover_adopts_running_daemons(supervisor, spawner, tmp_path):
    specs = [_spec(tmp_path), _spec(tmp_path, 1, domain="ovl1"), _spec(tmp_path, 2, domain="ovl2")]
    supervisor.launch(specs[0])
    supervisor.launch(specs[2])

    fresh = sup.DaemonSupervisor("/opt/mycelium/mycelium", supervisor.network, popen=spawner, handle_factory=spawner.handle)
    found = fresh.discover(specs)
    assert [i.scope for i in found] == ["host", 2]
    assert set(fresh.tracked_scopes) == {"host", 2}


def test_cmdline_key_file_forms():
    assert sup._cmdline_key_file(["m", "--key-file", "/w/host_key.bin"]) == "/w/host_key.bin"
    assert sup._cmdline_key_file(["m", "--key-file=/w/node1_key.bin"]) == "/w/node1_key.bin"
    assert sup._cmdline_key_file(["m", "--key-file"]) is None
    assert sup._cmdline_key_file(None) is None


class _PsProc:
    def __init__(self, pid, children=()):
        self.pid = pid
        self.running = True
        self.killed = False
        self._children = list(children)
        self.signals = []

    def is_running(self):
        return self.running

    def status(self):
        return psutil.STATUS_SLEEPING

    def children(self, recursive=False):
        return self._children

    def kill(self):
        self.killed = True

    def send_signal(self, sig):
        if not self.running:
            raise psutil.NoSuchProcess(self.pid)
        self.signals.append(sig)


def test_process_handle_kills_wrapper_and_children(monkeypatch):
    child = _PsProc(11)
    wrapper = _PsProc(10, [child])
    waited = {}

    def wait_procs(procs, timeout=None):
        waited["procs"] = list(procs)
        waited["timeout"] = timeout
        return list(procs), []

    monkeypatch.setattr(sup.psutil, "wait_procs", wait_procs)
    handle = sup.ProcessHandle(10, process=wrapper)
    assert handle.is_alive()
    handle.send_signal(signal.SIGUSR1)
    assert wrapper.signals == [signal.SIGUSR1]

    assert handle.kill(timeout=1.5) is True
    assert wrapper.killed and child.killed
    assert waited == {"procs": [wrapper, child], "timeout": 1.5}
    assert handle.is_alive() is False
    assert handle.kill() is False
    with pytest.raises(SignalDeliveryFailed):
        handle.send_signal(signal.SIGUSR1)


def test_process_handle_reports_survivors(monkeypatch):
    proc = _PsProc(20)
    monkeypatch.setattr(sup.psutil, "wait_procs", lambda procs, timeout=None: ([], list(procs)))
    handle = sup.ProcessHandle(20, process=proc)
    with pytest.raises(SignalDeliveryFailed):
        handle.kill(timeout=0.1)


def test_process_handle_for_vanished_pid(monkeypatch):
    def gone(pid):
        raise psutil.NoSuchProcess(pid)

    monkeypatch.setattr(sup.psutil, "Process", gone)
    handle = sup.ProcessHandle(999999)
    assert handle.is_alive() is False
    assert handle.kill() is False
