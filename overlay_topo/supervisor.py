"""Launch and supervise overlay daemon processes.

Daemons are spawned detached (their own session, stdin closed, stdout and
stderr appended to a per-scope log) and never awaited. The supervisor keeps
the only table of process handles; callers refer to instances by scope.

Bulk operations collect one outcome per instance and never stop at the
first failure.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import psutil

from .constants import DEFAULT_TERMINATE_TIMEOUT, DIAGNOSTIC_SIGNAL
from .errors import AlreadyExists, ProcessSpawnFailed, SignalDeliveryFailed
from .netops.base import HostNetwork
from .types import DaemonInstance, DaemonSpec, OperationResult, Scope, scope_label

logger = logging.getLogger(__name__)


class ProcessHandle:
    """Liveness query and signalling for one spawned (or adopted) process.

    Once the process has exited the handle is dead for good; a recycled pid
    is never mistaken for it because psutil pins the process creation time.
    """

    def __init__(self, pid: int, popen: Optional[subprocess.Popen] = None, process: Optional[Any] = None):
        self.pid = pid
        self._popen = popen
        self._exited = False
        if process is not None:
            self._process = process
        else:
            try:
                self._process = psutil.Process(pid)
            except psutil.Error:
                self._process = None
                self._exited = True

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ProcessHandle pid={self.pid} alive={self.is_alive()}>"

    def is_alive(self) -> bool:
        if self._exited or self._process is None:
            return False
        if self._popen is not None and self._popen.poll() is not None:
            self._exited = True
            return False
        try:
            alive = self._process.is_running() and self._process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            alive = False
        if not alive:
            self._exited = True
        return alive

    def _targets(self) -> List[Any]:
        # The tracked pid may be a wrapper (sudo / ip netns exec); reach the daemon under it too.
        try:
            children = list(self._process.children(recursive=True))
        except psutil.Error:
            children = []
        return [self._process] + children

    def send_signal(self, sig: int) -> None:
        if not self.is_alive():
            raise SignalDeliveryFailed(f"process {self.pid} is not running")
        try:
            self._process.send_signal(sig)
        except psutil.NoSuchProcess as exc:
            self._exited = True
            raise SignalDeliveryFailed(f"process {self.pid} exited before signal {sig}") from exc
        except psutil.AccessDenied as exc:
            raise SignalDeliveryFailed(f"not permitted to signal process {self.pid}") from exc

    def kill(self, timeout: float = DEFAULT_TERMINATE_TIMEOUT) -> bool:
        """Forcefully stop the process. Returns False when it was already gone."""
        if not self.is_alive():
            self._reap()
            return False
        targets = self._targets()
        for proc in reversed(targets):
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                raise SignalDeliveryFailed(f"not permitted to kill process {proc.pid}") from exc
        _, still_alive = psutil.wait_procs(targets, timeout=timeout)
        if still_alive:
            pids = ", ".join(str(p.pid) for p in still_alive)
            raise SignalDeliveryFailed(f"process(es) {pids} still alive after {timeout:.1f}s")
        self._reap()
        return True

    def _reap(self) -> None:
        self._exited = True
        if self._popen is not None:
            try:
                self._popen.wait(timeout=0)
            except subprocess.TimeoutExpired:
                logger.debug("pid %s not yet reapable", self.pid)


def _cmdline_key_file(cmdline: Iterable[str]) -> Optional[str]:
    args = list(cmdline or [])
    for i, arg in enumerate(args):
        if arg == "--key-file" and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith("--key-file="):
            return arg.split("=", 1)[1]
    return None


def _same_path(a: str, b: Path) -> bool:
    try:
        return os.path.abspath(a) == os.path.abspath(str(b))
    except (TypeError, ValueError):
        return False


class DaemonSupervisor:
    def __init__(
        self,
        binary: str,
        network: HostNetwork,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        handle_factory: Callable[..., ProcessHandle] = ProcessHandle,
    ):
        self.binary = binary
        self.network = network
        self.terminate_timeout = terminate_timeout
        self._popen = popen
        self._handle_factory = handle_factory
        self._handles: Dict[Scope, ProcessHandle] = {}

    def handle(self, scope: Scope) -> Optional[ProcessHandle]:
        return self._handles.get(scope)

    def is_alive(self, instance: DaemonInstance) -> bool:
        handle = self._handles.get(instance.scope)
        return bool(handle and handle.is_alive())

    @property
    def tracked_scopes(self) -> List[Scope]:
        return list(self._handles)

    def command_for(self, spec: DaemonSpec) -> List[str]:
        return self.network.exec_prefix(spec.domain) + spec.argv(self.binary)

    def launch(self, spec: DaemonSpec) -> DaemonInstance:
        label = scope_label(spec.scope)
        existing = self._handles.get(spec.scope)
        if existing is not None and existing.is_alive():
            raise AlreadyExists(f"{label} daemon already running as pid {existing.pid}", scope=spec.scope)
        running = self.find_running([spec])
        if running:
            pid = running[spec.key_file]
            raise AlreadyExists(f"pid {pid} already uses key file {spec.key_file}", scope=spec.scope)

        argv = self.command_for(spec)
        try:
            spec.log_path.parent.mkdir(parents=True, exist_ok=True)
            log = open(spec.log_path, "ab")
        except OSError as exc:
            raise ProcessSpawnFailed(f"cannot open log {spec.log_path}: {exc}", scope=spec.scope) from exc
        with log:
            try:
                proc = self._popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                    close_fds=True,
                )
            except (OSError, ValueError) as exc:
                raise ProcessSpawnFailed(f"cannot start {label} daemon: {exc}", scope=spec.scope) from exc
        self._handles[spec.scope] = self._handle_factory(proc.pid, popen=proc)
        logger.info("%s daemon started pid=%s log=%s", label, proc.pid, spec.log_path)
        logger.debug("%s argv: %s", label, " ".join(argv))
        return DaemonInstance(spec=spec, pid=proc.pid)

    def adopt(self, spec: DaemonSpec, pid: int) -> DaemonInstance:
        """Track a daemon started by an earlier manager process."""
        self._handles[spec.scope] = self._handle_factory(pid)
        logger.debug("adopted %s daemon pid=%s", scope_label(spec.scope), pid)
        return DaemonInstance(spec=spec, pid=pid)

    def find_running(self, specs: Iterable[DaemonSpec]) -> Dict[Path, int]:
        """Map each spec's key file to the pid of a live process using it."""
        wanted = {str(s.key_file): s.key_file for s in specs}
        found: Dict[Path, int] = {}
        if not wanted:
            return found
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                cmdline = proc.info.get("cmdline") or []
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            key = _cmdline_key_file(cmdline)
            if key is None:
                continue
            for path in wanted.values():
                if path not in found and _same_path(key, path):
                    found[path] = proc.info["pid"]
        return found

    def discover(self, specs: Iterable[DaemonSpec]) -> List[DaemonInstance]:
        specs = list(specs)
        running = self.find_running(specs)
        return [self.adopt(s, running[s.key_file]) for s in specs if s.key_file in running]

    def signal_all(self, instances: Iterable[DaemonInstance], sig: int = DIAGNOSTIC_SIGNAL) -> OperationResult:
        result = OperationResult("signal")
        try:
            sig_name = signal.Signals(sig).name
        except ValueError:
            sig_name = str(sig)
        for inst in instances:
            handle = self._handles.get(inst.scope)
            try:
                if handle is None:
                    raise SignalDeliveryFailed(f"{scope_label(inst.scope)} is not tracked", scope=inst.scope)
                handle.send_signal(sig)
            except SignalDeliveryFailed as exc:
                exc.scope = inst.scope
                logger.warning("%s: %s not delivered: %s", scope_label(inst.scope), sig_name, exc)
                result.failure(inst.scope, exc, pid=inst.pid)
                continue
            result.success(inst.scope, pid=inst.pid, signal=sig_name)
        return result

    def terminate_all(self, instances: Iterable[DaemonInstance]) -> OperationResult:
        result = OperationResult("terminate")
        for inst in instances:
            handle = self._handles.get(inst.scope)
            if handle is None:
                result.success(inst.scope, pid=inst.pid, was_running=False)
                continue
            try:
                was_running = handle.kill(self.terminate_timeout)
            except SignalDeliveryFailed as exc:
                exc.scope = inst.scope
                logger.warning("%s: terminate failed: %s", scope_label(inst.scope), exc)
                result.failure(inst.scope, exc, pid=inst.pid)
                continue
            self._handles.pop(inst.scope, None)
            result.success(inst.scope, pid=inst.pid, was_running=was_running)
        return result


__all__ = ["DaemonSupervisor", "ProcessHandle"]
