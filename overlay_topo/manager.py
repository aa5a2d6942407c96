"""Fleet bring-up, tear-down, status broadcast and purge.

The manager is the single owner of ``FleetState`` and the only caller that
mutates host networking. Nodes are provisioned strictly one after another
so a failure is always attributable to one index.

Per node, bring-up runs::

    create domain -> create link -> move inside end into domain
    -> loopback up -> inside end address + up -> outside end address + up
    -> default route via the outside address -> launch daemon

Tear-down stops every tracked daemon before any domain is removed, then
removes each node's outside link end and its domain. All per-node and
per-instance results are returned; only configuration errors raise.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .api_client import DaemonApiClient
from .config import FleetConfig
from .constants import DIAGNOSTIC_SIGNAL, HOST_SCOPE
from .errors import DomainNotFound, FleetError, InvalidStateError
from .netops.base import LOOPBACK, HostNetwork, LinkProvisioner
from .netops.iproute2 import IpRoute2Network
from .planning import addresses, naming
from .supervisor import DaemonSupervisor
from .types import (
    DaemonInstance,
    DaemonSpec,
    FleetPhase,
    FleetState,
    OperationResult,
    RoutingDomain,
    Scope,
    scope_label,
)
from .utils.cleanup import remove_fleet_artifacts

logger = logging.getLogger(__name__)


def _scope_order(item: Tuple[Scope, DaemonInstance]) -> Tuple[int, int]:
    scope = item[0]
    return (0, 0) if scope == HOST_SCOPE else (1, int(scope))


class TopologyManager:
    def __init__(
        self,
        config: FleetConfig,
        network: Optional[HostNetwork] = None,
        supervisor: Optional[DaemonSupervisor] = None,
        api_client_factory: Callable[..., DaemonApiClient] = DaemonApiClient,
    ):
        self.config = config.validate()
        self.network = network or IpRoute2Network(use_sudo=config.use_sudo)
        self.links = LinkProvisioner(self.network)
        self.supervisor = supervisor or DaemonSupervisor(
            config.daemon_binary, self.network, terminate_timeout=config.terminate_timeout
        )
        self.api_client_factory = api_client_factory
        self.state = FleetState()
        pairs = addresses.plan_fleet(config.supernet, config.fleet_size)
        self.domains: List[RoutingDomain] = [naming.routing_domain(config.domain_prefix, p) for p in pairs]

    # -- derived specs -------------------------------------------------

    def host_spec(self) -> DaemonSpec:
        work = self.config.work_path
        return DaemonSpec(
            scope=HOST_SCOPE,
            key_file=naming.key_file(work, HOST_SCOPE),
            api_address=self.config.host_api_addr,
            peers=tuple(self.config.bootstrap_peers),
            log_path=naming.log_file(work, HOST_SCOPE),
        )

    def node_spec(self, domain: RoutingDomain) -> DaemonSpec:
        """Node daemons peer only with the host's address on their own link."""
        work = self.config.work_path
        cfg = self.config
        peer = naming.endpoint(cfg.peer_scheme, domain.addresses.default_route_target, cfg.peer_port)
        return DaemonSpec(
            scope=domain.index,
            key_file=naming.key_file(work, domain.index),
            api_address=f"{domain.addresses.inside.ip}:{cfg.api_port}",
            peers=(peer,),
            log_path=naming.log_file(work, domain.index),
            domain=domain.name,
        )

    def all_specs(self) -> List[DaemonSpec]:
        return [self.host_spec()] + [self.node_spec(d) for d in self.domains]

    def owner_of(self, address: str) -> Optional[int]:
        return addresses.owner_of(self.config.supernet, address)

    # -- state machine -------------------------------------------------

    def _require_phase(self, *allowed: FleetPhase, action: str) -> None:
        if self.state.phase not in allowed:
            names = ", ".join(p.value for p in allowed)
            raise InvalidStateError(f"{action} requires fleet state {names}, fleet is {self.state.phase.value}")

    def recover(self) -> FleetState:
        """Rebuild fleet state from the host after a manager restart.

        Only looks; never creates or removes anything.
        """
        self._require_phase(FleetPhase.ABSENT, action="recover")
        names = self.network.list_domains()
        strays = self._stray_domains(names)
        if strays:
            logger.warning(
                "found %d domain(s) outside the configured fleet: %s",
                len(strays),
                ", ".join(d.name for d in strays),
            )
            self.domains.extend(strays)
        existing = set(names)
        for domain in self.domains:
            if domain.name in existing:
                self.state.domains[domain.index] = domain
        for inst in self.supervisor.discover(self.all_specs()):
            self.state.instances[inst.scope] = inst
        if self.state.domains or self.state.instances:
            self.state.phase = FleetPhase.RUNNING
        logger.info(
            "recovered %d domain(s), %d daemon(s)", len(self.state.domains), len(self.state.instances)
        )
        return self.state

    def _stray_domains(self, names: List[str]) -> List[RoutingDomain]:
        """Domains carrying the fleet prefix whose index the current config does not plan.

        They are left over from a larger fleet and are adopted so tear-down removes them.
        """
        prefix = self.config.domain_prefix
        pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
        planned = {d.index for d in self.domains}
        cap = addresses.capacity(self.config.supernet)
        found: List[RoutingDomain] = []
        for name in names:
            m = pattern.match(name)
            if not m:
                continue
            index = int(m.group(1))
            if index in planned or not 1 <= index <= cap or naming.domain_name(prefix, index) != name:
                continue
            found.append(naming.routing_domain(prefix, addresses.plan(self.config.supernet, index)))
        return sorted(found, key=lambda d: d.index)

    def _provision_steps(self, domain: RoutingDomain) -> List[Tuple[str, Callable[[], None]]]:
        pair = domain.addresses
        links = self.links
        return [
            ("create-domain", lambda: links.create_domain(domain.name)),
            ("create-link", lambda: links.create_link(domain.link_inside, domain.link_outside)),
            ("move-inside-end", lambda: links.move_end_into_domain(domain.link_inside, domain.name)),
            ("loopback-up", lambda: links.configure_interface(domain.name, LOOPBACK)),
            ("configure-inside", lambda: links.configure_interface(domain.name, domain.link_inside, pair.inside)),
            ("configure-outside", lambda: links.configure_interface(None, domain.link_outside, pair.outside)),
            ("default-route", lambda: links.install_default_route(domain.name, pair.default_route_target)),
        ]

    def _rollback(self, domain: RoutingDomain, done: List[str], result: OperationResult) -> None:
        """Undo what this attempt created; never touches pre-existing objects."""
        if "create-link" in done:
            try:
                self.links.remove_link_outside_end(domain.link_outside)
                result.success(domain.index, action="rollback-link")
            except FleetError as exc:
                result.failure(domain.index, exc, action="rollback-link")
        if "create-domain" in done:
            try:
                self.links.remove_domain(domain.name)
                result.success(domain.index, action="rollback-domain")
            except FleetError as exc:
                result.failure(domain.index, exc, action="rollback-domain")

    def provision_node(self, domain: RoutingDomain, result: OperationResult) -> bool:
        done: List[str] = []
        for step, op in self._provision_steps(domain):
            try:
                op()
            except FleetError as exc:
                exc.scope = domain.index
                logger.warning("node %d: %s failed: %s", domain.index, step, exc)
                result.failure(domain.index, exc, action="provision", step=step, domain=domain.name)
                if self.config.rollback_on_failure:
                    self._rollback(domain, done, result)
                elif "create-domain" in done:
                    # left in place for inspection; tear-down removes it
                    self.state.domains[domain.index] = domain
                return False
            done.append(step)
        self.state.domains[domain.index] = domain
        result.success(
            domain.index,
            action="provision",
            domain=domain.name,
            inside=str(domain.addresses.inside),
            outside=str(domain.addresses.outside),
        )
        return True

    def _launch(self, spec: DaemonSpec, result: OperationResult) -> Optional[DaemonInstance]:
        try:
            inst = self.supervisor.launch(spec)
        except FleetError as exc:
            exc.scope = spec.scope
            logger.warning("%s: daemon launch failed: %s", scope_label(spec.scope), exc)
            result.failure(spec.scope, exc, action="launch")
            return None
        self.state.instances[spec.scope] = inst
        result.success(spec.scope, action="launch", pid=inst.pid, api=spec.api_address, log=str(spec.log_path))
        return inst

    def bring_up(self) -> OperationResult:
        self._require_phase(FleetPhase.ABSENT, action="bring-up")
        self.state.phase = FleetPhase.PROVISIONING
        result = OperationResult("bring-up")
        self._launch(self.host_spec(), result)
        for domain in self.domains:
            if self.provision_node(domain, result):
                self._launch(self.node_spec(domain), result)
        self.state.phase = FleetPhase.RUNNING
        failed = {o.scope for o in result.failures}
        logger.info(
            "bring-up finished: %d node(s), %d scope(s) with failures", len(self.domains), len(failed)
        )
        return result

    def tear_down(self) -> OperationResult:
        if self.state.phase in (FleetPhase.PROVISIONING, FleetPhase.TEARING_DOWN):
            raise InvalidStateError(f"cannot tear down while fleet is {self.state.phase.value}")
        self.state.phase = FleetPhase.TEARING_DOWN
        result = OperationResult("tear-down")

        terminated = self.supervisor.terminate_all(list(self.state.instances.values()))
        result.extend(terminated)
        for outcome in terminated:
            if outcome.ok:
                self.state.instances.pop(outcome.scope, None)

        for domain in self.domains:
            try:
                self.links.remove_link_outside_end(domain.link_outside)
                result.success(domain.index, action="remove-link", link=domain.link_outside)
            except FleetError as exc:
                exc.scope = domain.index
                result.failure(domain.index, exc, action="remove-link", link=domain.link_outside)
            try:
                self.links.remove_domain(domain.name)
                result.success(domain.index, action="remove-domain", domain=domain.name)
            except DomainNotFound as exc:
                exc.scope = domain.index
                result.failure(domain.index, exc, action="remove-domain", domain=domain.name)
            except FleetError as exc:
                exc.scope = domain.index
                result.failure(domain.index, exc, action="remove-domain", domain=domain.name)
                # still on the host; a later tear-down retries it
                continue
            self.state.domains.pop(domain.index, None)

        self.state.phase = FleetPhase.ABSENT
        leftovers = [str(o) for o in result.failures if o.action in ("terminate", "remove-domain")]
        if leftovers:
            logger.warning("tear-down left %d item(s): %s", len(leftovers), "; ".join(leftovers))
        else:
            logger.info("tear-down complete")
        return result

    def status_broadcast(self) -> OperationResult:
        if self.state.phase in (FleetPhase.PROVISIONING, FleetPhase.TEARING_DOWN):
            raise InvalidStateError(f"cannot broadcast status while fleet is {self.state.phase.value}")
        result = OperationResult("status-broadcast")
        result.extend(self.supervisor.signal_all(list(self.state.instances.values()), DIAGNOSTIC_SIGNAL))
        return result

    def artifact_paths(self) -> Dict[Scope, List[Path]]:
        return {spec.scope: [spec.key_file, spec.log_path] for spec in self.all_specs()}

    def purge(self) -> OperationResult:
        result = OperationResult("purge")
        result.extend(self.tear_down())
        self._require_phase(FleetPhase.ABSENT, action="purge")
        for scope, paths in self.artifact_paths().items():
            if scope in self.state.instances:
                err = InvalidStateError(f"{scope_label(scope)} daemon still running; keeping its files", scope=scope)
                result.failure(scope, err, action="remove-files")
                continue
            result.extend(remove_fleet_artifacts(scope, paths))
        return result

    def inspect(self) -> OperationResult:
        """Query every tracked daemon's admin API."""
        result = OperationResult("inspect")
        for scope, inst in sorted(self.state.instances.items(), key=_scope_order):
            client = self.api_client_factory(inst.spec.api_address, timeout=self.config.api_timeout)
            try:
                subnet = client.node_subnet()
                peers = client.peers()
                selected = client.selected_routes()
                fallback = client.fallback_routes()
            except FleetError as exc:
                exc.scope = scope
                result.failure(scope, exc, api=inst.spec.api_address)
                continue
            result.success(
                scope,
                api=inst.spec.api_address,
                node_subnet=subnet,
                peers=len(peers),
                selected_routes=len(selected),
                fallback_routes=len(fallback),
            )
        return result


__all__ = ["TopologyManager"]
