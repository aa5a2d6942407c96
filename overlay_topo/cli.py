from __future__ import annotations
import argparse
import json
import logging
import shlex
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from .config import FleetConfig, load_config
from .constants import DIAGNOSTIC_SIGNAL
from .errors import ConfigError, FleetError, InvalidAddress, InvalidStateError, RangeExceeded
from .manager import TopologyManager
from .netops.iproute2 import node_bring_up_commands
from .types import FleetPhase, OperationResult, scope_label
from .utils.report import format_outcomes, summarize, write_report

logger = logging.getLogger("overlay_topo")

COMMANDS = ("plan", "up", "down", "status", "purge", "inspect", "run")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="overlay-topo",
        description="Emulate a multi-node overlay network on one host using network namespaces.",
    )
    ap.add_argument("--config", help="Path to a YAML fleet configuration file")
    ap.add_argument("--fleet-size", type=int, default=None, help="Number of emulated nodes")
    ap.add_argument("--supernet", default=None, help="IPv4 block the per-node /24s are carved from")
    ap.add_argument("--binary", dest="daemon_binary", default=None, help="Path to the overlay daemon executable")
    ap.add_argument("--work-dir", default=None, help="Directory holding key files and logs")
    ap.add_argument(
        "--peer",
        dest="bootstrap_peers",
        action="append",
        default=None,
        help="Bootstrap peer for the host daemon (scheme://host:port); repeatable",
    )
    ap.add_argument("--sudo", dest="use_sudo", action="store_true", default=None, help="Run host commands through sudo -n")
    ap.add_argument(
        "--rollback",
        dest="rollback_on_failure",
        action="store_true",
        default=None,
        help="Remove a node's partially created domain/link when its bring-up fails",
    )
    ap.add_argument("--report", default=None, help="Write a markdown report of the run to this path")
    ap.add_argument("--json", action="store_true", help="Print results as JSON")
    ap.add_argument("--verbose", action="store_true", help="Enable debug logging and list successful outcomes")
    ap.add_argument("command", choices=COMMANDS, help="Operation to perform")
    return ap


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    keys = ("fleet_size", "supernet", "daemon_binary", "work_dir", "bootstrap_peers", "use_sudo", "rollback_on_failure")
    return {k: getattr(args, k) for k in keys if getattr(args, k) is not None}


def _emit(args: argparse.Namespace, results: List[OperationResult]) -> None:
    if args.json:
        payload = []
        for r in results:
            entry: Dict[str, Any] = summarize(r)
            entry["outcomes"] = [
                {
                    "scope": scope_label(o.scope),
                    "action": o.action,
                    "ok": o.ok,
                    "kind": o.kind,
                    "error": str(o.error) if o.error else None,
                    "detail": o.detail,
                }
                for o in r
            ]
            payload.append(entry)
        print(json.dumps(payload, indent=2, default=str))
        return
    for r in results:
        for line in format_outcomes(r, verbose=args.verbose):
            print(line)


def print_plan(manager: TopologyManager, as_json: bool = False) -> None:
    """Show addresses and the exact host commands, without running anything."""
    host = manager.host_spec()
    nodes = []
    for d in manager.domains:
        spec = manager.node_spec(d)
        nodes.append({
            "index": d.index,
            "domain": d.name,
            "inside": str(d.addresses.inside),
            "outside": str(d.addresses.outside),
            "default_route": d.addresses.default_route_target,
            "links": [d.link_inside, d.link_outside],
            "commands": [shlex.join(c) for c in node_bring_up_commands(d)],
            "daemon": shlex.join(manager.supervisor.command_for(spec)),
            "log": str(spec.log_path),
        })
    if as_json:
        print(json.dumps({
            "supernet": manager.config.supernet,
            "host_daemon": shlex.join(manager.supervisor.command_for(host)),
            "nodes": nodes,
        }, indent=2))
        return
    print(f"supernet {manager.config.supernet}, {len(nodes)} node(s)")
    print(f"host: {shlex.join(manager.supervisor.command_for(host))}")
    for n in nodes:
        print(f"node {n['index']}: {n['domain']} inside={n['inside']} outside={n['outside']}")
        for c in n["commands"]:
            print(f"  {c}")
        print(f"  {n['daemon']} >> {n['log']} 2>&1")


def run_foreground(manager: TopologyManager) -> List[OperationResult]:
    """Bring the fleet up and hold it until SIGINT/SIGTERM.

    SIGUSR1 sent to this process is forwarded to every daemon as a status dump.
    Handlers are in place before bring-up starts, so a signal received while
    nodes are still being provisioned is acted on once bring-up returns.
    """
    results: List[OperationResult] = []
    stop = threading.Event()
    dump = threading.Event()

    def _on_stop(signum, frame):
        logger.info("received %s; tearing down", signal.Signals(signum).name)
        stop.set()

    def _on_dump(signum, frame):
        dump.set()

    previous = {
        signal.SIGINT: signal.signal(signal.SIGINT, _on_stop),
        signal.SIGTERM: signal.signal(signal.SIGTERM, _on_stop),
        DIAGNOSTIC_SIGNAL: signal.signal(DIAGNOSTIC_SIGNAL, _on_dump),
    }
    try:
        results.append(manager.bring_up())
        logger.info("fleet running; send SIGUSR1 for a status dump, Ctrl-C to tear down")
        while True:
            # a dump requested before the stop signal is still delivered
            if dump.is_set():
                dump.clear()
                for line in format_outcomes(manager.status_broadcast()):
                    logger.info(line)
            if stop.is_set():
                break
            stop.wait(0.5)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        if manager.state.phase is FleetPhase.PROVISIONING:
            logger.error("bring-up did not finish; run 'down' to remove what was created")
        else:
            results.append(manager.tear_down())
    return results


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config: FleetConfig = load_config(args.config, _overrides(args))
        manager = TopologyManager(config)
    except (ConfigError, RangeExceeded, InvalidAddress) as e:
        logger.error("Invalid fleet configuration: %s", e)
        return 2

    if args.command == "plan":
        print_plan(manager, as_json=args.json)
        return 0

    results: List[OperationResult] = []
    try:
        if args.command == "up":
            results.append(manager.bring_up())
        elif args.command == "run":
            results.extend(run_foreground(manager))
        else:
            manager.recover()
            if args.command == "down":
                results.append(manager.tear_down())
            elif args.command == "status":
                results.append(manager.status_broadcast())
            elif args.command == "purge":
                results.append(manager.purge())
            elif args.command == "inspect":
                results.append(manager.inspect())
    except InvalidStateError as e:
        logger.error("%s", e)
        return 2
    except FleetError as e:
        logger.exception("%s failed: %s", args.command, e)
        return 1

    _emit(args, results)
    if args.report:
        try:
            path = write_report(args.report, manager.state, results, supernet=config.supernet)
            logger.info("Fleet report written to %s", path)
        except OSError as e:
            logger.warning("Failed to write fleet report %s: %s", args.report, e)
    return 0 if all(r.ok for r in results) else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
