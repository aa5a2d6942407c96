from __future__ import annotations
import os
import time
from typing import Dict, Iterable, List, Optional

from ..types import FleetState, OperationResult, Outcome, scope_label


def summarize(result: OperationResult) -> Dict[str, object]:
    """Counts per outcome kind plus the failed scopes, for printing or JSON."""
    by_action: Dict[str, Dict[str, int]] = {}
    for o in result:
        bucket = by_action.setdefault(o.action, {})
        bucket[o.kind] = bucket.get(o.kind, 0) + 1
    failed: List[str] = []
    for o in result.failures:
        label = scope_label(o.scope)
        if label not in failed:
            failed.append(label)
    return {
        "action": result.action,
        "ok": result.ok,
        "total": len(result),
        "kinds": result.summary(),
        "by_action": by_action,
        "failed_scopes": failed,
    }


def format_outcomes(result: OperationResult, verbose: bool = False) -> List[str]:
    lines: List[str] = []
    for o in result:
        if o.ok and not verbose:
            continue
        line = str(o)
        if verbose and o.detail:
            extras = ", ".join(f"{k}={v}" for k, v in o.detail.items())
            line = f"{line} ({extras})"
        lines.append(line)
    s = summarize(result)
    kinds = ", ".join(f"{k}={v}" for k, v in sorted(s["kinds"].items()))  # type: ignore[union-attr]
    lines.append(f"{result.action}: {s['total']} outcome(s) [{kinds or 'none'}]")
    return lines


def _failure_row(o: Outcome) -> str:
    step = o.detail.get("step", "")
    return f"| {scope_label(o.scope)} | {o.action} | {step} | {o.kind} | {str(o.error or '').replace('|', '/')} |"


def write_report(
    out_path: str,
    state: FleetState,
    results: Iterable[OperationResult],
    supernet: Optional[str] = None,
) -> str:
    results = list(results)
    lines: List[str] = []
    lines.append("# Overlay Fleet Report")
    lines.append("")
    lines.append(f"Generated: {time.strftime('%Y-%m-%d %H:%M:%S')}")
    if supernet:
        lines.append(f"Supernet: {supernet}")
    lines.append(f"Fleet state: {state.phase.value}")
    lines.append(f"Domains: {len(state.domains)}; daemons: {len(state.instances)}")
    lines.append("")
    lines.append("## Nodes")
    lines.append("")
    lines.append("| Node | Domain | Inside | Outside | Daemon pid | Log |")
    lines.append("| --- | --- | --- | --- | --- | --- |")
    for index in sorted(state.domains):
        d = state.domains[index]
        inst = state.instances.get(index)
        pid = str(inst.pid) if inst else "-"
        log = str(inst.spec.log_path) if inst else "-"
        lines.append(f"| {index} | {d.name} | {d.addresses.inside} | {d.addresses.outside} | {pid} | {log} |")
    host = state.instances.get("host")
    if host is not None:
        lines.append("")
        lines.append(f"Host daemon: pid {host.pid}, api {host.spec.api_address}, log {host.spec.log_path}")
    for result in results:
        lines.append("")
        lines.append(f"## {result.action}")
        lines.append("")
        s = summarize(result)
        lines.append(f"Outcomes: {s['total']}, failures: {len(result.failures)}")
        if result.failures:
            lines.append("")
            lines.append("| Scope | Action | Step | Kind | Error |")
            lines.append("| --- | --- | --- | --- | --- |")
            for o in result.failures:
                lines.append(_failure_row(o))
    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    return out_path


__all__ = ["summarize", "format_outcomes", "write_report"]
