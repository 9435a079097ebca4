from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass

from .addresses import format_ip
from .graph import filter_graph_edges, top_dependencies
from .lint import LintFinding
from .model import EDGE_LISTENS_ON, NODE_PORT, NODE_PROCESS, Dependency, Graph
from .scan import ScanRow


@dataclass(frozen=True)
class ListenerRow:
    proc_name: str
    pid: int
    ip: str
    port: int


def _trunc(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def _name(value: str) -> str:
    return value or "unknown"


def _dot_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def listener_rows(graph: Graph) -> list[ListenerRow]:
    nodes = graph.node_by_id()
    rows: list[ListenerRow] = []
    for edge in graph.edges:
        if edge.type != EDGE_LISTENS_ON:
            continue
        proc = nodes.get(edge.src)
        port = nodes.get(edge.dst)
        if proc is None or port is None:
            continue
        if proc.type != NODE_PROCESS or port.type != NODE_PORT:
            continue
        rows.append(
            ListenerRow(proc_name=proc.proc_name, pid=proc.pid, ip=port.local_ip, port=port.port)
        )
    return sorted(rows, key=lambda r: (r.port, r.proc_name, r.pid, r.ip))


def dependency_label(dep: Dependency) -> str:
    label = f"EST={dep.established}"
    if dep.time_wait > 0:
        label += f" TW={dep.time_wait}"
    return label


def graph_text(
    graph: Graph,
    deps: list[Dependency],
    warnings: Sequence[str],
    *,
    top: int,
    proto: str = "tcp",
) -> str:
    lines = [f"Local dependency graph ({proto})"]

    if warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {w}" for w in warnings)

    lines.append("")
    lines.append("Listeners:")
    listeners = listener_rows(graph)
    if not listeners:
        lines.append("  (no listeners)")
    for row in listeners:
        lines.append(
            f"  {_trunc(_name(row.proc_name), 10):<10} (pid {row.pid}) LISTEN "
            f"{format_ip(row.ip)}:{row.port}"
        )

    lines.append("")
    lines.append("Dependencies:")
    shown = top_dependencies(deps, top)
    if not shown:
        lines.append("  (no dependencies)")
    for dep in shown:
        lines.append(
            f"  {_trunc(_name(dep.client.proc_name), 12)}(pid {dep.client.pid}) -> "
            f"{_trunc(_name(dep.server.proc_name), 12)}:{dep.port.port}   "
            f"{dependency_label(dep)}"
        )

    return "\n".join(lines) + "\n"


def graph_dot(deps: list[Dependency], *, top: int) -> str:
    lines = ["digraph portdeps {"]
    for dep in top_dependencies(deps, top):
        client = f"{_name(dep.client.proc_name)} (pid {dep.client.pid})"
        server = f"{_name(dep.server.proc_name)} (pid {dep.server.pid})"
        label = f"{dep.port.port} ({dep.established})"
        if dep.time_wait > 0:
            label += f" TW={dep.time_wait}"
        lines.append(
            f'  "{_dot_escape(client)}" -> "{_dot_escape(server)}" '
            f'[label="{_dot_escape(label)}"];'
        )
    lines.append("}")
    return "\n".join(lines) + "\n"


def graph_json(graph: Graph, deps: list[Dependency], *, top: int) -> str:
    filtered = filter_graph_edges(graph, top_dependencies(deps, top))
    return json.dumps(filtered.to_dict(), indent=2, ensure_ascii=True) + "\n"


def scan_table(rows: Sequence[ScanRow]) -> str:
    headers = ["PORT", "PROTO", "STATUS", "OWNER", "PID", "ADDR", "ERROR"]
    table: list[list[str]] = [
        [
            str(r.port),
            r.proto,
            r.status,
            r.owner or "-",
            str(r.pid) if r.pid > 0 else "-",
            r.addr or "-",
            r.error or "-",
        ]
        for r in rows
    ]
    widths = [len(h) for h in headers]
    for cells in table:
        for idx, cell in enumerate(cells):
            widths[idx] = max(widths[idx], len(cell))

    def fmt(cells: list[str]) -> str:
        return "  ".join(c.ljust(widths[i]) for i, c in enumerate(cells)).rstrip()

    lines = [fmt(headers)]
    lines.extend(fmt(cells) for cells in table)
    return "\n".join(lines) + "\n"


def scan_json(proto: str, ports: Sequence[int], rows: Sequence[ScanRow]) -> str:
    payload = {
        "proto": proto,
        "ports": list(ports),
        "rows": [r.to_dict() for r in rows],
        "count": len(rows),
    }
    return json.dumps(payload, indent=2, ensure_ascii=True) + "\n"


def lint_table(findings: Sequence[LintFinding]) -> str:
    if not findings:
        return "No lint findings.\n"

    def fmt(sev: str, port_proto: str, bind: str, pid: str, proc: str, summary: str) -> str:
        return f"{sev:<4}  {port_proto:<10}  {bind:<15}  {pid:<6}  {proc:<15}  {summary}".rstrip()

    lines = [
        fmt("SEV", "PORT/PROTO", "BIND", "PID", "PROCESS", "SUMMARY"),
        fmt("-" * 4, "-" * 10, "-" * 15, "-" * 6, "-" * 15, "-" * 40),
    ]
    for f in findings:
        lines.append(
            fmt(
                f.severity.upper(),
                f"{f.port}/{f.proto}",
                _trunc(f.local_ip or "*", 15),
                str(f.pid) if f.pid > 0 else "-",
                _trunc(f.proc_name or "-", 15),
                _trunc(f.summary, 56),
            )
        )
        if f.action:
            lines.append(f"      -> {f.action}")
    return "\n".join(lines) + "\n"


def lint_json(findings: Sequence[LintFinding]) -> str:
    payload = {"findings": [f.to_dict() for f in findings], "count": len(findings)}
    return json.dumps(payload, indent=2, ensure_ascii=True) + "\n"
