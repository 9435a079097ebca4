from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace

from .addresses import (
    format_endpoint,
    is_local_ip,
    is_valid_ip,
    is_wildcard_ip,
    local_ip_set,
    normalize_ip,
)
from .matcher import match_listener
from .model import (
    EDGE_CONNECTS_TO,
    EDGE_LISTENS_ON,
    NODE_PORT,
    NODE_PROCESS,
    STATE_ESTABLISHED,
    STATE_TIME_WAIT,
    BuildResult,
    ConnectionRecord,
    Dependency,
    Edge,
    EdgeType,
    Graph,
    ListenerRecord,
    Node,
    ProcessInfo,
)
from .process import resolve_process, truncate_cmdline
from .sockets import list_connections, list_listeners

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOLS = ("tcp",)

ProcessResolver = Callable[[int], tuple[str, str]]
ListenerSource = Callable[[str], list[ListenerRecord]]
ConnectionSource = Callable[[str], list[ConnectionRecord]]
LocalAddressSource = Callable[[], set[str]]

_STATE_ALIASES = {
    "ESTAB": STATE_ESTABLISHED,
    "TIME-WAIT": STATE_TIME_WAIT,
}


class UnsupportedProtocolError(ValueError):
    pass


@dataclass(frozen=True)
class BuildOptions:
    ports: tuple[int, ...] = ()
    local_only: bool = True


def normalize_state(state: str) -> str:
    value = state.strip().upper()
    return _STATE_ALIASES.get(value, value)


def process_node(info: ProcessInfo) -> Node:
    return Node(
        id=f"proc:{info.pid}",
        type=NODE_PROCESS,
        pid=info.pid,
        proc_name=info.name,
        cmdline=info.cmdline,
    )


def port_node(protocol: str, ip: str, port: int) -> Node:
    addr = "*" if is_wildcard_ip(ip) else normalize_ip(ip)
    return Node(
        id=f"port:{protocol}:{addr}:{port}",
        type=NODE_PORT,
        protocol=protocol,
        local_ip=addr,
        port=port,
    )


class ProcessCache:
    """Per-build memo of process identities.

    Hints win; the resolver only fills fields the hints leave empty, and is
    called at most once per pid.
    """

    def __init__(self, resolver: ProcessResolver = resolve_process) -> None:
        self._resolver = resolver
        self._procs: dict[int, ProcessInfo] = {}

    def lookup(self, pid: int, name_hint: str = "", cmdline_hint: str = "") -> ProcessInfo:
        if pid <= 0:
            return ProcessInfo(pid=0)
        cached = self._procs.get(pid)
        if cached is not None:
            return cached
        name = name_hint.strip()
        cmdline = cmdline_hint.strip()
        if not name or not cmdline:
            logger.debug("resolving process identity for pid %d", pid)
            resolved_name, resolved_cmdline = self._resolver(pid)
            if not name:
                name = resolved_name.strip()
            if not cmdline:
                cmdline = resolved_cmdline.strip()
        info = ProcessInfo(pid=pid, name=name, cmdline=truncate_cmdline(cmdline))
        self._procs[pid] = info
        return info

    def __len__(self) -> int:
        return len(self._procs)


class WarningCollector:
    def __init__(self) -> None:
        self._seen: set[str] = set()

    def add(self, message: str) -> None:
        if not message or message in self._seen:
            return
        logger.debug("graph warning: %s", message)
        self._seen.add(message)

    def sorted(self) -> list[str]:
        return sorted(self._seen)

    def __len__(self) -> int:
        return len(self._seen)


class DependencyStore:
    """Dependencies keyed by (client pid, server pid, port node id)."""

    def __init__(self) -> None:
        self._deps: dict[tuple[int, int, str], Dependency] = {}

    def record(self, client: Node, server: Node, port: Node, *, established: bool) -> Dependency:
        key = (client.pid, server.pid, port.id)
        existing = self._deps.get(key)
        if existing is None:
            existing = Dependency(client=client, server=server, port=port)
        if established:
            updated = replace(existing, established=existing.established + 1)
        else:
            updated = replace(existing, time_wait=existing.time_wait + 1)
        self._deps[key] = updated
        return updated

    def values(self) -> list[Dependency]:
        return list(self._deps.values())

    def __len__(self) -> int:
        return len(self._deps)


@dataclass
class GraphAssembler:
    nodes: dict[str, Node] = field(default_factory=dict)
    edges: dict[tuple[str, str, str], Edge] = field(default_factory=dict)

    def add_node(self, node: Node) -> None:
        if not node.id or node.id in self.nodes:
            return
        self.nodes[node.id] = node

    def add_edge(
        self,
        *,
        src: str,
        dst: str,
        edge_type: EdgeType,
        established: int = 0,
        time_wait: int = 0,
    ) -> None:
        key = (src, dst, edge_type)
        existing = self.edges.get(key)
        if existing is None:
            self.edges[key] = Edge(
                src=src,
                dst=dst,
                type=edge_type,
                established=established,
                time_wait=time_wait,
            )
            return
        self.edges[key] = replace(
            existing,
            established=existing.established + established,
            time_wait=existing.time_wait + time_wait,
        )

    def graph(self) -> Graph:
        return Graph(
            nodes=sorted_nodes(self.nodes.values()),
            edges=sorted_edges(self.edges.values()),
        )


def sorted_nodes(nodes: Iterable[Node]) -> list[Node]:
    return sorted(nodes, key=lambda n: (n.type, n.id))


def sorted_edges(edges: Iterable[Edge]) -> list[Edge]:
    return sorted(edges, key=lambda e: (e.type, e.src, e.dst))


def sort_dependencies(deps: Iterable[Dependency]) -> list[Dependency]:
    return sorted(
        deps,
        key=lambda d: (
            -d.established,
            d.client.proc_name,
            d.server.proc_name,
            d.port.port,
            d.client.pid,
            d.server.pid,
            d.port.id,
        ),
    )


def top_dependencies(deps: list[Dependency], n: int) -> list[Dependency]:
    if n <= 0 or len(deps) <= n:
        return deps
    return deps[:n]


def filter_graph_edges(graph: Graph, deps: Sequence[Dependency]) -> Graph:
    keep_connect = {(d.client.id, d.port.id) for d in deps}
    edges: list[Edge] = []
    used: set[str] = set()
    for edge in graph.edges:
        if edge.type == EDGE_CONNECTS_TO and (edge.src, edge.dst) not in keep_connect:
            continue
        edges.append(edge)
        used.add(edge.src)
        used.add(edge.dst)
    nodes = [n for n in graph.nodes if n.id in used]
    return Graph(nodes=nodes, edges=edges)


def _check_protocol(proto: str) -> None:
    if proto not in SUPPORTED_PROTOCOLS:
        raise UnsupportedProtocolError(f"unsupported proto: {proto}")


def _normalized_listeners(
    listeners: Iterable[ListenerRecord], proto: str, ports: set[int]
) -> list[ListenerRecord]:
    out: list[ListenerRecord] = []
    for rec in listeners:
        if ports and rec.local_port not in ports:
            continue
        out.append(replace(rec, local_ip=normalize_ip(rec.local_ip), protocol=proto))
    return out


def assemble(
    proto: str,
    listeners: Iterable[ListenerRecord],
    connections: Iterable[ConnectionRecord],
    *,
    options: BuildOptions | None = None,
    local_ips: set[str] | frozenset[str] = frozenset(("127.0.0.1", "::1")),
    resolver: ProcessResolver | None = None,
) -> BuildResult:
    """Build the graph, dependencies and warnings from collected records."""
    _check_protocol(proto)
    opts = options or BuildOptions()
    ports = set(opts.ports)

    listener_recs = _normalized_listeners(listeners, proto, ports)
    procs = ProcessCache(resolver or resolve_process)
    warnings = WarningCollector()
    deps = DependencyStore()
    asm = GraphAssembler()

    for rec in listener_recs:
        if rec.pid <= 0:
            warnings.add(
                f"listener pid missing for {format_endpoint(rec.local_ip, rec.local_port)}"
            )
            continue
        info = procs.lookup(rec.pid, rec.proc_name, rec.cmdline)
        p_node = process_node(info)
        l_node = port_node(proto, rec.local_ip, rec.local_port)
        asm.add_node(p_node)
        asm.add_node(l_node)
        asm.add_edge(src=p_node.id, dst=l_node.id, edge_type=EDGE_LISTENS_ON)

    for conn in connections:
        state = normalize_state(conn.state)
        if state not in (STATE_ESTABLISHED, STATE_TIME_WAIT):
            continue
        if ports and conn.remote_port not in ports:
            continue
        remote_ip = normalize_ip(conn.remote_ip)
        if not remote_ip:
            continue
        if not is_wildcard_ip(remote_ip) and not is_valid_ip(remote_ip):
            warnings.add(f"unparseable remote address {conn.remote_ip.strip()}; skipping connection")
            continue
        if not is_local_ip(remote_ip, local_ips):
            # Only intra-host dependencies are modelled, so local_only=False
            # drops the connection too.
            logger.debug(
                "skipping non-local remote %s (local_only=%s)",
                format_endpoint(remote_ip, conn.remote_port),
                opts.local_only,
            )
            continue

        endpoint = format_endpoint(remote_ip, conn.remote_port)
        match = match_listener(listener_recs, remote_ip, conn.remote_port)
        if match.ambiguous:
            warnings.add(f"multiple listeners for {endpoint}; skipping dependency")
            continue
        if match.listener is None:
            continue
        server_rec = match.listener
        if conn.pid <= 0:
            warnings.add(f"connection pid missing for {endpoint}")
            continue
        if server_rec.pid <= 0:
            warnings.add(f"listener pid missing for {endpoint}")
            continue

        client_node = process_node(procs.lookup(conn.pid, conn.proc_name, ""))
        server_node = process_node(
            procs.lookup(server_rec.pid, server_rec.proc_name, server_rec.cmdline)
        )
        p_node = port_node(proto, server_rec.local_ip, server_rec.local_port)

        asm.add_node(client_node)
        asm.add_node(server_node)
        asm.add_node(p_node)
        asm.add_edge(src=server_node.id, dst=p_node.id, edge_type=EDGE_LISTENS_ON)

        established = state == STATE_ESTABLISHED
        deps.record(client_node, server_node, p_node, established=established)
        asm.add_edge(
            src=client_node.id,
            dst=p_node.id,
            edge_type=EDGE_CONNECTS_TO,
            established=1 if established else 0,
            time_wait=0 if established else 1,
        )

    result = BuildResult(
        graph=asm.graph(),
        dependencies=sort_dependencies(deps.values()),
        warnings=warnings.sorted(),
    )
    logger.debug(
        "built graph: %d nodes, %d edges, %d dependencies, %d warnings, %d processes",
        len(result.graph.nodes),
        len(result.graph.edges),
        len(result.dependencies),
        len(result.warnings),
        len(procs),
    )
    return result


def build_graph(
    proto: str,
    options: BuildOptions | None = None,
    *,
    listener_source: ListenerSource | None = None,
    connection_source: ConnectionSource | None = None,
    local_addresses: LocalAddressSource | None = None,
    resolver: ProcessResolver | None = None,
) -> BuildResult:
    """Collect sockets from the host and build one graph snapshot.

    Raises UnsupportedProtocolError before collecting anything, and lets
    collection failures propagate.
    """
    _check_protocol(proto)
    listeners = (listener_source or list_listeners)(proto)
    connections = (connection_source or list_connections)(proto)
    return assemble(
        proto,
        listeners,
        connections,
        options=options,
        local_ips=(local_addresses or local_ip_set)(),
        resolver=resolver,
    )
