from __future__ import annotations

"""Graph, dependency and raw socket record types.

Node and edge payloads follow the JSON contract consumed by the renderers:
zero or empty optional fields are left out of ``to_dict`` output.
"""

from dataclasses import dataclass, field
from typing import Literal

NodeType = Literal["port", "process"]
EdgeType = Literal["CONNECTS_TO", "LISTENS_ON"]

NODE_PROCESS: NodeType = "process"
NODE_PORT: NodeType = "port"
EDGE_CONNECTS_TO: EdgeType = "CONNECTS_TO"
EDGE_LISTENS_ON: EdgeType = "LISTENS_ON"

STATE_ESTABLISHED = "ESTABLISHED"
STATE_TIME_WAIT = "TIME_WAIT"


@dataclass(frozen=True)
class ListenerRecord:
    pid: int
    proc_name: str
    local_ip: str
    local_port: int
    protocol: str = "tcp"
    cmdline: str = ""
    state: str = "LISTEN"
    user: str = ""


@dataclass(frozen=True)
class ConnectionRecord:
    pid: int
    proc_name: str
    local_ip: str
    local_port: int
    remote_ip: str
    remote_port: int
    state: str
    protocol: str = "tcp"


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str = ""
    cmdline: str = ""


@dataclass(frozen=True)
class Node:
    id: str
    type: NodeType
    pid: int = 0
    proc_name: str = ""
    cmdline: str = ""
    protocol: str = ""
    local_ip: str = ""
    port: int = 0

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"id": self.id, "type": self.type}
        if self.pid:
            out["pid"] = self.pid
        if self.proc_name:
            out["proc_name"] = self.proc_name
        if self.cmdline:
            out["cmdline"] = self.cmdline
        if self.protocol:
            out["protocol"] = self.protocol
        if self.local_ip:
            out["local_ip"] = self.local_ip
        if self.port:
            out["port"] = self.port
        return out


@dataclass(frozen=True)
class Edge:
    src: str
    dst: str
    type: EdgeType
    established: int = 0
    time_wait: int = 0

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"from": self.src, "to": self.dst, "type": self.type}
        if self.established:
            out["established"] = self.established
        if self.time_wait:
            out["time_wait"] = self.time_wait
        return out


@dataclass(frozen=True)
class Graph:
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)

    def node_by_id(self) -> dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def to_dict(self) -> dict[str, object]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


@dataclass(frozen=True)
class Dependency:
    client: Node
    server: Node
    port: Node
    established: int = 0
    time_wait: int = 0


@dataclass(frozen=True)
class BuildResult:
    graph: Graph
    dependencies: list[Dependency]
    warnings: list[str]
