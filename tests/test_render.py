from __future__ import annotations

import json

from portdeps.graph import assemble
from portdeps.model import BuildResult, ConnectionRecord, Graph, ListenerRecord
from portdeps.render import graph_dot, graph_json, graph_text, listener_rows, scan_json, scan_table
from portdeps.scan import ScanRow


def _conn(pid: int, name: str, remote_port: int, state: str = "ESTAB") -> ConnectionRecord:
    return ConnectionRecord(
        pid=pid,
        proc_name=name,
        local_ip="127.0.0.1",
        local_port=50000,
        remote_ip="127.0.0.1",
        remote_port=remote_port,
        state=state,
    )


def _result() -> BuildResult:
    listeners = [
        ListenerRecord(pid=8123, proc_name="postgres", local_ip="127.0.0.1", local_port=5432),
        ListenerRecord(pid=9012, proc_name="redis", local_ip="::", local_port=6379),
    ]
    connections = [
        _conn(2210, "api", 5432),
        _conn(2210, "api", 5432),
        _conn(2210, "api", 5432, state="TIME-WAIT"),
        _conn(2241, "", 6379),
    ]
    return assemble(
        "tcp",
        listeners,
        connections,
        local_ips={"127.0.0.1", "::1"},
        resolver=lambda pid: ("", ""),
    )


def test_graph_text_layout() -> None:
    result = _result()
    text = graph_text(result.graph, result.dependencies, result.warnings, top=50)

    assert text == (
        "Local dependency graph (tcp)\n"
        "\n"
        "Listeners:\n"
        "  postgres   (pid 8123) LISTEN 127.0.0.1:5432\n"
        "  redis      (pid 9012) LISTEN *:6379\n"
        "\n"
        "Dependencies:\n"
        "  api(pid 2210) -> postgres:5432   EST=2 TW=1\n"
        "  unknown(pid 2241) -> redis:6379   EST=1\n"
    )


def test_graph_text_empty_and_warnings() -> None:
    text = graph_text(Graph(), [], ["listener pid missing for *:22"], top=0, proto="tcp")
    assert text == (
        "Local dependency graph (tcp)\n"
        "\n"
        "Warnings:\n"
        "  - listener pid missing for *:22\n"
        "\n"
        "Listeners:\n"
        "  (no listeners)\n"
        "\n"
        "Dependencies:\n"
        "  (no dependencies)\n"
    )


def test_graph_text_respects_top() -> None:
    result = _result()
    text = graph_text(result.graph, result.dependencies, [], top=1)
    assert "api(pid 2210)" in text
    assert "pid 2241" not in text


def test_listener_rows_sorted_by_port() -> None:
    rows = listener_rows(_result().graph)
    assert [(r.proc_name, r.pid, r.ip, r.port) for r in rows] == [
        ("postgres", 8123, "127.0.0.1", 5432),
        ("redis", 9012, "*", 6379),
    ]


def test_graph_dot() -> None:
    result = _result()
    assert graph_dot(result.dependencies, top=0) == (
        "digraph portdeps {\n"
        '  "api (pid 2210)" -> "postgres (pid 8123)" [label="5432 (2) TW=1"];\n'
        '  "unknown (pid 2241)" -> "redis (pid 9012)" [label="6379 (1)"];\n'
        "}\n"
    )


def test_graph_json_limits_connections_to_top_dependencies() -> None:
    result = _result()
    payload = json.loads(graph_json(result.graph, result.dependencies, top=1))

    assert set(payload) == {"nodes", "edges"}
    connects = [e for e in payload["edges"] if e["type"] == "CONNECTS_TO"]
    assert connects == [
        {
            "from": "proc:2210",
            "to": "port:tcp:127.0.0.1:5432",
            "type": "CONNECTS_TO",
            "established": 2,
            "time_wait": 1,
        }
    ]
    assert len([e for e in payload["edges"] if e["type"] == "LISTENS_ON"]) == 2
    node_ids = {n["id"] for n in payload["nodes"]}
    assert "proc:2241" not in node_ids
    pg = next(n for n in payload["nodes"] if n["id"] == "proc:8123")
    assert pg == {"id": "proc:8123", "type": "process", "pid": 8123, "proc_name": "postgres"}
    port = next(n for n in payload["nodes"] if n["id"] == "port:tcp:*:6379")
    assert port == {
        "id": "port:tcp:*:6379",
        "type": "port",
        "protocol": "tcp",
        "local_ip": "*",
        "port": 6379,
    }


def test_scan_table_and_json() -> None:
    rows = [
        ScanRow(port=80, proto="tcp", status="in-use", owner="nginx", pid=4000, addr="0.0.0.0:80"),
        ScanRow(port=81, proto="tcp", status="free"),
        ScanRow(port=82, proto="tcp", status="error", error="ss not found"),
    ]
    lines = scan_table(rows).splitlines()
    assert lines[0].split() == ["PORT", "PROTO", "STATUS", "OWNER", "PID", "ADDR", "ERROR"]
    assert lines[1].split() == ["80", "tcp", "in-use", "nginx", "4000", "0.0.0.0:80", "-"]
    assert lines[2].split() == ["81", "tcp", "free", "-", "-", "-", "-"]
    assert lines[3].split() == ["82", "tcp", "error", "-", "-", "-", "ss", "not", "found"]

    payload = json.loads(scan_json("tcp", [80, 81, 82], rows))
    assert payload["count"] == 3
    assert payload["ports"] == [80, 81, 82]
    assert payload["rows"][1] == {"port": 81, "proto": "tcp", "status": "free"}
    assert payload["rows"][2]["error"] == "ss not found"
