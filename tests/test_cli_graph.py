from __future__ import annotations

import json

import pytest

import portdeps.__main__ as cli
from portdeps.model import ConnectionRecord, ListenerRecord
from portdeps.sockets import SocketCollectionError

LISTENERS = [
    ListenerRecord(pid=8123, proc_name="postgres", local_ip="127.0.0.1", local_port=5432),
    ListenerRecord(pid=0, proc_name="", local_ip="0.0.0.0", local_port=22),
]
CONNECTIONS = [
    ConnectionRecord(
        pid=2210,
        proc_name="api",
        local_ip="127.0.0.1",
        local_port=52344,
        remote_ip="127.0.0.1",
        remote_port=5432,
        state="ESTAB",
    )
]


@pytest.fixture(autouse=True)
def _fake_host(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("PORTDEPS_TOP", "PORTDEPS_LOCAL_ONLY", "PORTDEPS_SCAN_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)

    def listeners(proto: str, port: int | None = None, *, timeout_s: float = 10.0) -> list[ListenerRecord]:
        return [r for r in LISTENERS if port is None or r.local_port == port]

    monkeypatch.setattr(cli, "list_listeners", listeners)
    monkeypatch.setattr(cli, "list_connections", lambda proto, *, timeout_s=10.0: list(CONNECTIONS))
    monkeypatch.setattr("portdeps.graph.local_ip_set", lambda: {"127.0.0.1", "::1"})
    monkeypatch.setattr("portdeps.graph.resolve_process", lambda pid: ("", ""))


def test_graph_text(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["graph"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("Local dependency graph (tcp)\n")
    assert "Warnings:\n  - listener pid missing for 0.0.0.0:22\n" in out
    assert "  postgres   (pid 8123) LISTEN 127.0.0.1:5432\n" in out
    assert "  api(pid 2210) -> postgres:5432   EST=1\n" in out


def test_graph_json_sends_warnings_to_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["graph", "--json"]) == 0
    captured = capsys.readouterr()
    payload = json.loads(captured.out)
    assert [e["type"] for e in payload["edges"]] == ["CONNECTS_TO", "LISTENS_ON"]
    assert "graph warning: listener pid missing for 0.0.0.0:22" in captured.err


def test_graph_dot(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["graph", "--dot"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("digraph portdeps {\n")
    assert '"api (pid 2210)" -> "postgres (pid 8123)" [label="5432 (1)"];' in out


def test_graph_port_filter(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["graph", "--ports", "22"]) == 0
    out = capsys.readouterr().out
    assert "postgres" not in out
    assert "(no dependencies)" in out


def test_graph_json_and_dot_are_exclusive(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["graph", "--json", "--dot"]) == 2


def test_graph_unsupported_proto(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["graph", "--proto", "udp"]) == 1
    assert "graph: unsupported proto: udp" in capsys.readouterr().err


def test_graph_collection_failure(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    def broken(proto: str, port: int | None = None, *, timeout_s: float = 10.0) -> list[ListenerRecord]:
        raise SocketCollectionError("ss not found")

    monkeypatch.setattr(cli, "list_listeners", broken)
    assert cli.main(["graph"]) == 1
    assert "graph: ss not found" in capsys.readouterr().err


def test_graph_bad_ports(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["graph", "--ports", "99999"]) == 2
    assert "graph: port out of range: 99999" in capsys.readouterr().err


def test_scan_ports_json(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["scan", "--ports", "5432,22,8080", "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["ports"] == [22, 5432, 8080]
    assert [(r["port"], r["status"]) for r in payload["rows"]] == [
        (22, "unknown"),
        (5432, "in-use"),
        (8080, "free"),
    ]
    assert payload["rows"][1]["owner"] == "postgres"


def test_scan_owner_filter_table(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["scan", "--ports", "5432,8080", "--owner", "POST"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split()[0] == "PORT"
    assert len(lines) == 2
    assert lines[1].split()[:3] == ["5432", "tcp", "in-use"]


def test_scan_all_discovers_ports(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["scan", "--all", "--min-port", "1000"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("1 ports in use (discovered via --all)\n\n")
    assert "5432" in out
    assert "\n22 " not in out


def test_scan_all_empty_range(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["scan", "--all", "--min-port", "6000", "--max-port", "7000"]) == 0
    assert "No tcp listeners found in range 6000-7000" in capsys.readouterr().out


def test_scan_all_discovery_failure(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    def broken(proto: str, port: int | None = None, *, timeout_s: float = 10.0) -> list[ListenerRecord]:
        raise SocketCollectionError("lsof not found")

    monkeypatch.setattr(cli, "list_listeners", broken)
    assert cli.main(["scan", "--all"]) == 1
    assert "scan: failed to discover ports: lsof not found" in capsys.readouterr().err


def test_scan_inspection_errors_become_rows(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    def broken(proto: str, port: int | None = None, *, timeout_s: float = 10.0) -> list[ListenerRecord]:
        raise SocketCollectionError("ss timed out after 10.0s")

    monkeypatch.setattr(cli, "list_listeners", broken)
    assert cli.main(["scan", "--ports", "80", "--json"]) == 0
    row = json.loads(capsys.readouterr().out)["rows"][0]
    assert row == {"port": 80, "proto": "tcp", "status": "error", "error": "ss timed out after 10.0s"}


def test_scan_usage_errors(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["scan"]) == 2
    assert cli.main(["scan", "--ports", "10-1"]) == 2
    assert "scan: invalid port range: 10-1" in capsys.readouterr().err


def test_no_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([]) == 0
    assert "usage: portdeps" in capsys.readouterr().out


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["--version"]) == 0
    assert capsys.readouterr().out.strip() == "portdeps 0.1.0"
