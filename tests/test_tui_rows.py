from __future__ import annotations

import pytest

import portdeps.__main__ as cli
import portdeps.tui as tui_mod
from portdeps.graph import assemble
from portdeps.model import BuildResult, ConnectionRecord, ListenerRecord
from portdeps.tui import PortDepsApp, dependency_table_rows, listener_table_rows


def _result() -> BuildResult:
    listeners = [ListenerRecord(pid=8123, proc_name="postgres", local_ip="::1", local_port=5432)]
    connections = [
        ConnectionRecord(
            pid=2210,
            proc_name="api",
            local_ip="::1",
            local_port=52344,
            remote_ip="::1",
            remote_port=5432,
            state="ESTAB",
        )
    ]
    return assemble("tcp", listeners, connections, local_ips={"::1"}, resolver=lambda pid: ("", ""))


def test_dependency_table_rows() -> None:
    result = _result()
    assert dependency_table_rows(result.dependencies, 10) == [
        ("api", "2210", "postgres", "8123", "[::1]:5432", "EST=1")
    ]
    assert dependency_table_rows([], 10) == []


def test_listener_table_rows() -> None:
    assert listener_table_rows(_result()) == [("postgres", "8123", "[::1]:5432")]


def test_tui_command_builds_app_with_loader(monkeypatch: pytest.MonkeyPatch) -> None:
    launched: list[PortDepsApp] = []

    def fake_run(self: PortDepsApp) -> None:
        launched.append(self)

    monkeypatch.setattr(tui_mod.PortDepsApp, "run", fake_run)
    monkeypatch.setattr(cli, "list_listeners", lambda proto, port=None, *, timeout_s=10.0: [])
    monkeypatch.setattr(cli, "list_connections", lambda proto, *, timeout_s=10.0: [])
    monkeypatch.setattr("portdeps.graph.local_ip_set", lambda: {"127.0.0.1"})

    assert cli.main(["tui", "--top", "3"]) == 0
    assert len(launched) == 1
    app = launched[0]
    assert app.top_n == 3
    result = app.graph_loader()
    assert result.dependencies == []


def test_tui_command_rejects_bad_ports() -> None:
    assert cli.main(["tui", "--ports", "nope"]) == 2
