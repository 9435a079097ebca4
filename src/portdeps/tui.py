from __future__ import annotations

import logging
from collections.abc import Callable

from textual import work
from textual.app import App, ComposeResult
from textual.widgets import DataTable, Footer, Header, Log, Static, TabbedContent, TabPane

from .addresses import format_ip
from .graph import top_dependencies
from .model import BuildResult, Dependency
from .render import dependency_label, listener_rows

logger = logging.getLogger(__name__)

GraphLoader = Callable[[], BuildResult]


def dependency_table_rows(deps: list[Dependency], top: int) -> list[tuple[str, ...]]:
    return [
        (
            dep.client.proc_name or "unknown",
            str(dep.client.pid),
            dep.server.proc_name or "unknown",
            str(dep.server.pid),
            f"{format_ip(dep.port.local_ip)}:{dep.port.port}",
            dependency_label(dep),
        )
        for dep in top_dependencies(deps, top)
    ]


def listener_table_rows(result: BuildResult) -> list[tuple[str, ...]]:
    return [
        (row.proc_name or "unknown", str(row.pid), f"{format_ip(row.ip)}:{row.port}")
        for row in listener_rows(result.graph)
    ]


class PortDepsApp(App):
    CSS = """
    Screen {
        layout: vertical;
    }
    #summary {
        padding: 0 1;
        height: 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh_graph", "Refresh"),
    ]

    def __init__(self, loader: GraphLoader, *, top: int = 50) -> None:
        super().__init__()
        self.graph_loader = loader
        self.top_n = top

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield Footer()
        yield Static("Building graph...", id="summary")

        with TabbedContent(initial="dependencies"):
            with TabPane("Dependencies", id="dependencies"):
                yield DataTable(id="dep_table", cursor_type="row")
            with TabPane("Listeners", id="listeners"):
                yield DataTable(id="listener_table", cursor_type="row")
            with TabPane("Warnings", id="warnings"):
                yield Log(id="warning_log")

    def on_mount(self) -> None:
        self.query_one("#dep_table", DataTable).add_columns(
            "Client", "PID", "Server", "PID", "Port", "Connections"
        )
        self.query_one("#listener_table", DataTable).add_columns("Process", "PID", "Address")
        self.action_refresh_graph()

    def action_refresh_graph(self) -> None:
        self.load_graph()

    @work(thread=True, exclusive=True)
    def load_graph(self) -> None:
        try:
            result = self.graph_loader()
        except Exception as exc:
            logger.debug("graph build failed: %s", exc)
            self.call_from_thread(self._show_error, str(exc))
            return
        self.call_from_thread(self._show_result, result)

    def _show_error(self, message: str) -> None:
        self.query_one("#summary", Static).update(f"Graph build failed: {message}")

    def _show_result(self, result: BuildResult) -> None:
        dep_table = self.query_one("#dep_table", DataTable)
        dep_table.clear()
        for row in dependency_table_rows(result.dependencies, self.top_n):
            dep_table.add_row(*row)

        listener_table = self.query_one("#listener_table", DataTable)
        listener_table.clear()
        for row in listener_table_rows(result):
            listener_table.add_row(*row)

        log = self.query_one("#warning_log", Log)
        log.clear()
        for warning in result.warnings:
            log.write_line(warning)

        self.query_one("#summary", Static).update(
            f"{len(result.graph.nodes)} nodes, {len(result.graph.edges)} edges, "
            f"{len(result.dependencies)} dependencies, {len(result.warnings)} warnings"
        )
