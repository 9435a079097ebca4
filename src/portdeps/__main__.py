"""Module entrypoint.

Allows: python -m portdeps
"""

from __future__ import annotations

import argparse
import functools
import logging
import sys
import textwrap
from collections.abc import Sequence
from typing import cast

from . import __version__
from .config import Config, load_config
from .graph import BuildOptions, UnsupportedProtocolError, build_graph
from .lint import enrich_listeners, filter_min_severity, has_errors, lint_listeners
from .model import BuildResult, ListenerRecord
from .render import (
    graph_dot,
    graph_json,
    graph_text,
    lint_json,
    lint_table,
    scan_json,
    scan_table,
)
from .scan import discover_listening_ports, filter_by_owner, parse_port_spec, scan_ports
from .sockets import SocketCollectionError, list_connections, list_listeners

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _build_parser(config: Config) -> argparse.ArgumentParser:
    epilog = textwrap.dedent(
        """\
        Exit codes:
          0   Success
          1   Collection or build failure, or lint found an error
          2   Invalid arguments
        """
    )

    parser = argparse.ArgumentParser(
        prog="portdeps",
        description="Map local listening ports and the processes that depend on them",
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _ = parser.add_argument(
        "--version",
        action="version",
        version=f"portdeps {__version__}",
        help="Print version and exit.",
    )
    _ = parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging on stderr.",
    )
    sub = parser.add_subparsers(dest="command")

    graph = sub.add_parser("graph", help="Build the local dependency graph.")
    _ = graph.add_argument("--proto", default="tcp", help="Protocol (only tcp is supported).")
    _ = graph.add_argument(
        "--ports",
        default="",
        help="Focus only on these ports, e.g. 5432,6379,3000-3010.",
    )
    _ = graph.add_argument(
        "--local-only",
        action=argparse.BooleanOptionalAction,
        default=config.local_only,
        help="Only include local dependencies.",
    )
    _ = graph.add_argument(
        "--top",
        type=int,
        default=config.top,
        help="Limit dependency edges (0 means no limit).",
    )
    fmt = graph.add_mutually_exclusive_group()
    _ = fmt.add_argument("--json", action="store_true", help="Output JSON.")
    _ = fmt.add_argument("--dot", action="store_true", help="Output Graphviz DOT.")

    scan = sub.add_parser("scan", help="Check which of a set of ports are in use.")
    targets = scan.add_mutually_exclusive_group(required=True)
    _ = targets.add_argument("--ports", help="Ports spec, e.g. 5432,6379,3000-3010.")
    _ = targets.add_argument(
        "--all", action="store_true", help="Scan every listening port on the system."
    )
    _ = scan.add_argument("--proto", default="tcp", choices=("tcp", "udp"))
    _ = scan.add_argument(
        "--concurrency",
        type=int,
        default=config.scan_concurrency,
        help="Number of concurrent checks (max 32).",
    )
    _ = scan.add_argument("--owner", default="", help="Filter by owner/process name.")
    _ = scan.add_argument("--min-port", type=int, default=0)
    _ = scan.add_argument("--max-port", type=int, default=65535)
    _ = scan.add_argument("--json", action="store_true", help="Output JSON.")

    lint = sub.add_parser("lint", help="Flag risky or surprising listeners.")
    _ = lint.add_argument("--proto", default="tcp", choices=("tcp", "udp", "all"))
    _ = lint.add_argument(
        "--min-severity",
        default="info",
        choices=("info", "warn", "warning", "error"),
        help="Hide findings below this severity.",
    )
    _ = lint.add_argument("--json", action="store_true", help="Output JSON.")

    tui = sub.add_parser("tui", help="Browse the dependency graph interactively.")
    _ = tui.add_argument("--ports", default="")
    _ = tui.add_argument("--top", type=int, default=config.top)

    return parser


def _graph_loader(
    proto: str, *, ports: tuple[int, ...], local_only: bool, timeout_s: float
) -> functools.partial[BuildResult]:
    return functools.partial(
        build_graph,
        proto,
        BuildOptions(ports=ports, local_only=local_only),
        listener_source=functools.partial(list_listeners, timeout_s=timeout_s),
        connection_source=functools.partial(list_connections, timeout_s=timeout_s),
    )


def _parse_ports_arg(raw: str, command: str) -> tuple[int, ...] | None:
    if not raw:
        return ()
    try:
        return tuple(parse_port_spec(raw))
    except ValueError as exc:
        print(f"{command}: {exc}", file=sys.stderr)
        return None


def _run_graph(args: argparse.Namespace, config: Config) -> int:
    ports = _parse_ports_arg(cast(str, args.ports), "graph")
    if ports is None:
        return EXIT_USAGE
    proto = cast(str, args.proto)
    top = cast(int, args.top)

    loader = _graph_loader(
        proto,
        ports=ports,
        local_only=bool(args.local_only),
        timeout_s=config.command_timeout_s,
    )
    try:
        result = loader()
    except (UnsupportedProtocolError, SocketCollectionError) as exc:
        print(f"graph: {exc}", file=sys.stderr)
        return EXIT_FAILED

    if args.json or args.dot:
        if args.json:
            sys.stdout.write(graph_json(result.graph, result.dependencies, top=top))
        else:
            sys.stdout.write(graph_dot(result.dependencies, top=top))
        for warning in result.warnings:
            print(f"graph warning: {warning}", file=sys.stderr)
        return EXIT_OK

    sys.stdout.write(
        graph_text(result.graph, result.dependencies, result.warnings, top=top, proto=proto)
    )
    return EXIT_OK


def _run_scan(args: argparse.Namespace, config: Config) -> int:
    proto = cast(str, args.proto)
    timeout_s = config.command_timeout_s

    if args.all:
        try:
            ports = discover_listening_ports(
                proto,
                min_port=cast(int, args.min_port),
                max_port=cast(int, args.max_port),
                listener_source=functools.partial(list_listeners, timeout_s=timeout_s),
            )
        except SocketCollectionError as exc:
            print(f"scan: failed to discover ports: {exc}", file=sys.stderr)
            return EXIT_FAILED
        if not ports and not args.json:
            print(f"No {proto} listeners found in range {args.min_port}-{args.max_port}")
            return EXIT_OK
    else:
        try:
            ports = parse_port_spec(cast(str, args.ports))
        except ValueError as exc:
            print(f"scan: {exc}", file=sys.stderr)
            return EXIT_USAGE

    rows = scan_ports(
        ports,
        proto,
        concurrency=cast(int, args.concurrency),
        inspect=lambda port, p: list_listeners(p, port, timeout_s=timeout_s),
    )
    rows = filter_by_owner(rows, cast(str, args.owner))

    if args.json:
        sys.stdout.write(scan_json(proto, ports, rows))
        return EXIT_OK
    if args.all:
        in_use = sum(1 for r in rows if r.status == "in-use")
        print(f"{in_use} ports in use (discovered via --all)\n")
    sys.stdout.write(scan_table(rows))
    return EXIT_OK


def _run_lint(args: argparse.Namespace, config: Config) -> int:
    proto = cast(str, args.proto)
    protos = ("tcp", "udp") if proto == "all" else (proto,)

    listeners: list[ListenerRecord] = []
    for p in protos:
        try:
            listeners.extend(list_listeners(p, timeout_s=config.command_timeout_s))
        except SocketCollectionError as exc:
            print(f"lint: {exc}", file=sys.stderr)
            return EXIT_FAILED

    findings = lint_listeners(enrich_listeners(listeners))
    findings = filter_min_severity(findings, cast(str, args.min_severity))

    if args.json:
        sys.stdout.write(lint_json(findings))
    else:
        sys.stdout.write(lint_table(findings))
    return EXIT_FAILED if has_errors(findings) else EXIT_OK


def _run_tui(args: argparse.Namespace, config: Config) -> int:
    ports = _parse_ports_arg(cast(str, args.ports), "tui")
    if ports is None:
        return EXIT_USAGE

    from .tui import PortDepsApp

    loader = _graph_loader(
        "tcp", ports=ports, local_only=config.local_only, timeout_s=config.command_timeout_s
    )
    PortDepsApp(loader, top=cast(int, args.top)).run()
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    config = load_config()
    parser = _build_parser(config)
    try:
        args = parser.parse_args(list(argv))
    except SystemExit as e:
        return int(e.code) if isinstance(e.code, int) else EXIT_USAGE

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    command = cast(str | None, getattr(args, "command", None))
    if command is None:
        parser.print_help()
        return EXIT_OK
    if command == "graph":
        return _run_graph(args, config)
    if command == "scan":
        return _run_scan(args, config)
    if command == "lint":
        return _run_lint(args, config)
    if command == "tui":
        return _run_tui(args, config)

    parser.print_help()
    return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
