from __future__ import annotations

"""Heuristic checks over listening sockets.

Each rule looks at one listener (or, for ``IPV6_ONLY``, every listener on
the same proto/port) and yields a finding with a severity, a short summary
and, where useful, a suggested action.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from typing import Literal

from .addresses import is_wildcard_ip, normalize_ip
from .model import ListenerRecord
from .process import resolve_process, resolve_user

logger = logging.getLogger(__name__)

Severity = Literal["info", "warn", "error"]

SEVERITY_RANK: dict[str, int] = {"info": 0, "warn": 1, "warning": 1, "error": 2}

SENSITIVE_PORTS = frozenset(
    {
        5432,  # postgres
        3306,  # mysql
        6379,  # redis
        9200,  # elasticsearch
        27017,  # mongodb
        11211,  # memcached
        15672,  # rabbitmq management
        5672,  # rabbitmq
        9092,  # kafka
        2181,  # zookeeper
    }
)
DEV_PORTS = frozenset({3000, 3001, 4000, 5000, 5173, 8000, 8080, 8081, 9229})
DYNAMIC_PORT_MIN = 49152
PRIVILEGED_PORT_MAX = 1023

_NOT_SERVICES = frozenset({"ssh", "sshd", "systemd", "launchd"})
_ROOT_USERS = frozenset({"root", "0"})


@dataclass(frozen=True)
class LintFinding:
    severity: Severity
    code: str
    summary: str
    proto: str
    port: int
    local_ip: str
    pid: int = 0
    proc_name: str = ""
    user: str = ""
    details: str = ""
    action: str = ""

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self.severity]

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "severity": self.severity,
            "code": self.code,
            "summary": self.summary,
            "proto": self.proto,
            "port": self.port,
            "local_ip": self.local_ip,
        }
        if self.pid > 0:
            out["pid"] = self.pid
        for key in ("proc_name", "user", "details", "action"):
            value = getattr(self, key)
            if value:
                out[key] = value
        return out


def severity_rank(value: str) -> int:
    """Rank of a severity name; raises ValueError for unknown names."""
    key = value.strip().lower()
    if key not in SEVERITY_RANK:
        raise ValueError(f"invalid severity: {value} (info|warn|error)")
    return SEVERITY_RANK[key]


def _bind(ip: str) -> str:
    return "*" if is_wildcard_ip(ip) else normalize_ip(ip)


def _is_ipv6_only(listeners: Iterable[ListenerRecord]) -> bool:
    has_v4 = False
    has_v6 = False
    for rec in listeners:
        if ":" in normalize_ip(rec.local_ip):
            has_v6 = True
        else:
            has_v4 = True
    return has_v6 and not has_v4


def _looks_like_service(proc_name: str) -> bool:
    name = proc_name.strip().lower()
    return bool(name) and name not in _NOT_SERVICES


def _check_listener(
    rec: ListenerRecord, same_port: Sequence[ListenerRecord]
) -> list[LintFinding]:
    port = rec.local_port
    bind = _bind(rec.local_ip)

    def finding(severity: Severity, code: str, summary: str, **extra: str) -> LintFinding:
        return LintFinding(
            severity=severity,
            code=code,
            summary=summary,
            proto=rec.protocol,
            port=port,
            local_ip=bind,
            pid=rec.pid,
            proc_name=rec.proc_name,
            user=rec.user,
            **extra,
        )

    out: list[LintFinding] = []
    if rec.pid <= 0:
        out.append(
            finding("info", "NO_PID", "PID not visible (try running with sudo for full details)")
        )

    user = rec.user.strip()
    if 0 < port <= PRIVILEGED_PORT_MAX and user and user not in _ROOT_USERS:
        out.append(
            finding(
                "info",
                "PRIV_PORT",
                "Privileged port in use (<1024)",
                details="Binding to ports below 1024 typically requires root or CAP_NET_BIND_SERVICE.",
                action="If this is expected, ignore. Otherwise consider using a port >=1024.",
            )
        )

    if bind == "*":
        if port in SENSITIVE_PORTS:
            out.append(
                finding(
                    "warn",
                    "PUBLIC_SENSITIVE",
                    "Sensitive service port is publicly bound",
                    details="Listener is bound to all interfaces; this may expose the service to your network.",
                    action="Bind to 127.0.0.1/::1 or restrict with a firewall/security group.",
                )
            )
        elif port in DEV_PORTS:
            out.append(
                finding(
                    "info",
                    "PUBLIC_DEV",
                    "Dev-style port is publicly bound",
                    action="Bind to 127.0.0.1/::1 if you only need local access.",
                )
            )

    if port >= DYNAMIC_PORT_MIN and _looks_like_service(rec.proc_name):
        out.append(
            finding(
                "info",
                "DYNAMIC_RANGE",
                "Service is listening on a dynamic/ephemeral port range",
                details="Ports 49152-65535 are commonly used as ephemeral client ports (RFC 6335).",
                action="Consider using a stable registered port (1024-49151) if clients depend on it.",
            )
        )

    if rec.protocol == "tcp" and _is_ipv6_only(same_port):
        out.append(
            finding(
                "info",
                "IPV6_ONLY",
                "Port appears to be IPv6-only",
                details="Some clients might fail if they try IPv4 (127.0.0.1) and the service only listens on IPv6.",
                action="If needed, bind on 0.0.0.0/127.0.0.1 too, or enable dual-stack.",
            )
        )
    return out


def sort_findings(findings: Iterable[LintFinding]) -> list[LintFinding]:
    return sorted(findings, key=lambda f: (-f.rank, f.port, f.proto, f.code, f.local_ip, f.proc_name))


def lint_listeners(listeners: Sequence[ListenerRecord]) -> list[LintFinding]:
    """Run every rule, drop duplicate findings and return them sorted."""
    by_port: dict[tuple[str, int], list[ListenerRecord]] = {}
    for rec in listeners:
        by_port.setdefault((rec.protocol, rec.local_port), []).append(rec)

    seen: set[tuple[str, str, int, str, str]] = set()
    out: list[LintFinding] = []
    for rec in listeners:
        for f in _check_listener(rec, by_port[(rec.protocol, rec.local_port)]):
            key = (f.code, f.proto, f.port, f.local_ip, f.proc_name)
            if key in seen:
                continue
            seen.add(key)
            out.append(f)
    logger.debug("lint: %d findings over %d listeners", len(out), len(listeners))
    return sort_findings(out)


def filter_min_severity(findings: Iterable[LintFinding], min_severity: str) -> list[LintFinding]:
    floor = severity_rank(min_severity)
    return [f for f in findings if f.rank >= floor]


def has_errors(findings: Iterable[LintFinding]) -> bool:
    return any(f.rank >= SEVERITY_RANK["error"] for f in findings)


def enrich_listeners(
    listeners: Iterable[ListenerRecord],
    *,
    resolver: Callable[[int], tuple[str, str]] | None = None,
    user_resolver: Callable[[int], str] | None = None,
) -> list[ListenerRecord]:
    """Fill missing process names and owners, once per pid."""
    resolve = resolver or resolve_process
    resolve_owner = user_resolver or resolve_user
    names: dict[int, str] = {}
    users: dict[int, str] = {}
    out: list[ListenerRecord] = []
    for rec in listeners:
        if rec.pid <= 0:
            out.append(rec)
            continue
        name = rec.proc_name.strip()
        if not name:
            if rec.pid not in names:
                names[rec.pid] = resolve(rec.pid)[0].strip()
            name = names[rec.pid]
        user = rec.user.strip()
        if not user:
            if rec.pid not in users:
                users[rec.pid] = resolve_owner(rec.pid)
            user = users[rec.pid]
        out.append(replace(rec, proc_name=name, user=user))
    return out
