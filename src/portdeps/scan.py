from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Literal

from .addresses import format_endpoint
from .config import MAX_SCAN_CONCURRENCY, default_concurrency
from .model import ListenerRecord
from .sockets import list_listeners

logger = logging.getLogger(__name__)

ScanStatus = Literal["free", "in-use", "unknown", "error"]
PortInspector = Callable[[int, str], list[ListenerRecord]]


@dataclass(frozen=True)
class ScanRow:
    port: int
    proto: str
    status: ScanStatus
    owner: str = ""
    pid: int = 0
    addr: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"port": self.port, "proto": self.proto, "status": self.status}
        if self.owner:
            out["owner"] = self.owner
        if self.pid:
            out["pid"] = self.pid
        if self.addr:
            out["addr"] = self.addr
        if self.error:
            out["error"] = self.error
        return out


def parse_port_spec(spec: str) -> list[int]:
    """Parse ``"5432,6379,3000-3010"`` into sorted unique ports."""
    ports: set[int] = set()
    for raw in spec.split(","):
        token = raw.strip()
        if not token:
            continue
        if "-" in token:
            lo_raw, hi_raw = (part.strip() for part in token.split("-", 1))
            if not (lo_raw.isdigit() and hi_raw.isdigit()):
                raise ValueError(f"invalid port range: {token}")
            lo, hi = int(lo_raw), int(hi_raw)
            if lo > hi:
                raise ValueError(f"invalid port range: {token}")
            candidates = range(lo, hi + 1)
        else:
            if not token.isdigit():
                raise ValueError(f"invalid port: {token}")
            candidates = range(int(token), int(token) + 1)
        for port in candidates:
            if not 1 <= port <= 65535:
                raise ValueError(f"port out of range: {port}")
            ports.add(port)
    if not ports:
        raise ValueError("empty port list")
    return sorted(ports)


def _inspect_port(port: int, proto: str) -> list[ListenerRecord]:
    return list_listeners(proto, port)


def _owner(listener: ListenerRecord) -> str:
    if not listener.proc_name and listener.pid > 0:
        return f"pid:{listener.pid}"
    if listener.user:
        return f"{listener.proc_name} ({listener.user})"
    return listener.proc_name


def classify_port(port: int, proto: str, listeners: Sequence[ListenerRecord]) -> ScanRow:
    owned = [rec for rec in listeners if rec.pid > 0]
    if owned:
        primary = sorted(owned, key=lambda rec: (rec.pid, rec.local_ip))[0]
        return ScanRow(
            port=port,
            proto=proto,
            status="in-use",
            owner=_owner(primary),
            pid=primary.pid,
            addr=format_endpoint(primary.local_ip, primary.local_port),
        )
    if listeners:
        return ScanRow(port=port, proto=proto, status="unknown")
    return ScanRow(port=port, proto=proto, status="free")


def scan_ports(
    ports: Sequence[int],
    proto: str,
    *,
    concurrency: int = 0,
    inspect: PortInspector = _inspect_port,
) -> list[ScanRow]:
    """Inspect each port on a bounded worker pool; rows come back sorted by port."""
    workers = concurrency if concurrency > 0 else default_concurrency()
    workers = max(1, min(MAX_SCAN_CONCURRENCY, workers))
    rows: list[ScanRow] = []
    lock = threading.Lock()

    def worker(port: int) -> None:
        try:
            row = classify_port(port, proto, inspect(port, proto))
        except Exception as exc:
            logger.debug("inspection of port %d failed: %s", port, exc)
            row = ScanRow(port=port, proto=proto, status="error", error=str(exc))
        with lock:
            rows.append(row)

    logger.debug("scanning %d %s ports with %d workers", len(ports), proto, workers)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        for _ in executor.map(worker, ports):
            pass
    return sorted(rows, key=lambda r: r.port)


def discover_listening_ports(
    proto: str,
    *,
    min_port: int = 0,
    max_port: int = 65535,
    listener_source: Callable[[str], list[ListenerRecord]] = list_listeners,
) -> list[int]:
    found = {
        rec.local_port
        for rec in listener_source(proto)
        if min_port <= rec.local_port <= max_port
    }
    return sorted(found)


def filter_by_owner(rows: Sequence[ScanRow], owner: str) -> list[ScanRow]:
    needle = owner.strip().lower()
    if not needle:
        return list(rows)
    return [r for r in rows if needle in r.owner.lower()]
