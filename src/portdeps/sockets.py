from __future__ import annotations

"""Socket collection through ``ss`` (Linux) and ``lsof`` (macOS).

Example lines handled by the parsers::

    LISTEN 0 4096 127.0.0.1:5432 0.0.0.0:* users:(("postgres",pid=8123,fd=7))
    postgres 8123 me 6u IPv6 0x1 0t0 TCP [::1]:5432 (LISTEN)
"""

import logging
import re
import subprocess
import sys
from dataclasses import dataclass

from .config import DEFAULT_COMMAND_TIMEOUT_S
from .model import ConnectionRecord, ListenerRecord

logger = logging.getLogger(__name__)

_SS_RE = re.compile(
    r"^(?P<state>\S+)\s+\d+\s+\d+\s+(?P<laddr>\S+)\s+(?P<raddr>\S+)\s*(?P<users>users:\(\(.*\)\))?$"
)
_USERS_PID_RE = re.compile(r"pid=(\d+)")
_USERS_PROC_RE = re.compile(r'\(\("([^"]+)"')
_LSOF_RE = re.compile(
    r"^(?P<cmd>\S+)\s+(?P<pid>\d+)\s+(?P<user>\S+)\s+.*\s(?:TCP|UDP)\s+(?P<addr>\S+)(?:\s+\((?P<state>[^)]+)\))?\s*$"
)


class SocketCollectionError(RuntimeError):
    pass


@dataclass(frozen=True)
class SSLine:
    state: str
    laddr: str
    raddr: str
    pid: int
    proc: str


@dataclass(frozen=True)
class LsofLine:
    cmd: str
    pid: int
    user: str
    addr: str
    state: str


def _parse_int(text: str) -> int:
    text = text.strip()
    return int(text) if text.isdigit() else 0


def split_lines(output: str) -> list[str]:
    text = output.strip()
    if not text:
        return []
    return text.split("\n")


def split_host_port(addr: str) -> tuple[str, int]:
    addr = addr.strip()
    if addr.startswith("["):
        idx = addr.rfind("]:")
        if idx > 0:
            return addr[1:idx], _parse_int(addr[idx + 2 :])
    if addr.startswith("*:"):
        return "", _parse_int(addr[2:])
    idx = addr.rfind(":")
    if idx < 0:
        return addr, 0
    return addr[:idx], _parse_int(addr[idx + 1 :])


def parse_users(users: str) -> tuple[int, str]:
    if not users:
        return 0, ""
    pid = 0
    proc = ""
    m = _USERS_PID_RE.search(users)
    if m:
        pid = _parse_int(m.group(1))
    m = _USERS_PROC_RE.search(users)
    if m:
        proc = m.group(1)
    return pid, proc


def parse_ss_line(line: str) -> SSLine | None:
    line = line.strip()
    if not line:
        return None
    m = _SS_RE.match(line)
    if not m:
        return None
    pid, proc = parse_users(m.group("users") or "")
    return SSLine(
        state=m.group("state").upper(),
        laddr=m.group("laddr"),
        raddr=m.group("raddr"),
        pid=pid,
        proc=proc,
    )


def parse_lsof_line(line: str) -> LsofLine | None:
    line = line.strip()
    if not line or line.startswith("COMMAND"):
        return None
    m = _LSOF_RE.match(line)
    if not m:
        return None
    pid = _parse_int(m.group("pid"))
    if pid <= 0:
        return None
    return LsofLine(
        cmd=m.group("cmd"),
        pid=pid,
        user=m.group("user"),
        addr=m.group("addr"),
        state=(m.group("state") or "").strip().upper(),
    )


def parse_lsof_addr(addr: str) -> tuple[str, int]:
    if "->" in addr:
        addr = addr[: addr.index("->")]
    return split_host_port(addr)


def parse_lsof_conn(addr: str) -> tuple[str, int, str, int]:
    parts = addr.split("->")
    if len(parts) != 2:
        lip, lp = parse_lsof_addr(addr)
        return lip, lp, "", 0
    lip, lp = split_host_port(parts[0])
    rip, rp = split_host_port(parts[1])
    return lip, lp, rip, rp


def _run(argv: list[str], *, timeout_s: float, empty_ok_codes: tuple[int, ...] = ()) -> str:
    logger.debug("running %s", " ".join(argv))
    try:
        res = subprocess.run(
            argv,
            text=True,
            capture_output=True,
            check=False,
            timeout=float(timeout_s),
        )
    except FileNotFoundError as exc:
        raise SocketCollectionError(f"{argv[0]} not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise SocketCollectionError(f"{argv[0]} timed out after {timeout_s}s") from exc
    stdout = res.stdout or ""
    if res.returncode == 0:
        return stdout
    if res.returncode in empty_ok_codes and not stdout.strip():
        return ""
    stderr = (res.stderr or "").strip()
    raise SocketCollectionError(
        f"{argv[0]} failed with return code {res.returncode}"
        + (f": {stderr}" if stderr else "")
    )


def _platform() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "darwin"
    return sys.platform


def _check_proto(proto: str, allowed: tuple[str, ...]) -> None:
    if proto not in allowed:
        raise SocketCollectionError(f"unsupported proto: {proto}")


def _listeners_from_ss(output: str, proto: str) -> list[ListenerRecord]:
    out: list[ListenerRecord] = []
    for line in split_lines(output):
        parsed = parse_ss_line(line)
        if parsed is None:
            continue
        ip, port = split_host_port(parsed.laddr)
        if port == 0:
            continue
        out.append(
            ListenerRecord(
                pid=parsed.pid,
                proc_name=parsed.proc,
                local_ip=ip,
                local_port=port,
                protocol=proto,
                state=parsed.state,
            )
        )
    return out


def _listeners_from_lsof(output: str, proto: str) -> list[ListenerRecord]:
    out: list[ListenerRecord] = []
    for line in split_lines(output):
        parsed = parse_lsof_line(line)
        if parsed is None:
            continue
        if "->" in parsed.addr:
            continue
        ip, port = parse_lsof_addr(parsed.addr)
        if port == 0:
            continue
        out.append(
            ListenerRecord(
                pid=parsed.pid,
                proc_name=parsed.cmd,
                local_ip=ip,
                local_port=port,
                protocol=proto,
                state=parsed.state or "LISTEN",
                user=parsed.user,
            )
        )
    return out


def _connections_from_ss(output: str, proto: str) -> list[ConnectionRecord]:
    out: list[ConnectionRecord] = []
    for line in split_lines(output):
        parsed = parse_ss_line(line)
        if parsed is None:
            continue
        lip, lp = split_host_port(parsed.laddr)
        rip, rp = split_host_port(parsed.raddr)
        out.append(
            ConnectionRecord(
                pid=parsed.pid,
                proc_name=parsed.proc,
                local_ip=lip,
                local_port=lp,
                remote_ip=rip.strip(),
                remote_port=rp,
                state=parsed.state,
                protocol=proto,
            )
        )
    return out


def _connections_from_lsof(output: str, proto: str) -> list[ConnectionRecord]:
    out: list[ConnectionRecord] = []
    for line in split_lines(output):
        parsed = parse_lsof_line(line)
        if parsed is None or "->" not in parsed.addr:
            continue
        lip, lp, rip, rp = parse_lsof_conn(parsed.addr)
        out.append(
            ConnectionRecord(
                pid=parsed.pid,
                proc_name=parsed.cmd,
                local_ip=lip,
                local_port=lp,
                remote_ip=rip,
                remote_port=rp,
                state=parsed.state,
                protocol=proto,
            )
        )
    return out


def list_listeners(
    proto: str,
    port: int | None = None,
    *,
    timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S,
) -> list[ListenerRecord]:
    """Listening (tcp) or bound (udp) sockets, optionally for one port."""
    _check_proto(proto, ("tcp", "udp"))
    platform = _platform()
    if platform == "linux":
        argv = ["ss", "-H", "-ltnp" if proto == "tcp" else "-lunp"]
        if port is not None:
            argv.append(f"sport = :{int(port)}")
        records = _listeners_from_ss(_run(argv, timeout_s=timeout_s), proto)
    elif platform == "darwin":
        argv = ["lsof", "-nP"]
        if proto == "tcp":
            argv.append("-iTCP" if port is None else f"-iTCP:{int(port)}")
            argv.append("-sTCP:LISTEN")
        else:
            argv.append("-iUDP" if port is None else f"-iUDP:{int(port)}")
        records = _listeners_from_lsof(
            _run(argv, timeout_s=timeout_s, empty_ok_codes=(1,)), proto
        )
    else:
        raise SocketCollectionError(f"socket listing is not supported on {platform}")
    if port is not None:
        records = [r for r in records if r.local_port == int(port)]
    logger.debug("collected %d %s listeners", len(records), proto)
    return records


def list_connections(
    proto: str, *, timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S
) -> list[ConnectionRecord]:
    _check_proto(proto, ("tcp",))
    platform = _platform()
    if platform == "linux":
        output = _run(["ss", "-H", "-tanp"], timeout_s=timeout_s)
        records = _connections_from_ss(output, proto)
    elif platform == "darwin":
        output = _run(["lsof", "-nP", "-iTCP"], timeout_s=timeout_s, empty_ok_codes=(1,))
        records = _connections_from_lsof(output, proto)
    else:
        raise SocketCollectionError(f"socket listing is not supported on {platform}")
    logger.debug("collected %d %s connections", len(records), proto)
    return records
