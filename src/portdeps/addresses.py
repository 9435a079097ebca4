from __future__ import annotations

import ipaddress
import logging
import socket
from collections.abc import Iterable

import psutil

logger = logging.getLogger(__name__)

_WILDCARDS = {"", "0.0.0.0", "::", "*"}
_LOOPBACKS = ("127.0.0.1", "::1")


def normalize_ip(value: str) -> str:
    text = value.strip()
    if "%" in text:
        # zone may follow the closing bracket: [fe80::1]%eth0
        zone_at = text.index("%")
        closing = text.find("]", zone_at)
        text = text[:zone_at] + (text[closing:] if closing >= 0 else "")
    if text.startswith("["):
        text = text[1:]
    if text.endswith("]"):
        text = text[:-1]
    if not text:
        return ""
    try:
        addr = ipaddress.ip_address(text)
    except ValueError:
        return text
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


def is_wildcard_ip(value: str) -> bool:
    return normalize_ip(value) in _WILDCARDS


def is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(normalize_ip(value))
    except ValueError:
        return False
    return True


def ips_equal(a: str, b: str) -> bool:
    return normalize_ip(a) == normalize_ip(b)


def format_ip(value: str) -> str:
    """Display form: wildcard as ``*``, IPv6 in brackets."""
    ip = normalize_ip(value)
    if ip in ("", "*"):
        return "*"
    if ":" in ip:
        return f"[{ip}]"
    return ip


def format_endpoint(value: str, port: int) -> str:
    return f"{format_ip(value)}:{int(port)}"


def _interface_addresses() -> Iterable[str]:
    for addrs in psutil.net_if_addrs().values():
        for addr in addrs:
            if addr.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            yield str(addr.address)


def local_ip_set() -> set[str]:
    out = set(_LOOPBACKS)
    try:
        for raw in _interface_addresses():
            ip = normalize_ip(raw.split("/", 1)[0])
            if ip:
                out.add(ip)
    except (OSError, psutil.Error) as exc:
        logger.debug("interface enumeration failed, using loopback only: %s", exc)
    return out


def is_local_ip(value: str, local: set[str] | frozenset[str]) -> bool:
    ip = normalize_ip(value)
    if not ip:
        return False
    return ip in local
