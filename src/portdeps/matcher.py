from __future__ import annotations

"""Attribute a connection's remote endpoint to the local listener serving it.

A listener bound to the exact address wins over wildcard listeners on the
same port. Ties in either group are reported as ambiguous instead of being
broken.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from .addresses import ips_equal, is_wildcard_ip, normalize_ip
from .model import ListenerRecord


@dataclass(frozen=True)
class ListenerMatch:
    listener: ListenerRecord | None
    ambiguous: bool = False

    @property
    def found(self) -> bool:
        return self.listener is not None


NO_MATCH = ListenerMatch(listener=None, ambiguous=False)
AMBIGUOUS = ListenerMatch(listener=None, ambiguous=True)


def match_listener(
    listeners: Sequence[ListenerRecord], remote_ip: str, remote_port: int
) -> ListenerMatch:
    if remote_port <= 0:
        return NO_MATCH
    target = normalize_ip(remote_ip)

    exact: list[ListenerRecord] = []
    wildcard: list[ListenerRecord] = []
    for listener in listeners:
        if listener.local_port != remote_port:
            continue
        if ips_equal(listener.local_ip, target):
            exact.append(listener)
        elif is_wildcard_ip(listener.local_ip):
            wildcard.append(listener)

    if len(exact) == 1:
        return ListenerMatch(listener=exact[0])
    if len(exact) > 1:
        return AMBIGUOUS
    if len(wildcard) == 1:
        return ListenerMatch(listener=wildcard[0])
    if len(wildcard) > 1:
        return AMBIGUOUS
    return NO_MATCH
