from __future__ import annotations

import logging

import psutil

logger = logging.getLogger(__name__)

CMDLINE_MAX_CHARS = 120


def truncate_cmdline(text: str, *, max_chars: int = CMDLINE_MAX_CHARS) -> str:
    s = text.replace("\n", " ").strip()
    if max_chars <= 0 or len(s) <= max_chars:
        return s
    if max_chars <= 3:
        return s[:max_chars]
    return s[: max_chars - 3] + "..."


def resolve_process(pid: int) -> tuple[str, str]:
    """Best-effort (name, command line) for ``pid``; empty strings on failure."""
    if pid <= 0:
        return "", ""
    try:
        proc = psutil.Process(pid)
    except psutil.Error as exc:
        logger.debug("process lookup failed for pid %d: %s", pid, exc)
        return "", ""

    name = ""
    cmdline = ""
    with proc.oneshot():
        try:
            name = proc.name()
        except psutil.Error as exc:
            logger.debug("name lookup failed for pid %d: %s", pid, exc)
        try:
            cmdline = " ".join(proc.cmdline())
        except psutil.Error as exc:
            logger.debug("cmdline lookup failed for pid %d: %s", pid, exc)
    return name.strip(), cmdline.strip()


def resolve_user(pid: int) -> str:
    if pid <= 0:
        return ""
    try:
        return psutil.Process(pid).username().strip()
    except psutil.Error as exc:
        logger.debug("user lookup failed for pid %d: %s", pid, exc)
        return ""
