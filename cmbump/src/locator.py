from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass

import psutil

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessDetection:
    """How to identify a process: a fixed PID or a command-line pattern."""

    pid: int | None = None
    pattern: re.Pattern[str] | None = None

    def __post_init__(self) -> None:
        if (self.pid is None) == (self.pattern is None):
            raise ValueError("ProcessDetection needs exactly one of pid or pattern")

    def describe(self) -> str:
        if self.pid is not None:
            return f"pid={self.pid}"
        assert self.pattern is not None
        return f"cmdline=~{self.pattern.pattern!r}"


def format_cmdline(cmdline: list[str] | None) -> str:
    """Join argv the way ``/proc/<pid>/cmdline`` reads with NULs turned into spaces."""
    if not cmdline:
        return ""
    return " ".join(cmdline).strip()


class ProcessLocator:
    """Resolves the PID of the process to signal.

    A fixed PID is returned as-is without touching the process table; the
    payload is often ``exec``'d into a PID known upfront. Otherwise the
    process table is scanned for command lines matching the pattern
    (``re.search``, case-sensitive), optionally restricted to children of a
    parent process that is itself detected by PID or pattern.

    When several processes match, the lowest PID is chosen. The table is
    scanned afresh on every call.
    """

    def __init__(
        self,
        target: ProcessDetection,
        parent: ProcessDetection | None = None,
        *,
        self_pid: int | None = None,
    ) -> None:
        self.target = target
        self.parent = parent
        self.self_pid = os.getpid() if self_pid is None else self_pid

    def describe(self) -> str:
        if self.parent is None or self.target.pid is not None:
            return self.target.describe()
        return f"{self.target.describe()} (parent {self.parent.describe()})"

    def resolve(self) -> int | None:
        """Return the PID to signal, or ``None`` when no process matches right now."""
        if self.target.pid is not None:
            return self.target.pid

        parent_pid: int | None = None
        if self.parent is not None:
            parent_pid = self._resolve_parent()
            if parent_pid is None:
                LOGGER.info("No parent process matching %s is running", self.parent.describe())
                return None

        assert self.target.pattern is not None
        pid = self._select(self.target.pattern, parent_pid, "target")
        if pid is None:
            LOGGER.info("No process matching %s is running", self.describe())
        return pid

    def _resolve_parent(self) -> int | None:
        assert self.parent is not None
        if self.parent.pid is not None:
            # PID 0 is the parent of a container's init process; it never shows up
            # in the process table but is a valid PPID to match against.
            if self.parent.pid == 0 or psutil.pid_exists(self.parent.pid):
                return self.parent.pid
            return None

        assert self.parent.pattern is not None
        return self._select(self.parent.pattern, None, "parent")

    def _select(self, pattern: re.Pattern[str], parent_pid: int | None, role: str) -> int | None:
        candidates = self.scan(pattern, parent_pid)
        if not candidates:
            return None
        if len(candidates) > 1:
            LOGGER.warning(
                "%d processes match the %s pattern %r (%s); choosing the lowest PID %d",
                len(candidates),
                role,
                pattern.pattern,
                ", ".join(str(pid) for pid in candidates),
                candidates[0],
            )
        else:
            LOGGER.debug("Resolved %s process %d for pattern %r", role, candidates[0], pattern.pattern)
        return candidates[0]

    def scan(self, pattern: re.Pattern[str], parent_pid: int | None = None) -> list[int]:
        """Return the sorted PIDs whose command line matches *pattern*.

        Processes that exit mid-scan or whose command line is unreadable
        (kernel threads, zombies, permission denied) are skipped. The
        sidecar's own process is never a candidate.
        """
        matches: list[int] = []
        for proc in psutil.process_iter(["pid", "ppid", "cmdline"]):
            info = proc.info
            pid = info.get("pid")
            if pid is None or pid == self.self_pid:
                continue
            if parent_pid is not None and info.get("ppid") != parent_pid:
                continue
            cmdline = format_cmdline(info.get("cmdline"))
            if cmdline and pattern.search(cmdline):
                matches.append(pid)
        return sorted(matches)
