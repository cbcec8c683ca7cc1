from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from cmbump.src.locator import ProcessLocator
from cmbump.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass
class PendingSignal:
    """State of the single debounce window.

    ``deadline`` is the monotonic time at which the coalesced signal becomes
    due, ``None`` when nothing is pending. Every trigger pushes the deadline
    to ``now + window``.
    """

    deadline: float | None = None
    triggers: int = 0

    @property
    def pending(self) -> bool:
        return self.deadline is not None

    def touch(self, now: float, window: float) -> None:
        self.deadline = now + window
        self.triggers += 1

    def due(self, now: float) -> bool:
        return self.deadline is not None and now >= self.deadline

    def clear(self) -> int:
        coalesced = self.triggers
        self.deadline = None
        self.triggers = 0
        return coalesced


class SignalDispatcher:
    """Delivers one signal per burst of filesystem changes.

    :meth:`trigger` opens or extends the debounce window; once no trigger has
    arrived for ``debounce_seconds`` the target is resolved and signalled
    exactly once. A missing target or a failed delivery is logged and the
    window is closed anyway, the next real change opens a fresh one.

    The worker thread started by :meth:`start` waits on a condition variable
    for the deadline. Tests drive :meth:`poll` directly with a fake clock.
    """

    def __init__(
        self,
        locator: ProcessLocator,
        signum: signal.Signals,
        debounce_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if debounce_seconds < 0:
            raise ValueError("debounce_seconds must be >= 0")
        self.locator = locator
        self.signum = signum
        self.debounce_seconds = debounce_seconds
        self.clock = clock
        self._pending = PendingSignal()
        self._condition = threading.Condition()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def pending(self) -> bool:
        with self._condition:
            return self._pending.pending

    def trigger(self) -> None:
        """Record that the synchronized files changed."""
        with self._condition:
            if self._pending.pending:
                METRICS.debounced_total.inc()
                LOGGER.debug("Extending pending %s dispatch by %.2fs", self.signum.name, self.debounce_seconds)
            self._pending.touch(self.clock(), self.debounce_seconds)
            self._condition.notify_all()

    def poll(self, now: float | None = None) -> bool:
        """Dispatch the pending signal if its window has elapsed.

        Returns True when a dispatch was attempted.
        """
        current = self.clock() if now is None else now
        with self._condition:
            if not self._pending.due(current):
                return False
            coalesced = self._pending.clear()
        LOGGER.info(
            "Configuration changed (%d change(s) coalesced); sending %s",
            coalesced,
            self.signum.name,
        )
        self.dispatch()
        return True

    def dispatch(self) -> bool:
        """Resolve the target and deliver the signal once. Returns True on delivery."""
        pid = self.locator.resolve()
        if pid is None:
            METRICS.target_missing_total.inc()
            LOGGER.warning(
                "No process matching %s found; skipping %s for this change",
                self.locator.describe(),
                self.signum.name,
            )
            return False

        try:
            psutil.Process(pid).send_signal(self.signum)
        except psutil.NoSuchProcess:
            METRICS.signal_failures_total.inc()
            LOGGER.warning("Process %d exited before %s could be delivered", pid, self.signum.name)
            return False
        except psutil.AccessDenied:
            METRICS.signal_failures_total.inc()
            LOGGER.error(
                "Not permitted to send %s to process %d; the sidecar may need the SYS_PTRACE "
                "capability and a shared process namespace",
                self.signum.name,
                pid,
            )
            return False

        METRICS.signals_sent_total.labels(signal=self.signum.name).inc()
        LOGGER.info("Sent %s to process %d", self.signum.name, pid)
        return True

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="signal-dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker and drop any pending window without dispatching it."""
        self._stop.set()
        with self._condition:
            dropped = self._pending.clear()
            self._condition.notify_all()
        if dropped:
            LOGGER.info("Shutting down with a pending %s; not delivering it", self.signum.name)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            with self._condition:
                deadline = self._pending.deadline
                if self._stop.is_set():
                    break
                if deadline is None:
                    self._condition.wait()
                else:
                    remaining = deadline - self.clock()
                    if remaining > 0:
                        self._condition.wait(timeout=remaining)
            if self._stop.is_set():
                break
            try:
                self.poll()
            except Exception:
                LOGGER.exception("Unexpected error while dispatching %s", self.signum.name)


class NullDispatcher:
    """Stand-in used when no signal is configured: files are synced, nobody is told."""

    pending = False

    def trigger(self) -> None:
        LOGGER.debug("Files changed; signalling is not configured")

    def poll(self, now: float | None = None) -> bool:
        return False

    def start(self) -> None:
        return None

    def stop(self, timeout: float = 5.0) -> None:
        return None
