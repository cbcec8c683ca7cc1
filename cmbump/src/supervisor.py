from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

from kubernetes.client import CoreV1Api

from cmbump.src.config import SidecarConfig
from cmbump.src.controller import WatchController
from cmbump.src.dispatcher import NullDispatcher, SignalDispatcher
from cmbump.src.errors import FatalWatchError
from cmbump.src.locator import ProcessLocator
from cmbump.src.metrics import METRICS
from cmbump.src.store import ContentStore
from cmbump.src.sync import FilesystemSynchronizer, SyncError, SyncResult

LOGGER = logging.getLogger(__name__)

MAX_SYNC_RETRY_SECONDS = 30.0
MAX_RESTART_BACKOFF_SECONDS = 60.0


class Dispatcher(Protocol):
    def trigger(self) -> None: ...

    def start(self) -> None: ...

    def stop(self, timeout: float = 5.0) -> None: ...


class Reconciler:
    """Runs sync cycles on its own thread whenever the store changes.

    :meth:`request` only flags the store as dirty, so the watch thread never
    waits for disk I/O. Requests arriving while a cycle is running collapse
    into a single follow-up cycle which diffs the newest snapshot.

    A cycle that fails part-way is retried with bounded exponential backoff
    (1 s up to 30 s) even if no further watch event arrives. Files it did
    manage to change are remembered, so the signal still fires once the
    directory is consistent again.
    """

    def __init__(
        self,
        store: ContentStore,
        synchronizer: FilesystemSynchronizer,
        dispatcher: Dispatcher,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.synchronizer = synchronizer
        self.dispatcher = dispatcher
        self.clock = clock
        self.synced = threading.Event()

        self._condition = threading.Condition()
        self._requested = False
        self._retry_at: float | None = None
        self._retry_attempt = 0
        self._unsignalled_change = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def request(self) -> None:
        with self._condition:
            self._requested = True
            self._condition.notify_all()

    def reconcile_once(self) -> SyncResult | None:
        """Apply the current store snapshot to disk.

        Returns the result of a successful cycle, or ``None`` when the apply
        failed and a retry has been scheduled.
        """
        desired = self.store.snapshot()
        try:
            result = self.synchronizer.apply(desired)
        except SyncError as exc:
            METRICS.sync_errors_total.inc()
            if exc.result.changed:
                self._unsignalled_change = True
            self._schedule_retry()
            LOGGER.exception(
                "Synchronization failed after %d write(s) and %d delete(s)",
                len(exc.result.written),
                len(exc.result.deleted),
            )
            return None

        changed = result.changed or self._unsignalled_change
        self._unsignalled_change = False
        self._retry_attempt = 0
        self.synced.set()
        if changed:
            self.dispatcher.trigger()
        return result

    def _schedule_retry(self) -> None:
        self._retry_attempt += 1
        delay_seconds = min(MAX_SYNC_RETRY_SECONDS, float(2 ** (self._retry_attempt - 1)))
        with self._condition:
            self._retry_at = self.clock() + delay_seconds
            self._condition.notify_all()
        LOGGER.warning(
            "Scheduling synchronization retry attempt %d in %.1fs",
            self._retry_attempt,
            delay_seconds,
        )

    def _wait_for_work(self) -> bool:
        """Block until a cycle is requested or a retry is due. False means stop."""
        with self._condition:
            while not self._stop.is_set():
                if self._requested:
                    break
                if self._retry_at is None:
                    self._condition.wait()
                    continue
                remaining = self._retry_at - self.clock()
                if remaining <= 0:
                    break
                self._condition.wait(timeout=remaining)
            if self._stop.is_set():
                return False
            self._requested = False
            self._retry_at = None
            return True

    def _run(self) -> None:
        while self._wait_for_work():
            try:
                self.reconcile_once()
            except Exception:
                LOGGER.exception("Unexpected error during synchronization")
                METRICS.sync_errors_total.inc()
                self._schedule_retry()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        with self._condition:
            self._condition.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None


class Supervisor:
    """Wires the pipeline together and keeps the watch controller running.

    The controller runs on a daemon thread so a shutdown request is honoured
    promptly even while the watch stream is blocked on the socket. An
    unexpected controller crash is logged and the controller restarted with
    backoff (1 s up to 60 s); :class:`FatalWatchError` ends :meth:`run` with
    exit status 1. Shutdown cancels the pending debounce window without a
    final signal.
    """

    def __init__(
        self,
        controller: WatchController,
        reconciler: Reconciler,
        dispatcher: Dispatcher,
        synchronizer: FilesystemSynchronizer,
        *,
        stop_timeout_seconds: float = 5.0,
        restart_backoff_seconds: float = 1.0,
    ) -> None:
        self.controller = controller
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.synchronizer = synchronizer
        self.stop_timeout_seconds = stop_timeout_seconds
        self.restart_backoff_seconds = restart_backoff_seconds
        self._stop = threading.Event()

    @property
    def ready(self) -> threading.Event:
        return self.reconciler.synced

    def request_stop(self) -> None:
        self._stop.set()
        self.controller.request_stop()

    def _run_controller(self) -> BaseException | None:
        """Run the controller once. Returns its exception, or None after a requested stop."""
        done = threading.Event()
        outcome: list[BaseException] = []

        def _target() -> None:
            try:
                self.controller.run(stop_event=self._stop)
            except Exception as exc:
                outcome.append(exc)
            finally:
                done.set()

        thread = threading.Thread(target=_target, name="watch-controller", daemon=True)
        thread.start()
        while not done.wait(timeout=0.5):
            if self._stop.is_set():
                thread.join(timeout=self.stop_timeout_seconds)
                if thread.is_alive():
                    LOGGER.warning(
                        "Watch controller did not stop within %.1fs; abandoning it",
                        self.stop_timeout_seconds,
                    )
                return None

        if outcome:
            return outcome[0]
        if self._stop.is_set():
            return None
        return RuntimeError("Watch controller exited without a stop request")

    def run(self) -> int:
        """Run until shutdown. Returns the process exit status."""
        try:
            self.synchronizer.load_manifest()
        except OSError:
            LOGGER.exception("Cannot read target directory %s", self.synchronizer.target_dir)
            return 1

        self.dispatcher.start()
        self.reconciler.start()

        restart_backoff_seconds = self.restart_backoff_seconds
        try:
            while not self._stop.is_set():
                error = self._run_controller()
                if error is None:
                    break
                if isinstance(error, FatalWatchError):
                    LOGGER.error("%s", error)
                    return 1

                METRICS.controller_restarts_total.inc()
                LOGGER.error(
                    "Watch controller crashed; restarting in %.1fs",
                    restart_backoff_seconds,
                    exc_info=error,
                )
                self._stop.wait(timeout=restart_backoff_seconds)
                restart_backoff_seconds = min(restart_backoff_seconds * 2, MAX_RESTART_BACKOFF_SECONDS)
            return 0
        finally:
            self.controller.request_stop()
            self.dispatcher.stop()
            self.reconciler.stop()
            LOGGER.info("Supervisor stopped")


def build_supervisor(config: SidecarConfig, core_api: CoreV1Api) -> Supervisor:
    """Construct the full pipeline from a :class:`SidecarConfig`."""
    store = ContentStore()
    synchronizer = FilesystemSynchronizer(config.target_dir)

    dispatcher: Dispatcher
    if config.signalling_enabled:
        assert config.target is not None and config.signal is not None
        locator = ProcessLocator(config.target, config.parent)
        dispatcher = SignalDispatcher(locator, config.signal, config.debounce_seconds)
        LOGGER.info(
            "Will send %s to the process matching %s after %.2fs without further changes",
            config.signal.name,
            locator.describe(),
            config.debounce_seconds,
        )
    else:
        dispatcher = NullDispatcher()
        LOGGER.info("Signalling not configured; only synchronizing files")

    reconciler = Reconciler(store, synchronizer, dispatcher)
    controller = WatchController(
        core_api=core_api,
        namespace=config.namespace,
        selector=config.selector,
        store=store,
        on_change=reconciler.request,
    )
    return Supervisor(controller, reconciler, dispatcher, synchronizer)
