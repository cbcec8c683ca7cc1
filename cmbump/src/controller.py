from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from cmbump.src.errors import FatalWatchError
from cmbump.src.metrics import METRICS
from cmbump.src.selector import LabelSelector
from cmbump.src.store import ConfigObject, ContentStore, config_object_from_configmap

WATCH_TIMEOUT_SECONDS = 30
# Client-side read deadlines; a silently dropped connection surfaces as a timeout.
WATCH_REQUEST_TIMEOUT_SECONDS = WATCH_TIMEOUT_SECONDS + 15
LIST_REQUEST_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30
_FATAL_STATUSES = {400, 401, 403}


class WatchController:
    """Keeps a :class:`ContentStore` in line with the ConfigMaps of one namespace.

    The controller lists the ConfigMaps matching the label selector, replaces
    the store contents with that listing, and then streams watch events from
    the list's ``resourceVersion``:

    * ``ADDED`` / ``MODIFIED`` upsert the object, or drop it when its labels
      no longer match the selector;
    * ``DELETED`` drops it;
    * ``BOOKMARK`` only advances the ``resourceVersion``.

    After every store change ``on_change`` is called; it must not block. A
    watch that times out is resumed from the last seen ``resourceVersion``.
    ``410 Gone`` (the version was compacted away) triggers a fresh list that
    replaces the store, which also picks up anything missed while
    disconnected. Other errors are retried with jittered exponential backoff
    capped at 30 s, forever. ``400``/``401``/``403`` raise
    :class:`FatalWatchError` because retrying cannot fix a rejected selector
    or missing RBAC permissions.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        selector: LabelSelector,
        store: ContentStore,
        on_change: Callable[[], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.selector = selector
        self.store = store
        self.on_change = on_change
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _to_object(self, config_map: Any) -> ConfigObject | None:
        obj = config_object_from_configmap(config_map, namespace=self.namespace)
        if obj is not None and obj.namespace != self.namespace:
            self.logger.warning(
                "Ignoring ConfigMap %s/%s outside watched namespace %s",
                obj.namespace,
                obj.name,
                self.namespace,
            )
            return None
        return obj

    def list_and_replace(self) -> str | None:
        """List matching ConfigMaps, replace the store with them, and return the list's resourceVersion."""
        listing = self.core_api.list_namespaced_config_map(
            namespace=self.namespace,
            label_selector=self.selector.expression,
            _request_timeout=LIST_REQUEST_TIMEOUT_SECONDS,
        )
        objects = []
        for item in getattr(listing, "items", None) or []:
            obj = self._to_object(item)
            if obj is None or not self.selector.matches(obj.labels):
                continue
            objects.append(obj)

        self.store.replace_all(objects)
        resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)
        self.logger.info(
            "Listed %d ConfigMap(s) in %s matching %r at resourceVersion %s",
            len(objects),
            self.namespace,
            self.selector.expression,
            resource_version,
        )
        self.on_change()
        return resource_version

    def handle_event(self, event_type: str, config_map: Any) -> bool:
        """Apply a single watch event to the store.

        Returns True when the store's content changed, in which case
        ``on_change`` has been called.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return False

        obj = self._to_object(config_map)
        if obj is None:
            return False

        if event_type == "DELETED":
            changed = self.store.remove(obj.identity)
            if changed:
                self.logger.info("ConfigMap %s/%s deleted", obj.namespace, obj.name)
        elif not self.selector.matches(obj.labels):
            changed = self.store.remove(obj.identity)
            if changed:
                self.logger.info(
                    "ConfigMap %s/%s no longer matches %r",
                    obj.namespace,
                    obj.name,
                    self.selector.expression,
                )
        else:
            changed = self.store.upsert(obj)
            if changed:
                self.logger.info("ConfigMap %s/%s %s", obj.namespace, obj.name, event_type.lower())
            else:
                self.logger.debug(
                    "Ignoring %s of ConfigMap %s/%s with unchanged data",
                    event_type,
                    obj.namespace,
                    obj.name,
                )

        if changed:
            self.on_change()
        return changed

    @staticmethod
    def _error_event_status(event: dict[str, Any]) -> int | None:
        raw = event.get("raw_object")
        if isinstance(raw, dict):
            code = raw.get("code")
            return code if isinstance(code, int) else None
        return getattr(event.get("object"), "code", None)

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Main control loop: list, then watch ConfigMaps until stopped.

        Returns when the stop event is set or :meth:`request_stop` is called.
        Raises :class:`FatalWatchError` on authorization or selector errors.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        # None means the store is not known to be authoritative; list before watching.
        resource_version: str | None = None
        needs_list = True
        listed_once = False
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            if needs_list:
                try:
                    resource_version = self.list_and_replace()
                except ApiException as exc:
                    if exc.status in _FATAL_STATUSES:
                        self.ready.clear()
                        raise FatalWatchError(
                            exc.status,
                            f"Kubernetes API rejected ConfigMap list (status={exc.status}): "
                            f"{exc.reason}. Check the label selector and RBAC permissions.",
                        ) from exc
                    self.logger.exception("Kubernetes ConfigMap list failed")
                    METRICS.watch_errors_total.inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error during ConfigMap list")
                    METRICS.watch_errors_total.inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue

                if listed_once:
                    METRICS.relists_total.inc()
                listed_once = True
                needs_list = False
                self.ready.set()
                self.logger.info("Starting watch from resourceVersion %s", resource_version)

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.core_api.list_namespaced_config_map,
                    namespace=self.namespace,
                    label_selector=self.selector.expression,
                    resource_version=resource_version,
                    allow_watch_bookmarks=True,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    _request_timeout=WATCH_REQUEST_TIMEOUT_SECONDS,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    event_type = str(event.get("type", ""))
                    if event_type == "ERROR":
                        status = self._error_event_status(event)
                        raise ApiException(status=status, reason="watch ERROR event")

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_event(event_type=event_type, config_map=obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version %s expired, re-listing", resource_version)
                    needs_list = True
                    continue

                if exc.status in _FATAL_STATUSES:
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    raise FatalWatchError(
                        exc.status,
                        f"Kubernetes API rejected ConfigMap watch (status={exc.status}): "
                        f"{exc.reason}. Check the label selector and RBAC permissions.",
                    ) from exc

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
