from __future__ import annotations

import base64
import binascii
import logging
import posixpath
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from hashlib import sha256
from types import MappingProxyType
from typing import Any

from cmbump.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

TEMP_PREFIX = ".cmbump-"

Identity = tuple[str, str]


def fingerprint(content: bytes) -> str:
    """Return the SHA-256 hex digest used to detect real content changes.

    The control plane bumps ``resourceVersion`` on every mutation, including
    label and annotation edits, so content is compared by digest instead.
    """
    return sha256(content).hexdigest()


@dataclass(frozen=True)
class ContentEntry:
    key: str
    fingerprint: str
    content: bytes

    @classmethod
    def from_content(cls, key: str, content: bytes) -> ContentEntry:
        return cls(key=key, fingerprint=fingerprint(content), content=content)


@dataclass(frozen=True)
class ConfigObject:
    """A ConfigMap reduced to what the synchronizer needs.

    ``entries`` preserves the key order of the source object. Instances are
    treated as read-only once built.
    """

    namespace: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    entries: Mapping[str, ContentEntry] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def identity(self) -> Identity:
        return (self.namespace, self.name)

    @classmethod
    def build(
        cls,
        namespace: str,
        name: str,
        files: Mapping[str, bytes],
        labels: Mapping[str, str] | None = None,
        resource_version: str | None = None,
    ) -> ConfigObject:
        entries = {key: ContentEntry.from_content(key, content) for key, content in files.items()}
        return cls(
            namespace=namespace,
            name=name,
            labels=MappingProxyType(dict(labels or {})),
            entries=MappingProxyType(entries),
            resource_version=resource_version,
        )

    def fingerprints(self) -> dict[str, str]:
        return {key: entry.fingerprint for key, entry in self.entries.items()}


def _decode_binary(name: str, key: str, value: Any) -> bytes | None:
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(str(value), validate=True)
    except (binascii.Error, ValueError):
        LOGGER.error("Skipping binaryData key %s of ConfigMap %s: value is not valid base64", key, name)
        return None


def config_object_from_configmap(config_map: Any, namespace: str = "") -> ConfigObject | None:
    """Convert a Kubernetes ConfigMap (or anything shaped like one) into a :class:`ConfigObject`.

    ``data`` values are UTF-8 encoded byte-for-byte; ``binaryData`` values are
    base64 decoded. Kubernetes forbids a key in both maps, should one appear
    anyway the ``data`` value wins. Returns ``None`` when the object carries
    no usable metadata.
    """
    metadata = getattr(config_map, "metadata", None)
    name = getattr(metadata, "name", None)
    if metadata is None or not name:
        return None

    files: dict[str, bytes] = {}
    raw_binary = getattr(config_map, "binary_data", None)
    if isinstance(raw_binary, dict):
        for key, value in raw_binary.items():
            if not isinstance(key, str) or value is None:
                continue
            decoded = _decode_binary(name, key, value)
            if decoded is not None:
                files[key] = decoded

    raw_data = getattr(config_map, "data", None)
    if isinstance(raw_data, dict):
        for key, value in raw_data.items():
            if not isinstance(key, str):
                continue
            if key in files:
                LOGGER.warning(
                    "ConfigMap %s defines key %s in both data and binaryData; using data",
                    name,
                    key,
                )
            files[key] = ("" if value is None else str(value)).encode("utf-8")

    labels = metadata.labels if isinstance(getattr(metadata, "labels", None), dict) else {}
    return ConfigObject.build(
        namespace=getattr(metadata, "namespace", None) or namespace,
        name=name,
        files=files,
        labels=labels,
        resource_version=getattr(metadata, "resource_version", None),
    )


def safe_relative_path(key: str) -> str | None:
    """Normalize a ConfigMap key into a path relative to the target directory.

    Returns ``None`` for keys that would land outside the directory or
    collide with the synchronizer's own temporary files.
    """
    if not key or key.startswith("/") or "\\" in key or "\x00" in key:
        return None
    parts = key.split("/")
    if any(part in {"", ".", ".."} for part in parts):
        return None
    if parts[-1].startswith(TEMP_PREFIX):
        return None
    return posixpath.join(*parts)


class ContentStore:
    """Thread-safe map of ConfigMap identity to its current content.

    Mutated only by the watch controller and read by the reconcile loop
    through :meth:`snapshot`, which reduces the objects into the desired file
    set under the store lock so a diff never observes a half-applied event.
    """

    def __init__(self) -> None:
        self._objects: dict[Identity, ConfigObject] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def get(self, identity: Identity) -> ConfigObject | None:
        with self._lock:
            return self._objects.get(identity)

    def identities(self) -> list[Identity]:
        with self._lock:
            return sorted(self._objects)

    def upsert(self, obj: ConfigObject) -> bool:
        """Insert or replace *obj*; return whether its content changed."""
        with self._lock:
            previous = self._objects.get(obj.identity)
            self._objects[obj.identity] = obj
            METRICS.tracked_objects.set(len(self._objects))
        if previous is None:
            LOGGER.debug("Tracking ConfigMap %s/%s", obj.namespace, obj.name)
            return True
        return previous.fingerprints() != obj.fingerprints()

    def remove(self, identity: Identity) -> bool:
        with self._lock:
            removed = self._objects.pop(identity, None)
            METRICS.tracked_objects.set(len(self._objects))
        if removed is None:
            LOGGER.debug("Deletion of unknown ConfigMap %s/%s ignored", *identity)
            return False
        LOGGER.debug("Stopped tracking ConfigMap %s/%s", *identity)
        return True

    def replace_all(self, objects: Iterable[ConfigObject]) -> None:
        """Replace everything remembered with an authoritative listing."""
        fresh = {obj.identity: obj for obj in objects}
        with self._lock:
            dropped = set(self._objects) - set(fresh)
            self._objects = fresh
            METRICS.tracked_objects.set(len(fresh))
        for namespace, name in sorted(dropped):
            LOGGER.info("ConfigMap %s/%s disappeared while not watching", namespace, name)

    def snapshot(self) -> dict[str, ContentEntry]:
        """Reduce all live objects into a flat ``relative path -> entry`` mapping.

        Objects are visited in ``(namespace, name)`` order and the first object
        to claim a path keeps it, so key collisions resolve the same way no
        matter in which order events arrived.
        """
        with self._lock:
            objects = [self._objects[identity] for identity in sorted(self._objects)]

        desired: dict[str, ContentEntry] = {}
        owners: dict[str, Identity] = {}
        directories: dict[str, Identity] = {}
        for obj in objects:
            for key, entry in obj.entries.items():
                path = safe_relative_path(key)
                if path is None:
                    LOGGER.warning(
                        "Refusing to materialize key %r of ConfigMap %s/%s outside the target directory",
                        key,
                        obj.namespace,
                        obj.name,
                    )
                    continue
                parents = _parent_dirs(path)
                owner = owners.get(path) or directories.get(path)
                if owner is None:
                    owner = next((owners[p] for p in parents if p in owners), None)
                if owner is not None:
                    LOGGER.warning(
                        "Key %s of ConfigMap %s/%s collides with ConfigMap %s/%s; keeping the latter",
                        key,
                        obj.namespace,
                        obj.name,
                        owner[0],
                        owner[1],
                    )
                    continue
                owners[path] = obj.identity
                for parent in parents:
                    directories.setdefault(parent, obj.identity)
                desired[path] = entry
        return desired


def _parent_dirs(path: str) -> list[str]:
    parts = path.split("/")[:-1]
    return ["/".join(parts[: index + 1]) for index in range(len(parts))]
