from __future__ import annotations

import logging
import os
import stat
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field

from cmbump.src.metrics import METRICS
from cmbump.src.store import TEMP_PREFIX, ContentEntry, fingerprint

LOGGER = logging.getLogger(__name__)

FILE_MODE = 0o644
_MKSTEMP_ATTEMPTS = 3


class SyncError(RuntimeError):
    """Raised when an apply cycle could not be completed.

    ``result`` holds the operations that did succeed before the failure; the
    manifest already reflects them, so the next cycle only re-plans the rest.
    """

    def __init__(self, message: str, result: SyncResult) -> None:
        super().__init__(message)
        self.result = result


@dataclass(frozen=True)
class SyncPlan:
    writes: tuple[str, ...] = ()
    deletes: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.writes and not self.deletes


@dataclass
class SyncResult:
    written: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True when at least one file was written or removed."""
        return bool(self.written or self.deleted)


class FilesystemSynchronizer:
    """Materializes a desired file set into a target directory.

    The synchronizer is the only writer of ``target_dir``. It keeps a
    manifest of ``relative path -> fingerprint`` for everything it manages,
    rebuilt from disk by :meth:`load_manifest` on startup, and applies only
    the difference between that manifest and the desired state:

    * new or changed paths are written to a temporary file next to the
      destination and renamed over it, so a reader sees either the old or the
      new content, never a partial write;
    * paths no longer desired are removed and their emptied parent
      directories pruned;
    * paths whose fingerprint is unchanged are not touched at all.
    """

    def __init__(self, target_dir: str, *, fsync: bool = True) -> None:
        self.target_dir = os.path.abspath(target_dir)
        self.fsync = fsync
        self._manifest: dict[str, str] = {}

    @property
    def manifest(self) -> dict[str, str]:
        return dict(self._manifest)

    def _absolute(self, relative_path: str) -> str:
        return os.path.join(self.target_dir, *relative_path.split("/"))

    def load_manifest(self) -> dict[str, str]:
        """Scan ``target_dir`` and rebuild the manifest from the files found there.

        Leftover temporary files from an interrupted write are removed.
        Symlinks and special files are left alone and not managed.
        """
        manifest: dict[str, str] = {}
        for directory, _dirnames, filenames in os.walk(self.target_dir):
            for filename in filenames:
                absolute = os.path.join(directory, filename)
                if filename.startswith(TEMP_PREFIX):
                    LOGGER.info("Removing stale temporary file %s", absolute)
                    try:
                        os.unlink(absolute)
                    except FileNotFoundError:
                        pass
                    continue

                file_stat = os.lstat(absolute)
                if not stat.S_ISREG(file_stat.st_mode):
                    LOGGER.debug("Ignoring non-regular file %s", absolute)
                    continue

                relative = os.path.relpath(absolute, self.target_dir).replace(os.sep, "/")
                with open(absolute, "rb") as handle:
                    manifest[relative] = fingerprint(handle.read())

        self._manifest = manifest
        METRICS.managed_files.set(len(manifest))
        LOGGER.info("Found %d existing file(s) in %s", len(manifest), self.target_dir)
        return dict(manifest)

    def plan(self, desired: Mapping[str, ContentEntry]) -> SyncPlan:
        writes = tuple(
            sorted(
                path
                for path, entry in desired.items()
                if self._manifest.get(path) != entry.fingerprint
            )
        )
        deletes = tuple(sorted(path for path in self._manifest if path not in desired))
        return SyncPlan(writes=writes, deletes=deletes)

    def apply(self, desired: Mapping[str, ContentEntry]) -> SyncResult:
        """Bring ``target_dir`` in line with *desired*.

        Deletions run first so a key turning from a file into a directory (or
        back) does not trip over the old layout. Raises :class:`SyncError` on
        the first failing operation.
        """
        plan = self.plan(desired)
        result = SyncResult()
        if plan.empty:
            LOGGER.debug("Target directory %s already up to date", self.target_dir)
            return result

        try:
            for path in plan.deletes:
                self._delete(path)
                result.deleted.append(path)
            for path in plan.writes:
                self._write(path, desired[path])
                result.written.append(path)
        except OSError as exc:
            raise SyncError(
                f"Failed to synchronize {self.target_dir}: {exc}", result
            ) from exc
        finally:
            METRICS.managed_files.set(len(self._manifest))
            METRICS.files_written_total.inc(len(result.written))
            METRICS.files_deleted_total.inc(len(result.deleted))

        LOGGER.info(
            "Synchronized %s: %d written, %d deleted",
            self.target_dir,
            len(result.written),
            len(result.deleted),
        )
        return result

    def _mkstemp(self, directory: str) -> tuple[int, str]:
        """Create the parent directory and a temporary file inside it.

        Retries when the directory vanishes between ``makedirs`` and the open,
        which happens if an emptied parent is pruned at the same moment.
        """
        attempts = 0
        while True:
            attempts += 1
            os.makedirs(directory, exist_ok=True)
            try:
                return tempfile.mkstemp(dir=directory, prefix=TEMP_PREFIX, suffix=".tmp")
            except FileNotFoundError:
                if attempts >= _MKSTEMP_ATTEMPTS:
                    raise
                LOGGER.debug("Directory %s vanished while writing; recreating", directory)

    def _write(self, path: str, entry: ContentEntry) -> None:
        destination = self._absolute(path)
        fd, temp_path = self._mkstemp(os.path.dirname(destination))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(entry.content)
                handle.flush()
                if self.fsync:
                    os.fsync(handle.fileno())
            os.chmod(temp_path, FILE_MODE)
            os.replace(temp_path, destination)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise
        self._manifest[path] = entry.fingerprint
        LOGGER.debug("Wrote %s (%d bytes)", destination, len(entry.content))

    def _delete(self, path: str) -> None:
        destination = self._absolute(path)
        try:
            os.unlink(destination)
        except FileNotFoundError:
            LOGGER.debug("File %s was already gone", destination)
        self._manifest.pop(path, None)
        LOGGER.debug("Deleted %s", destination)
        self._prune_empty_parents(os.path.dirname(destination))

    def _prune_empty_parents(self, directory: str) -> None:
        while directory != self.target_dir and directory.startswith(self.target_dir + os.sep):
            try:
                os.rmdir(directory)
            except OSError:
                return
            LOGGER.debug("Removed empty directory %s", directory)
            directory = os.path.dirname(directory)
