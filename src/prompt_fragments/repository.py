"""Durable, lock-serialized access to one JSON document holding a list of records.

Every document lives in its own file and owns a sidecar ``<name>.lock`` file.
A document is guarded by two layers:

1. a reentrant thread mutex, so concurrent callers inside one process queue up;
2. an advisory ``flock`` on the sidecar, so separate processes sharing the
   data directory queue up as well (POSIX only).

Writes go to a temporary file in the same directory, are fsynced, then moved
over the target with ``os.replace``. Readers therefore see either the previous
complete document or the new complete document.
"""

from __future__ import annotations

import contextlib
import logging
import os
import stat
import sys
import tempfile
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from prompt_fragments.errors import StorageFailureError

if sys.platform == "win32":
    fcntl = None
else:
    import fcntl

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

DEFAULT_LOCK_TIMEOUT = 10.0
LOCK_POLL_INTERVAL = 0.01

# Read once at import; os.umask can only be queried by setting it.
_UMASK = os.umask(0)
os.umask(_UMASK)
DEFAULT_FILE_MODE = 0o666 & ~_UMASK


class CollectionLock:
    """Reentrant lock for one document, held across a whole read-modify-write."""

    def __init__(self, lock_path: Path, timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self._mutex = threading.RLock()
        self._depth = 0
        self._handle = None

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        deadline = time.monotonic() + self.timeout
        if not self._mutex.acquire(timeout=self.timeout):
            raise StorageFailureError(f"Timed out after {self.timeout}s waiting for lock", self.lock_path)
        try:
            if self._depth == 0:
                self._acquire_file_lock(deadline)
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0:
                    self._release_file_lock()
        finally:
            self._mutex.release()

    def _acquire_file_lock(self, deadline: float) -> None:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.lock_path, "a+b")
        except OSError as exc:
            raise StorageFailureError("Unable to open lock file", self.lock_path) from exc

        if fcntl is None:
            self._handle = handle
            return

        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise StorageFailureError(
                        f"Timed out after {self.timeout}s waiting for file lock", self.lock_path
                    ) from None
                logger.debug("waiting for file lock %s", self.lock_path)
                time.sleep(LOCK_POLL_INTERVAL)
            except OSError as exc:
                handle.close()
                raise StorageFailureError("Unable to lock", self.lock_path) from exc
        self._handle = handle

    def _release_file_lock(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            if fcntl is not None:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


def _target_mode(destination: Path) -> int:
    """Keep an existing document's permissions; new documents follow the umask."""
    try:
        return stat.S_IMODE(os.stat(destination).st_mode)
    except FileNotFoundError:
        return DEFAULT_FILE_MODE


def _fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` via temp file, fsync, and ``os.replace``."""
    destination = Path(path)
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        handle = tempfile.NamedTemporaryFile(
            "wb",
            dir=str(destination.parent),
            prefix=f".{destination.name}.",
            suffix=".tmp",
            delete=False,
        )
    except OSError as exc:
        raise StorageFailureError("Unable to create temporary file", destination) from exc

    temp_name = handle.name
    try:
        with handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_name, _target_mode(destination))
        os.replace(temp_name, destination)
        _fsync_directory(destination.parent)
    except OSError as exc:
        raise StorageFailureError("Unable to write collection", destination) from exc
    finally:
        if os.path.exists(temp_name):
            with contextlib.suppress(OSError):
                os.remove(temp_name)


class CollectionRepository(Generic[T]):
    """Read, write, and create-if-absent access to one JSON list document."""

    def __init__(
        self,
        path: Path,
        item_type: type[T],
        *,
        default_factory: Callable[[], list[T]] = list,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.path = Path(path)
        self.item_type = item_type
        self._default_factory = default_factory
        self._adapter = TypeAdapter(list[item_type])
        self._lock = CollectionLock(self.path.with_name(self.path.name + ".lock"), timeout=lock_timeout)

    def exists(self) -> bool:
        return self.path.exists()

    def locked(self) -> contextlib.AbstractContextManager[None]:
        """Hold the document lock, e.g. to group several reads and writes."""
        return self._lock.hold()

    def read(self) -> list[T]:
        """Return the persisted records, materializing the default if the file is absent."""
        with self._lock.hold():
            return self._load(materialize=True)

    def write(self, items: Sequence[T]) -> None:
        with self._lock.hold():
            self._dump(items)

    @contextlib.contextmanager
    def mutate(self) -> Iterator[list[T]]:
        """Yield the current records under the lock and persist them on clean exit.

        If the block raises, nothing is written. A missing document is not
        materialized until the block completes.
        """
        with self._lock.hold():
            items = self._load(materialize=False)
            yield items
            self._dump(items)

    def _load(self, *, materialize: bool) -> list[T]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            default = self._default_factory()
            if materialize:
                logger.debug("materializing default document %s", self.path)
                self._dump(default)
            return default
        except OSError as exc:
            raise StorageFailureError("Unable to read collection", self.path) from exc

        try:
            return self._adapter.validate_json(raw)
        except ValidationError as exc:
            raise StorageFailureError(f"Corrupt collection document ({exc.error_count()} errors)", self.path) from exc

    def _dump(self, items: Sequence[T]) -> None:
        payload = self._adapter.dump_json(list(items), indent=2) + b"\n"
        atomic_write_bytes(self.path, payload)
