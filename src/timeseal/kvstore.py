"""
Durable key-value storage for credentials and pending markers.

Consistency granularity is a single key: every operation, including
``compare_and_swap``, is atomic with respect to other operations on the
same store. Values are strings (callers store JSON text).

Backends:
- MemoryKeyValueStore: process-local, for tests and ephemeral use
- FileKeyValueStore: one JSON file guarded by an OS file lock, written
  atomically (temp file + rename) so a crash never leaves a torn file
"""

import json
import os
import sys
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

from .errors import InputValidation, MarkerStoreConflict
from .logging import get_logger

logger = get_logger()

if sys.platform != "win32":
    import fcntl
else:
    fcntl = None


class FileLockTimeout(MarkerStoreConflict):
    """Raised when lock acquisition times out."""
    code = "STORE_LOCK_TIMEOUT"


class FileLock:
    """
    Exclusive advisory lock on a companion ``.lock`` file.

    Uses fcntl.flock() where available, otherwise an O_EXCL lock file.

    Usage:
        with FileLock(path):
            ...
    """

    LOCK_SUFFIX = ".lock"

    def __init__(self, path: Path, timeout: float = 10.0, poll_interval: float = 0.05):
        self.path = Path(str(path) + self.LOCK_SUFFIX)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._file = None
        self._owns_lock_file = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start_time = time.time()
        while True:
            if self._try_acquire():
                return
            if time.time() - start_time >= self.timeout:
                if self._file is not None:
                    self._file.close()
                    self._file = None
                raise FileLockTimeout(
                    f"Could not acquire lock on {self.path} within {self.timeout}s",
                    path=str(self.path), timeout=self.timeout,
                )
            time.sleep(self.poll_interval)

    def _try_acquire(self) -> bool:
        if fcntl is not None:
            if self._file is None:
                self._file = open(self.path, "a+")
            try:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return True
            except OSError:
                return False
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        os.write(fd, str(os.getpid()).encode())
        os.close(fd)
        self._owns_lock_file = True
        return True

    def release(self) -> None:
        if self._file is not None:
            try:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
            finally:
                self._file.close()
                self._file = None
        elif self._owns_lock_file:
            os.unlink(self.path)
            self._owns_lock_file = False


class DurableKeyValueStore(ABC):
    """
    Abstract durable key-value store.

    Implementations must make each method atomic per store.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value for ``key`` or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if it existed."""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        pass

    @abstractmethod
    def compare_and_swap(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        """
        Replace the value of ``key`` only if it currently equals ``expected``.

        Args:
            key: Key to update
            expected: Value the caller last read (None means "absent")
            new: Replacement value (None deletes the key)

        Returns:
            True if the swap happened, False if the current value differed
        """
        pass

    def get_json(self, key: str) -> Optional[object]:
        raw = self.get(key)
        return json.loads(raw) if raw is not None else None

    def set_json(self, key: str, value: object) -> None:
        self.set(key, json.dumps(value, sort_keys=True))


def _check_key(key: str) -> None:
    if not isinstance(key, str) or not key:
        raise InputValidation("Store keys must be non-empty strings", field="key")


class MemoryKeyValueStore(DurableKeyValueStore):
    """In-memory store (not durable across processes)."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        _check_key(key)
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def compare_and_swap(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        _check_key(key)
        with self._lock:
            if self._data.get(key) != expected:
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._data[key] = new
            return True


class FileKeyValueStore(DurableKeyValueStore):
    """
    JSON-file-backed store.

    Every operation takes the file lock, so separate processes sharing the
    file see single-key atomicity too.
    """

    def __init__(self, path: Path, lock_timeout: float = 10.0):
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self._thread_lock = threading.Lock()

    @contextmanager
    def _locked(self):
        with self._thread_lock, FileLock(self.path, timeout=self.lock_timeout):
            yield

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            text = f.read()
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InputValidation(f"Corrupted store file {self.path}: {e}", field="path")
        if not isinstance(data, dict):
            raise InputValidation(f"Store file {self.path} is not a JSON object", field="path")
        return data

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._locked():
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        _check_key(key)
        with self._locked():
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> bool:
        with self._locked():
            data = self._read()
            if key not in data:
                return False
            del data[key]
            self._write(data)
            return True

    def keys(self, prefix: str = "") -> List[str]:
        with self._locked():
            return sorted(k for k in self._read() if k.startswith(prefix))

    def compare_and_swap(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        _check_key(key)
        with self._locked():
            data = self._read()
            if data.get(key) != expected:
                logger.debug("Compare-and-swap lost", key=key)
                return False
            if new is None:
                data.pop(key, None)
            else:
                data[key] = new
            self._write(data)
            return True
