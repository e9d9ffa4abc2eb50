"""
Exclusive access to the hardware debug probe.

The probe (ST-LINK, J-Link, ...) is the one resource that flashing and
debugging cannot share. Two layers enforce that:

1. A threading.Lock per lock directory, taken with blocking=False, so two
   threads of one process never both reach the probe.
2. A lock file created with O_CREAT|O_EXCL, holding the owner PID and the
   operation name, so two firmforge processes on the host exclude each
   other. A lock file left behind by a dead process is reclaimed; reclaimers
   take probe.lock.reclaim (also O_EXCL) first, so only one of them can
   remove the stale file.

A held lock is never waited on: the second caller gets BusyError at once.
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterator, Optional

import psutil

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "probe.lock"
RECLAIM_FILE_NAME = "probe.lock.reclaim"

# Host-wide, so every project on this machine shares the one probe
DEFAULT_LOCK_DIR = Path.home() / ".firmforge" / "locks"

# A lock file younger than this may still be being written by its owner
_FRESH_LOCK_SECONDS = 2.0

_registry_lock = threading.Lock()
_thread_locks: Dict[str, threading.Lock] = {}


def _thread_lock_for(lock_file: Path) -> threading.Lock:
    """Get or create the in-process lock shared by every ProbeLock on lock_file."""
    key = os.path.normcase(str(lock_file.resolve()))
    with _registry_lock:
        if key not in _thread_locks:
            _thread_locks[key] = threading.Lock()
        return _thread_locks[key]


def _create_exclusive(path: Path, payload: str) -> bool:
    """Create path with payload unless it already exists."""
    try:
        fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(payload)
    return True


@dataclass
class LockHolder:
    """Owner of the probe lock.

    Attributes:
        pid: Process holding the lock
        operation: What the probe is being used for ('deploy', 'debug')
        acquired_at: Unix timestamp when the lock was taken
    """

    pid: int
    operation: str
    acquired_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LockHolder":
        return cls(
            pid=int(data["pid"]),
            operation=str(data.get("operation", "unknown")),
            acquired_at=float(data.get("acquired_at", 0.0)),
        )

    def __str__(self) -> str:
        return f"{self.operation} (PID {self.pid})"


class BusyError(Exception):
    """The probe is held by another operation."""

    def __init__(self, message: str, holder: Optional[LockHolder] = None):
        super().__init__(message)
        self.holder = holder


class ResourceBusyError(BusyError):
    """A debug session could not get the probe."""

    pass


class ProbeLock:
    """
    Non-blocking mutual exclusion over the hardware probe.

    Every ProbeLock created for the same lock directory shares one exclusion
    domain, within the process and across processes on the host.

    Example usage:
        lock = ProbeLock(build_dir)
        with lock.hold("deploy"):
            flash_the_device()
    """

    def __init__(self, lock_dir: Path):
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.lock_dir / LOCK_FILE_NAME
        self._thread_lock = _thread_lock_for(self.lock_file)
        self._holder: Optional[LockHolder] = None

    @property
    def locked(self) -> bool:
        """True while any operation (here or in another process) holds the probe."""
        return self.holder() is not None

    def holder(self) -> Optional[LockHolder]:
        """Current holder of the probe, or None when it is free."""
        if self._holder is not None:
            return self._holder
        holder = self._read_lock_file()
        if holder is not None and not psutil.pid_exists(holder.pid):
            return None
        return holder

    def acquire(self, operation: str, error_class: type = BusyError) -> LockHolder:
        """
        Take the probe lock without waiting.

        Args:
            operation: Name recorded as the holder ('deploy', 'debug')
            error_class: BusyError subclass raised when the probe is held

        Returns:
            The LockHolder now owning the probe

        Raises:
            BusyError: If the probe is already held (error_class instance)
        """
        if not self._thread_lock.acquire(blocking=False):
            holder = self._holder or self._read_lock_file()
            raise error_class(self._busy_message(operation, holder), holder)

        try:
            holder = self._claim_lock_file(operation, error_class)
        except BaseException:
            self._thread_lock.release()
            raise

        self._holder = holder
        logger.info(f"Probe lock acquired for {holder}")
        return holder

    def release(self) -> None:
        """Release the probe lock held by this object. Releasing a free lock is a no-op."""
        if self._holder is None:
            return
        holder = self._holder
        self._holder = None
        try:
            current = self._read_lock_file()
            if current is not None and current.pid == holder.pid:
                self.lock_file.unlink(missing_ok=True)
        finally:
            self._thread_lock.release()
        logger.info(f"Probe lock released by {holder}")

    @contextmanager
    def hold(self, operation: str, error_class: type = BusyError) -> Iterator[LockHolder]:
        holder = self.acquire(operation, error_class)
        try:
            yield holder
        finally:
            self.release()

    def _claim_lock_file(self, operation: str, error_class: type) -> LockHolder:
        holder = LockHolder(pid=os.getpid(), operation=operation)
        payload = json.dumps(holder.to_dict())

        # Second attempt only happens after a stale lock file was removed
        for _attempt in range(2):
            if _create_exclusive(self.lock_file, payload):
                return holder
            existing = self._read_lock_file()
            if not self._is_stale(existing) or not self._reclaim_stale_lock():
                raise error_class(self._busy_message(operation, existing), existing)

        existing = self._read_lock_file()
        raise error_class(self._busy_message(operation, existing), existing)

    def _reclaim_stale_lock(self) -> bool:
        """
        Remove the lock file if it is still stale.

        Reclaimers serialize on a second O_EXCL file and check staleness
        again while holding it. Without that, one process could remove the
        lock another has just created in place of the stale one.

        Returns:
            False if another process is reclaiming right now
        """
        guard = self.lock_dir / RECLAIM_FILE_NAME
        if not _create_exclusive(guard, str(os.getpid())):
            if not self._reclaim_guard_abandoned(guard):
                return False
            guard.unlink(missing_ok=True)
            if not _create_exclusive(guard, str(os.getpid())):
                return False

        try:
            if self.lock_file.exists() and self._is_stale(self._read_lock_file()):
                logger.info(f"Removing stale probe lock file {self.lock_file}")
                self.lock_file.unlink(missing_ok=True)
        finally:
            guard.unlink(missing_ok=True)
        return True

    def _reclaim_guard_abandoned(self, guard: Path) -> bool:
        try:
            pid = int(guard.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return True
        except (OSError, ValueError):
            try:
                return time.time() - guard.stat().st_mtime > _FRESH_LOCK_SECONDS
            except FileNotFoundError:
                return True
        return not psutil.pid_exists(pid)

    def _is_stale(self, holder: Optional[LockHolder]) -> bool:
        if holder is not None:
            return not psutil.pid_exists(holder.pid)
        # Unreadable lock file: stale unless its owner may still be writing it
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > _FRESH_LOCK_SECONDS

    def _read_lock_file(self) -> Optional[LockHolder]:
        try:
            data = json.loads(self.lock_file.read_text(encoding="utf-8"))
            return LockHolder.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"Unreadable probe lock file {self.lock_file}: {e}")
            return None

    def _busy_message(self, operation: str, holder: Optional[LockHolder]) -> str:
        owner = str(holder) if holder else "another operation"
        return f"Cannot start {operation}: debug probe is busy with {owner}"
