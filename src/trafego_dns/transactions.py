"""File transactions with backup/rollback and advisory lock files.

Every mutation of a durable file goes through a Transaction:

    1. acquire `<path>.lock` (exclusive create, content = epoch milliseconds)
    2. copy `<path>` to `<path>.bak.<txn>` (or write `<path>.bak.<txn>.nonexistent`)
    3. write the new content atomically (temp file + rename)

commit() removes the backup artifacts, rollback() puts them back. Both release
the locks. A lock older than LOCK_STALE_SECONDS is considered abandoned and is
reclaimed by the next caller.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from trafego_dns.errors import FileLockError, TransactionIntegrityError, TransactionStateError

logger = logging.getLogger(__name__)

LOCK_STALE_SECONDS = 5 * 60
NONEXISTENT_SUFFIX = ".nonexistent"

PathLike = Union[str, Path]


# =============================================================================
# File Helpers
# =============================================================================


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to `path` via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), "utf-8")
    tmp_path.replace(path)


def backup_path_for(path: Path, transaction_id: str) -> Path:
    return path.with_name(f"{path.name}.bak.{transaction_id}")


def marker_path_for(backup_path: Path) -> Path:
    return backup_path.with_name(backup_path.name + NONEXISTENT_SUFFIX)


# =============================================================================
# Advisory Locks
# =============================================================================


class FileLock:
    """Advisory `<path>.lock` file holding its creation time in epoch ms."""

    def __init__(self, path: PathLike, stale_after: float = LOCK_STALE_SECONDS):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.stale_after = stale_after
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if attempt == 0 and self._is_stale():
                    logger.warning(f"Found stale lock file {self.lock_path}, reclaiming")
                    self.lock_path.unlink(missing_ok=True)
                    continue
                raise FileLockError(str(self.path))
            with os.fdopen(fd, "w") as f:
                f.write(str(int(time.time() * 1000)))
            self._held = True
            return
        raise FileLockError(str(self.path))

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.lock_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error releasing lock {self.lock_path}: {e}")
        self._held = False

    def _is_stale(self) -> bool:
        try:
            created_ms = int(self.lock_path.read_text("utf-8").strip())
            age = time.time() - created_ms / 1000.0
        except FileNotFoundError:
            # Released between our create attempt and this check.
            return True
        except (OSError, ValueError):
            try:
                age = time.time() - self.lock_path.stat().st_mtime
            except OSError:
                return True
        return age > self.stale_after

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


# =============================================================================
# Transactions
# =============================================================================


@dataclass(frozen=True)
class TransactionOperation:
    target_path: Path
    backup_path: Path
    kind: str  # "write" | "delete"


class Transaction:
    """One atomic unit of file mutations. See module docstring for the protocol."""

    def __init__(self, transaction_id: str, stale_lock_seconds: float = LOCK_STALE_SECONDS):
        self.id = transaction_id
        self.operations: List[TransactionOperation] = []
        self.committed = False
        self.rolled_back = False
        self._stale_lock_seconds = stale_lock_seconds
        self._locks: Dict[Path, FileLock] = {}
        # First backup per path; later writes to the same path reuse it.
        self._backups: Dict[Path, Path] = {}
        logger.debug(f"Started transaction {self.id}")

    @property
    def finished(self) -> bool:
        return self.committed or self.rolled_back

    def write_file(self, path: PathLike, data: Any) -> None:
        """Write `data` as JSON to `path`, backing up the previous content first."""
        target = self._prepare(Path(path), "write")
        try:
            atomic_write_json(target, data)
        except Exception as e:
            logger.error(f"Transaction {self.id} write to {target} failed: {e}")
            self.rollback()
            raise

    def delete_file(self, path: PathLike) -> None:
        target = self._prepare(Path(path), "delete")
        try:
            target.unlink(missing_ok=True)
        except Exception as e:
            logger.error(f"Transaction {self.id} delete of {target} failed: {e}")
            self.rollback()
            raise

    def commit(self) -> None:
        self._ensure_open()
        for target, backup in self._backups.items():
            try:
                backup.unlink(missing_ok=True)
                marker_path_for(backup).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Transaction {self.id} cleanup of {backup} failed: {e}")
        self._release_locks()
        self.committed = True
        logger.debug(f"Transaction {self.id} committed ({len(self.operations)} operation(s))")

    def rollback(self) -> None:
        """Restore every touched file.

        Raises TransactionIntegrityError after the restore pass if an expected
        backup artifact was missing; all other paths are still restored.
        """
        self._ensure_open()
        missing: List[str] = []
        for target, backup in reversed(list(self._backups.items())):
            marker = marker_path_for(backup)
            try:
                if marker.exists():
                    target.unlink(missing_ok=True)
                    marker.unlink()
                elif backup.exists():
                    os.replace(backup, target)
                else:
                    missing.append(str(target))
                    logger.error(
                        f"Transaction {self.id} rollback: no backup for {target}, manual audit required"
                    )
            except OSError as e:
                missing.append(str(target))
                logger.error(f"Transaction {self.id} rollback of {target} failed: {e}")
        self._release_locks()
        self.rolled_back = True
        logger.debug(f"Transaction {self.id} rolled back")
        if missing:
            raise TransactionIntegrityError(self.id, missing)

    def _prepare(self, target: Path, kind: str) -> Path:
        self._ensure_open()
        if target not in self._locks:
            lock = FileLock(target, stale_after=self._stale_lock_seconds)
            lock.acquire()
            self._locks[target] = lock
        backup = self._backups.get(target)
        if backup is None:
            backup = self._backup(target)
            self._backups[target] = backup
        self.operations.append(TransactionOperation(target, backup, kind))
        return target

    def _backup(self, target: Path) -> Path:
        backup = backup_path_for(target, self.id)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            shutil.copy2(target, backup)
            logger.debug(f"Transaction {self.id} backed up {target}")
        else:
            marker_path_for(backup).write_text(json.dumps({"_nonexistent": True}), "utf-8")
            logger.debug(f"Transaction {self.id} marked {target} as nonexistent")
        return backup

    def _ensure_open(self) -> None:
        if self.committed:
            raise TransactionStateError(f"Transaction {self.id} already committed")
        if self.rolled_back:
            raise TransactionStateError(f"Transaction {self.id} already rolled back")

    def _release_locks(self) -> None:
        for lock in self._locks.values():
            lock.release()
        self._locks = {}

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.finished:
            return False
        if exc_type is None:
            self.commit()
            return False
        try:
            self.rollback()
        except TransactionIntegrityError as e:
            logger.error(f"{e}")
        return False


class TransactionManager:
    """Hands out transactions with process-unique ids."""

    def __init__(self, stale_lock_seconds: float = LOCK_STALE_SECONDS):
        self.stale_lock_seconds = stale_lock_seconds
        self._counter = itertools.count()

    def begin(self) -> Transaction:
        return Transaction(f"{os.getpid()}-{next(self._counter)}", self.stale_lock_seconds)

    def recover(self, directory: PathLike) -> List[Path]:
        """Undo transactions a crashed process left behind in `directory`.

        Leftover backups mean the owning transaction never committed, so the
        target is restored from them and its lock file removed. Returns the
        restored target paths.
        """
        base = Path(directory)
        if not base.is_dir():
            return []

        restored: List[Path] = []
        for artifact in sorted(base.iterdir()):
            name = artifact.name
            if ".bak." not in name or not artifact.is_file():
                continue
            target = artifact.with_name(name.rsplit(".bak.", 1)[0])
            if name.endswith(NONEXISTENT_SUFFIX):
                logger.warning(f"Recovering {target}: removing file created by unfinished transaction")
                target.unlink(missing_ok=True)
                artifact.unlink(missing_ok=True)
            else:
                logger.warning(f"Recovering {target} from {artifact.name}")
                os.replace(artifact, target)
            # The crashed owner never released its lock.
            FileLock(target).lock_path.unlink(missing_ok=True)
            restored.append(target)

        for tmp in base.glob("*.tmp"):
            tmp.unlink(missing_ok=True)
        return restored


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON file, returning None when it does not exist."""
    try:
        return json.loads(path.read_text("utf-8"))
    except FileNotFoundError:
        return None
