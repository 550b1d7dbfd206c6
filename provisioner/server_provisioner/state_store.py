"""
state_store.py — persistent step state for one installation root
----------------------------------------------------------------
Keeps step id -> StepRecord in a single JSON file. Writes are atomic
(temp file, fsync, rename) so a crash mid-write leaves the previous state
intact. Mutation requires the single-writer lock, an fcntl lock on a
sibling ".lock" file, so two runs can never operate on the same root.
"""

from __future__ import annotations

import fcntl
import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from pydantic import ValidationError

from .errors import InvalidTransition, LockHeld, ProvisionError
from .logging_setup import get_logger
from .models import StateFile, StepRecord, StepStatus, utcnow

log = get_logger("provision.state")

S = StepStatus

# (from, to) edges allowed by transition(); Failed -> Running is further
# bounded by the retry budget.
_ALLOWED = {
    (S.PENDING, S.RUNNING),
    (S.PENDING, S.COMPLETED),
    (S.RUNNING, S.COMPLETED),
    (S.RUNNING, S.FAILED),
    (S.FAILED, S.RUNNING),
    (S.FAILED, S.COMPLETED),
}


class StateStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._records: Dict[str, StepRecord] = {}
        self._mutex = threading.Lock()
        self._lock_fh = None

    # ------------------------------------------------------------------ #
    # single-writer lock
    # ------------------------------------------------------------------ #
    @property
    def is_locked(self) -> bool:
        return self._lock_fh is not None

    def acquire(self) -> None:
        """Take the single-writer lock or fail immediately with LockHeld."""
        if self._lock_fh is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.lock_path, "a+")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, OSError):
            fh.seek(0)
            holder = fh.read().strip() or "unknown"
            fh.close()
            raise LockHeld(f"State store {self.path} is locked by another run (pid {holder})")
        fh.seek(0)
        fh.truncate()
        fh.write(str(os.getpid()))
        fh.flush()
        self._lock_fh = fh
        log.debug("Acquired state lock: %s", self.lock_path)

    def release(self) -> None:
        fh, self._lock_fh = self._lock_fh, None
        if fh is None:
            return
        try:
            fh.seek(0)
            fh.truncate()
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
            log.debug("Released state lock: %s", self.lock_path)

    @contextmanager
    def locked(self) -> Iterator["StateStore"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    # ------------------------------------------------------------------ #
    # persistence
    # ------------------------------------------------------------------ #
    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Dict[str, StepRecord]:
        if not self.path.exists():
            self._records = {}
            return self.snapshot()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            state = StateFile.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            log.error("Failed to load %s: %s", self.path, e)
            raise ProvisionError(f"State file {self.path} is corrupt: {e}") from e
        self._records = dict(state.steps)
        return self.snapshot()

    def _save(self, records: Dict[str, StepRecord]) -> None:
        state = StateFile(steps=records)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(temp_path, "w", encoding="utf-8") as fh:
            fh.write(state.model_dump_json(indent=2))
            fh.flush()
            os.fsync(fh.fileno())
        temp_path.replace(self.path)

    # ------------------------------------------------------------------ #
    # records
    # ------------------------------------------------------------------ #
    def get(self, step_id: str) -> StepRecord:
        rec = self._records.get(step_id)
        return rec.model_copy() if rec is not None else StepRecord(status=S.PENDING)

    def snapshot(self) -> Dict[str, StepRecord]:
        with self._mutex:
            return {k: v.model_copy() for k, v in self._records.items()}

    def _require_lock(self) -> None:
        if self._lock_fh is None:
            raise ProvisionError(f"State store {self.path} must be locked before it is modified")

    def _commit(self, step_id: str, record: StepRecord) -> None:
        # memory only changes once the file is on disk
        records = dict(self._records)
        records[step_id] = record
        self._save(records)
        self._records = records

    def transition(
        self,
        step_id: str,
        new_status: StepStatus,
        detail: Optional[str] = None,
        *,
        max_attempts: Optional[int] = None,
    ) -> Tuple[StepRecord, StepRecord]:
        """
        Move a step to `new_status` and persist. Returns (old, new) records.

        Entering RUNNING counts an attempt. FAILED -> RUNNING requires
        attempts < max_attempts. `detail` is stored as last_error on FAILED.
        """
        new_status = StepStatus(new_status)
        with self._mutex:
            self._require_lock()
            old = self._records.get(step_id) or StepRecord(status=S.PENDING)
            if (old.status, new_status) not in _ALLOWED:
                raise InvalidTransition(step_id, old.status.value, new_status.value)
            if old.status == S.FAILED and new_status == S.RUNNING:
                if max_attempts is None or old.attempts >= max_attempts:
                    raise InvalidTransition(
                        step_id, old.status.value, new_status.value,
                        f"attempts {old.attempts} exhausted (max {max_attempts})",
                    )

            new = old.model_copy()
            new.status = new_status
            new.timestamp = utcnow()
            if new_status == S.RUNNING:
                new.attempts = old.attempts + 1
            elif new_status == S.FAILED:
                new.last_error = detail
            elif new_status == S.COMPLETED:
                new.last_error = None

            self._commit(step_id, new)
            return old, new.model_copy()

    def reset(self, step_id: str) -> Tuple[StepRecord, StepRecord]:
        """Force a step back to PENDING with a fresh attempt budget."""
        with self._mutex:
            self._require_lock()
            old = self._records.get(step_id) or StepRecord(status=S.PENDING)
            new = StepRecord(status=S.PENDING)
            self._commit(step_id, new)
            log.info("Reset step %s (was %s, attempts=%d)", step_id, old.status.value, old.attempts)
            return old, new.model_copy()
