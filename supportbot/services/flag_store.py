"""Durable per-user handoff flag ("automation suspended"), stored as one JSON file.

Every write is a read-modify-write performed while holding an inter-process
``flock`` on a lock file next to the state file, and lands through a temp file
+ ``os.replace`` so readers always see either the old or the new table. Reads and listings take a
single snapshot without the lock.

The on-disk keys stay camelCase (``updatedAt``, ``updatedBy``, ``displayName``)
so existing state files keep loading.
"""

import fcntl
import json
import os
import tempfile
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from supportbot.logging_config import get_logger
from supportbot.services.result import ErrorCode, Result

logger = get_logger("flag_store")

SYSTEM_ACTOR = "system"


class HandoffReason(str, Enum):
    FIRST_SEEN = "first_seen"
    USER_REQUESTED_STAFF = "user_requested_staff"
    USER_RELEASED = "user_released"
    STAFF_GROUP_POSTBACK = "staff_group_postback"
    TIMEOUT_RELEASE = "timeout_release"
    ADMIN_OVERRIDE = "admin_override"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted). None if unparsable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class HandoffRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    updated_at: str = Field(default_factory=_now_iso, alias="updatedAt")
    updated_by: Optional[str] = Field(default=None, alias="updatedBy")
    reason: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")


class LockTimeoutError(Exception):
    def __init__(self, path: Path, attempts: int):
        self.path = path
        self.attempts = attempts
        super().__init__(f"Could not acquire {path} after {attempts} attempts")


class FileLock:
    """Exclusive ``fcntl.flock`` on a lock file next to the protected resource.

    The kernel drops the lock when its holder exits, so a crashed process never
    blocks the others. Acquisition is non-blocking and retried with exponential
    backoff, giving up after ``retries`` sleeps. A holder that is alive but has
    kept the lock longer than ``stale_seconds`` (judged by the stamp it wrote on
    acquisition) is presumed wedged: its lock file is unlinked so the next
    attempt locks a fresh file. Two waiters can both judge the same holder
    wedged; see DESIGN.md.
    """

    def __init__(
        self,
        path: Union[str, Path],
        *,
        retries: int = 20,
        backoff_seconds: float = 0.05,
        max_backoff_seconds: float = 1.0,
        stale_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.stale_seconds = stale_seconds
        self._sleep = sleep
        self._clock = clock
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        delay = self.backoff_seconds
        attempt = 0
        while True:
            handle = self.path.open("a+", encoding="utf-8")
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                reclaimed = self._reclaim_if_stale(handle)
                handle.close()
                # Reclaiming a wedged holder does not use up an attempt.
                if reclaimed:
                    continue
                if attempt >= self.retries:
                    raise LockTimeoutError(self.path, attempt + 1)
                self._sleep(delay)
                delay = min(delay * 2, self.max_backoff_seconds)
                attempt += 1
                continue

            if not self._is_current(handle):
                # Locked a file that was released or reclaimed meanwhile.
                handle.close()
                continue

            handle.seek(0)
            handle.truncate(0)
            handle.write(json.dumps({"pid": os.getpid(), "acquired_at": self._clock()}))
            handle.flush()
            self._handle = handle
            return

    def _is_current(self, handle: IO[str]) -> bool:
        try:
            return os.stat(self.path).st_ino == os.fstat(handle.fileno()).st_ino
        except FileNotFoundError:
            return False

    def _reclaim_if_stale(self, handle: IO[str]) -> bool:
        age = self._clock() - os.fstat(handle.fileno()).st_mtime
        if age < self.stale_seconds or not self._is_current(handle):
            return False
        logger.warning(
            "Reclaiming lock from a wedged holder",
            extra={"context": {"path": str(self.path), "age_seconds": round(age, 3)}},
        )
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            if self._is_current(handle):
                os.unlink(self.path)
            else:
                logger.warning("Lock file replaced before release", extra={"context": {"path": str(self.path)}})
        finally:
            handle.close()

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class HandoffFlagStore:
    def __init__(
        self,
        path: Union[str, Path],
        *,
        lock_retries: int = 20,
        lock_backoff_seconds: float = 0.05,
        lock_max_backoff_seconds: float = 1.0,
        lock_stale_seconds: float = 10.0,
    ):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock_options = {
            "retries": lock_retries,
            "backoff_seconds": lock_backoff_seconds,
            "max_backoff_seconds": lock_max_backoff_seconds,
            "stale_seconds": lock_stale_seconds,
        }

    def _lock(self) -> FileLock:
        # One lock object per operation: worker threads share this store.
        return FileLock(self.lock_path, **self._lock_options)

    def _load(self) -> Dict[str, HandoffRecord]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(
                "Failed to load handoff state, falling back to empty",
                extra={"context": {"path": str(self.path), "error": str(exc)}},
            )
            return {}
        if not isinstance(data, dict):
            logger.warning("Handoff state is not an object, falling back to empty", extra={"context": {"path": str(self.path)}})
            return {}

        records: Dict[str, HandoffRecord] = {}
        for user_id, payload in data.items():
            try:
                records[user_id] = HandoffRecord.model_validate(payload)
            except ValidationError as exc:
                logger.warning(
                    "Skipping malformed handoff record",
                    extra={"context": {"user_id": user_id, "error": str(exc)}},
                )
        return records

    def _save(self, records: Dict[str, HandoffRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            user_id: record.model_dump(by_alias=True, exclude_none=True) for user_id, record in records.items()
        }
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def read(self, user_id: Optional[str]) -> Optional[HandoffRecord]:
        if not user_id:
            return None
        return self._load().get(user_id)

    def is_enabled(self, user_id: Optional[str]) -> bool:
        record = self.read(user_id)
        return bool(record and record.enabled)

    def display_name(self, user_id: Optional[str]) -> Optional[str]:
        record = self.read(user_id)
        return record.display_name if record and record.display_name else None

    def write(
        self,
        user_id: Optional[str],
        *,
        enabled: Optional[bool] = None,
        updated_by: Optional[str] = None,
        reason: Optional[Union[HandoffReason, str]] = None,
        display_name: Optional[str] = None,
        guard: Optional[Callable[[Optional[HandoffRecord]], None]] = None,
    ) -> Result[HandoffRecord]:
        """Merge the given fields over the stored record and persist it.

        ``guard`` is called under the lock with the stored record (or None) before
        the merge; an exception it raises aborts the write and propagates.
        """
        if not user_id:
            return Result.failure("user_id is required", ErrorCode.MISSING_USER_ID)

        patch = {
            "enabled": enabled,
            "updated_by": updated_by,
            "reason": reason.value if isinstance(reason, HandoffReason) else reason,
            "display_name": display_name,
        }
        patch = {key: value for key, value in patch.items() if value is not None}

        def _build(previous: Optional[HandoffRecord]) -> HandoffRecord:
            if guard is not None:
                guard(previous)
            return self._merge(previous, patch)

        return self._locked_update(user_id, _build)

    def ensure(self, user_id: Optional[str], display_name: Optional[str] = None) -> Result[HandoffRecord]:
        """Create a disabled record for a first-seen user; existing records are returned untouched."""
        if not user_id:
            return Result.failure("user_id is required", ErrorCode.MISSING_USER_ID)

        def _create(previous: Optional[HandoffRecord]) -> Optional[HandoffRecord]:
            if previous is not None:
                return None
            return HandoffRecord(
                enabled=False,
                updated_by=SYSTEM_ACTOR,
                reason=HandoffReason.FIRST_SEEN.value,
                display_name=display_name,
            )

        return self._locked_update(user_id, _create)

    @staticmethod
    def _merge(previous: Optional[HandoffRecord], patch: dict) -> HandoffRecord:
        base = previous.model_dump() if previous else {}
        base.update(patch)
        base["updated_at"] = _now_iso()
        return HandoffRecord(**base)

    def _locked_update(
        self,
        user_id: str,
        build: Callable[[Optional[HandoffRecord]], Optional[HandoffRecord]],
    ) -> Result[HandoffRecord]:
        try:
            with self._lock():
                records = self._load()
                previous = records.get(user_id)
                record = build(previous)
                if record is None:
                    return Result.success(previous)
                records[user_id] = record
                self._save(records)
                return Result.success(record)
        except LockTimeoutError as exc:
            logger.warning(
                "Handoff state lock not acquired",
                extra={"context": {"user_id": user_id, "error": str(exc)}},
            )
            return Result.failure(str(exc), ErrorCode.LOCK_TIMEOUT)
        except OSError as exc:
            logger.error(
                "Failed to persist handoff state",
                extra={"context": {"user_id": user_id, "error": str(exc)}},
            )
            return Result.failure(str(exc), ErrorCode.STORAGE_ERROR)

    def list_all(self) -> List[Tuple[str, HandoffRecord]]:
        return list(self._load().items())

    def list_enabled(self) -> List[Tuple[str, HandoffRecord]]:
        return [(user_id, record) for user_id, record in self.list_all() if record.enabled]

    def list_disabled(self) -> List[Tuple[str, HandoffRecord]]:
        return [(user_id, record) for user_id, record in self.list_all() if not record.enabled]
