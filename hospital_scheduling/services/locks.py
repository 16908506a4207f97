"""
Per-doctor serialization of conflict-check-and-write.

Within a process, a lock per doctor id; across processes on PostgreSQL, a
transaction-scoped advisory lock taken on the caller's session. The partial
unique index on active (doctor_id, starts_at) stays as the last line.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import ScheduleBusyError

logger = logging.getLogger(__name__)


class DoctorLockRegistry:
    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, doctor_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(doctor_id)
            if lock is None:
                lock = self._locks[doctor_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(
        self,
        doctor_ids: Iterable[str],
        db: Optional[Session] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[None]:
        """Hold every doctor's schedule lock; sorted acquisition order avoids deadlocks."""
        if timeout is None:
            timeout = self.timeout if self.timeout is not None else settings.BOOKING_LOCK_TIMEOUT_SECONDS
        ordered = sorted(set(doctor_ids))
        acquired = []
        try:
            for doctor_id in ordered:
                lock = self._lock_for(doctor_id)
                if not lock.acquire(timeout=timeout):
                    logger.warning(f"Timed out waiting for schedule lock of doctor {doctor_id}")
                    raise ScheduleBusyError(
                        "The doctor's schedule is busy, please retry",
                        details={"doctorId": doctor_id},
                    )
                acquired.append(lock)
            if db is not None:
                for doctor_id in ordered:
                    advisory_lock(db, doctor_id, timeout)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def advisory_lock(db: Session, doctor_id: str, timeout: Optional[float] = None) -> None:
    """Transaction-scoped cross-process lock; released on commit or rollback."""
    if db.get_bind().dialect.name != "postgresql":
        return
    timeout = settings.BOOKING_LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    try:
        db.execute(text(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'"))
        db.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"doctor-schedule:{doctor_id}"},
        )
    except OperationalError as exc:
        db.rollback()
        raise ScheduleBusyError(
            "The doctor's schedule is busy, please retry",
            details={"doctorId": doctor_id},
        ) from exc


doctor_locks = DoctorLockRegistry()
