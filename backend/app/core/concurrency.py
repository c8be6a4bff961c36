from __future__ import annotations

import logging
from contextlib import contextmanager
from threading import Lock, RLock
from typing import Callable, Iterator, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.metrics import record_ledger_conflict
from app.core.referral_errors import ConcurrencyConflict


logger = logging.getLogger(__name__)

T = TypeVar("T")

_REFERRER_LOCKS: dict[int, RLock] = {}
_REGISTRY_LOCK = Lock()


def _lock_for(referrer_id: int) -> RLock:
    with _REGISTRY_LOCK:
        lock = _REFERRER_LOCKS.get(referrer_id)
        if lock is None:
            lock = RLock()
            _REFERRER_LOCKS[referrer_id] = lock
        return lock


@contextmanager
def referrer_lock(*referrer_ids: int) -> Iterator[None]:
    """Serialize balance mutations for the given referrers within this process.

    Locks are taken in ascending id order so two callers locking the same
    pair cannot deadlock. Cross-process writers are serialized by the
    optimistic version column on ``Referrer`` instead.
    """
    ordered = sorted({rid for rid in referrer_ids if rid is not None})
    acquired: list[RLock] = []
    try:
        for rid in ordered:
            lock = _lock_for(rid)
            lock.acquire()
            acquired.append(lock)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()


def run_with_version_retry(
    db: Session,
    *,
    referrer_id: int,
    operation: str,
    fn: Callable[[], T],
) -> T:
    """Run ``fn`` and retry it from scratch when the referrer row went stale.

    ``fn`` must perform its own reads and its single commit; on a version
    conflict the session is rolled back and ``fn`` is called again.
    """
    attempts = max(int(settings.LEDGER_MAX_RETRIES), 1)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except StaleDataError:
            db.rollback()
            record_ledger_conflict(operation)
            logger.warning(
                "ledger.version_conflict",
                extra={"referrer_id": referrer_id, "operation": operation, "attempt": attempt},
            )
    raise ConcurrencyConflict(referrer_id)
