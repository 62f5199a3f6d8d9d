"""
Named mutual-exclusion tokens with expiry.

Acquisition failure is not an error: it means another run holds the token
and the caller should skip this invocation. Staleness is judged by the
caller (the scheduler's health check) from the timestamps returned by
``list_active``.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from bema_sync.lib.db import SessionFactory, retry_on_deadlock, session_scope, utcnow
from bema_sync.lib.logging import get_logger, log_with_context
from bema_sync.models.state import SyncLock


logger = get_logger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 900


class LockManager:
    """Lock tokens stored in the ``bemacrm_locks`` table."""

    def __init__(
        self,
        session_factory: SessionFactory,
        timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def acquire(self, key: str, timeout_seconds: Optional[int] = None, owner: Optional[str] = None) -> bool:
        """
        Take the named token unless it is held and unexpired.

        Args:
            key: Lock name
            timeout_seconds: Expiry for this acquisition (defaults to the manager's)
            owner: Holder id checked by ``release(key, owner)``

        Returns:
            True if this caller now holds the lock
        """
        now = self._clock()
        expires_at = now + timedelta(seconds=timeout_seconds or self.timeout_seconds)

        try:
            with session_scope(self._session_factory) as db:
                # Expired tokens are taken over in place; the WHERE keeps it atomic
                result = db.execute(
                    update(SyncLock)
                    .where(SyncLock.key == key, SyncLock.expires_at <= now)
                    .values(acquired_at=now, expires_at=expires_at, owner=owner)
                )
                if result.rowcount == 1:
                    logger.debug(f"Lock {key} taken over from expired holder")
                    return True

                if db.get(SyncLock, key) is not None:
                    return False

                db.add(SyncLock(key=key, acquired_at=now, expires_at=expires_at, owner=owner))
                db.flush()
        except IntegrityError:
            # Another caller inserted the same key between our check and insert
            return False

        log_with_context(logger, "debug", "Lock acquired", lock=key, expires_at=expires_at.isoformat())
        return True

    @retry_on_deadlock
    def release(self, key: str, owner: Optional[str] = None) -> bool:
        """
        Clear the token. Without ``owner`` the release is forced; with it,
        only the holder that acquired the token can clear it.

        Returns:
            False when ``owner`` no longer holds the token
        """
        statement = delete(SyncLock).where(SyncLock.key == key)
        if owner is not None:
            statement = statement.where(SyncLock.owner == owner)
        with session_scope(self._session_factory) as db:
            result = db.execute(statement)
        if result.rowcount:
            logger.debug(f"Lock {key} released")
        elif owner is not None:
            log_with_context(logger, "warning", "Lock no longer held by this owner", lock=key, owner=owner)
            return False
        return True

    def is_locked(self, key: str) -> bool:
        with session_scope(self._session_factory) as db:
            lock = db.get(SyncLock, key)
            return lock is not None and lock.expires_at > self._clock()

    def list_active(self) -> List[Dict]:
        """
        All tokens currently set, including ones past their expiry.

        Returns:
            ``[{"key", "owner", "timestamp", "expires_at"}]``
        """
        with session_scope(self._session_factory) as db:
            locks = db.scalars(select(SyncLock).order_by(SyncLock.acquired_at)).all()
            return [
                {"key": lock.key, "owner": lock.owner, "timestamp": lock.acquired_at, "expires_at": lock.expires_at}
                for lock in locks
            ]
