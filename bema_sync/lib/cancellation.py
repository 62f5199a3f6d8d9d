"""
Cooperative cancellation.

Every run gets a fresh token keyed by its job id, so a new run can never
clear a stop signal that an older run has not observed yet. A token is set
in memory for the current process and mirrored to the state store
(``sync_stop:<job_id>``) so a stop requested from another process is still
observed at the next chunk boundary.
"""
import threading
from typing import Dict, Iterable, List, Optional

from bema_sync.lib.logging import get_logger
from bema_sync.lib.state_store import StateStore


logger = get_logger(__name__)

STOP_FLAG_PREFIX = "sync_stop:"


class CancellationToken:
    """A stop signal polled by the batch processor between chunks."""

    def __init__(self, name: str = "default", store: Optional[StateStore] = None):
        self.name = name
        self._store = store
        self._event = threading.Event()

    @property
    def store_key(self) -> str:
        return f"{STOP_FLAG_PREFIX}{self.name}"

    def cancel(self) -> None:
        self._event.set()
        if self._store is not None:
            self._store.set(self.store_key, True)

    def reset(self) -> None:
        self._event.clear()
        if self._store is not None:
            self._store.delete(self.store_key)

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._store is not None and self._store.get(self.store_key, False):
            self._event.set()
            return True
        return False


class CancellationRegistry:
    """Hands out one token per running job and cancels them."""

    def __init__(self, store: Optional[StateStore] = None):
        self._store = store
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}

    def issue(self, job_id: str) -> CancellationToken:
        """Fresh token for a run that is about to start."""
        token = CancellationToken(job_id, self._store)
        with self._lock:
            self._tokens[job_id] = token
        return token

    def active(self) -> List[str]:
        with self._lock:
            return sorted(self._tokens)

    def cancel(self, job_ids: Optional[Iterable[str]] = None) -> List[str]:
        """
        Set the stop signal for the given jobs, or for every job running in
        this process. Ids without a local token (runs owned by another
        process) are flagged through the store.

        Returns:
            Ids of the jobs that were signalled
        """
        with self._lock:
            targets = set(self._tokens)
            local = dict(self._tokens)
        if job_ids is not None:
            targets = set(job_ids)

        for job_id in sorted(targets):
            token = local.get(job_id) or CancellationToken(job_id, self._store)
            token.cancel()
        logger.info("Stop signal set", extra={"extra_fields": {"job_ids": sorted(targets)}})
        return sorted(targets)

    def discard(self, job_id: str) -> None:
        """Forget a finished run's token and its store flag."""
        with self._lock:
            token = self._tokens.pop(job_id, None)
        (token or CancellationToken(job_id, self._store)).reset()
