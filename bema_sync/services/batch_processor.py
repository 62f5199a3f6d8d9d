"""
Chunked, resumable, memory-bounded batch processing.

Usage:
    processor = BatchProcessor(
        process_item,
        store=state_store,
        tuning=BatchTuning(batch_size=500),
        scope="2025_ETB_EOE",
        cancellation=registry.issue(job_id),
    )
    result = processor.process(items)

Semantics:
- Items are split into chunks of ``batch_size`` and processed in input order.
- The stop signal is checked once per chunk boundary.
- A chunk whose item raises is retried as a whole, up to ``retry_attempts``
  times with ``retry_delay * 2^(attempt-1)`` seconds between attempts
  (capped at an hour). Items already processed, i.e. with an id at or below
  ``last_processed_id``, are skipped on the retry.
- An item function returning ``False`` is a soft failure: counted, recorded
  in ``failed_items`` and not retried. Soft failures feed the failure-rate
  ceiling.
- After every chunk the memory and failure-rate ceilings are checked and the
  checkpoint is persisted.
"""
import gc
import time
import zlib
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from bema_sync.lib.cancellation import CancellationToken
from bema_sync.lib.config_flags import (
    MAX_RETRY_DELAY_SECONDS,
    BatchTuning,
)
from bema_sync.lib.errors import (
    BatchFailedAfterRetries,
    EmptyBatch,
    FailureRateExceeded,
    MemoryThresholdExceeded,
    SyncStopped,
)
from bema_sync.lib.logging import get_logger, log_with_context
from bema_sync.lib.memory import current_memory_usage, parse_memory_limit
from bema_sync.lib.metrics import MetricsCollector
from bema_sync.lib.state_store import StateStore


logger = get_logger(__name__)

STATE_KEY_PREFIX = "batch_state:"
FAILED_ITEMS_LIMIT = 100


@dataclass
class BatchResult:
    success: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    total_processed: int = 0
    memory_peak: int = 0

    @property
    def failure_rate(self) -> float:
        return self.failed / self.total_processed if self.total_processed else 0.0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def stable_item_id(raw: Any) -> Optional[int]:
    """
    Integer id used for the resumability guard.

    Numeric ids keep their value; other strings map to a stable CRC32 so the
    same item always compares the same way across runs.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)
    return zlib.crc32(text.encode("utf-8"))


def default_item_id(item: Any) -> Optional[int]:
    raw = item.get("id") if isinstance(item, dict) else getattr(item, "id", None)
    return stable_item_id(raw)


def _summarize_item(item: Any) -> Any:
    if isinstance(item, dict):
        return {k: v for k, v in item.items() if isinstance(v, (str, int, float, bool, type(None)))}
    if isinstance(item, (str, int, float)):
        return item
    return repr(item)


def calculate_retry_delay(base_delay: int, attempt: int) -> int:
    """Backoff before retry number ``attempt`` (1-based), capped at an hour."""
    return min(base_delay * 2 ** (attempt - 1), MAX_RETRY_DELAY_SECONDS)


class BatchProcessor:
    """Applies an item function to a list of items in checkpointed chunks."""

    def __init__(
        self,
        processor: Callable[[Any], Optional[bool]],
        store: StateStore,
        tuning: Optional[BatchTuning] = None,
        scope: str = "default",
        cancellation: Optional[CancellationToken] = None,
        health=None,
        metrics: Optional[MetricsCollector] = None,
        item_id: Callable[[Any], Optional[int]] = default_item_id,
        progress_callback: Optional[Callable[[int, int, Dict[str, Any]], None]] = None,
        failure_callback: Optional[Callable[[Optional[Sequence], Exception], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        memory_reader: Callable[[], int] = current_memory_usage,
    ):
        self.processor = processor
        self.store = store
        self.scope = scope
        self.cancellation = cancellation
        self.health = health
        self.metrics = metrics
        self.item_id = item_id
        self.progress_callback = progress_callback
        self.failure_callback = failure_callback
        self._sleep = sleep
        self._memory_reader = memory_reader

        tuning = tuning or BatchTuning()
        self.batch_size = tuning.batch_size
        self.retry_attempts = tuning.retry_attempts
        self.retry_delay = tuning.retry_delay_seconds
        self.memory_threshold = tuning.memory_threshold
        self.failure_rate_threshold = tuning.failure_rate_threshold
        self.max_memory = parse_memory_limit(tuning.memory_limit)

        self.last_processed_id = 0
        self.processed_count = 0
        self.failed_items: Deque[Dict[str, Any]] = deque(maxlen=FAILED_ITEMS_LIMIT)
        self._load_state()

    # ===== Configuration =====

    def set_batch_size(self, size: int) -> None:
        self.batch_size = BatchTuning(batch_size=size).batch_size

    def set_retry_attempts(self, attempts: int) -> None:
        self.retry_attempts = max(1, int(attempts))

    def set_retry_delay(self, delay: int) -> None:
        self.retry_delay = max(1, int(delay))

    def set_memory_threshold(self, threshold: float) -> None:
        self.memory_threshold = BatchTuning(memory_threshold=threshold).memory_threshold

    def get_failed_items(self) -> List[Dict[str, Any]]:
        return list(self.failed_items)

    @property
    def state_key(self) -> str:
        return f"{STATE_KEY_PREFIX}{self.scope}"

    # ===== Processing =====

    def process(self, items: Sequence[Any]) -> BatchResult:
        """
        Process ``items`` in chunks.

        Returns:
            BatchResult with success/failed/retried/skipped counters

        Raises:
            EmptyBatch: ``items`` is empty
            SyncStopped: the stop signal was observed at a chunk boundary
            BatchFailedAfterRetries: a chunk kept raising after every attempt
            MemoryThresholdExceeded: memory stayed above the ceiling after cleanup
            FailureRateExceeded: more than the allowed share of items failed
        """
        if not items:
            raise EmptyBatch()

        results = BatchResult()
        chunks = [items[i:i + self.batch_size] for i in range(0, len(items), self.batch_size)]
        completed = False

        try:
            for index, chunk in enumerate(chunks):
                if self.cancellation is not None and self.cancellation.is_cancelled():
                    raise SyncStopped(
                        "Sync stopped by user",
                        results=results.as_dict(),
                        context={"chunk": index, "scope": self.scope},
                    )

                started = time.monotonic()
                self._process_chunk_with_retry(chunk, results)
                self._report_progress(index + 1, len(chunks))

                log_with_context(
                    logger, "info", "Batch chunk processed",
                    scope=self.scope,
                    chunk=index + 1,
                    chunks=len(chunks),
                    chunk_size=len(chunk),
                    duration=round(time.monotonic() - started, 2),
                )

                self._check_thresholds(results)
                self._save_state(results)
            completed = True
            return results
        except Exception as exc:
            log_with_context(
                logger, "error", "Batch processing aborted",
                scope=self.scope,
                error=str(exc),
                results=results.as_dict(),
            )
            # exhausted chunks were already reported with their items
            if self.failure_callback is not None and not isinstance(exc, BatchFailedAfterRetries):
                self.failure_callback(None, exc)
            results.memory_peak = max(results.memory_peak, self._memory_reader())
            if hasattr(exc, "results"):
                exc.results = results.as_dict()
            raise
        finally:
            self._finalize(results, completed)

    def _process_chunk_with_retry(self, chunk: Sequence[Any], results: BatchResult) -> None:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                self._process_items(chunk, results)
                if self.metrics is not None:
                    self.metrics.increment_chunks("success")
                return
            except Exception as exc:
                last_error = exc
                results.retried += len(chunk)
                if self.metrics is not None:
                    self.metrics.increment_chunks("retried")

                if attempt < self.retry_attempts:
                    delay = calculate_retry_delay(self.retry_delay, attempt)
                    log_with_context(
                        logger, "warning", "Retrying batch chunk",
                        scope=self.scope,
                        attempt=attempt,
                        delay=delay,
                        error=str(exc),
                    )
                    self._sleep(delay)

        results.failed += len(chunk)
        if self.metrics is not None:
            self.metrics.increment_chunks("failed")
        if self.failure_callback is not None:
            self.failure_callback(chunk, last_error)
        raise BatchFailedAfterRetries(
            f"Batch failed after {self.retry_attempts} attempts: {last_error}",
            results=results.as_dict(),
            context={"scope": self.scope, "chunk_size": len(chunk)},
        ) from last_error

    def _process_items(self, chunk: Sequence[Any], results: BatchResult) -> None:
        for item in chunk:
            item_id = self.item_id(item)
            if item_id is not None and item_id <= self.last_processed_id:
                results.skipped += 1
                continue

            if self._memory_exhausted():
                self._manage_memory()

            try:
                outcome = self.processor(item)
            except Exception as exc:
                self._record_failed_item(item, str(exc))
                raise

            if outcome is False:
                self._record_failed_item(item, "processor reported failure")
                results.failed += 1
            else:
                results.success += 1
            results.total_processed += 1
            self.processed_count += 1

            if item_id is not None:
                self.last_processed_id = max(self.last_processed_id, item_id)

    # ===== Resource limits =====

    def _memory_ceiling(self) -> Optional[float]:
        if self.max_memory is None:
            return None
        return self.max_memory * self.memory_threshold

    def _memory_exhausted(self) -> bool:
        ceiling = self._memory_ceiling()
        return ceiling is not None and self._memory_reader() > ceiling

    def _manage_memory(self) -> None:
        collected = gc.collect()
        if self.health is not None:
            self.health.record_memory_cleanup()
        logger.debug(f"Memory cleanup collected {collected} objects")

    def _check_thresholds(self, results: BatchResult) -> None:
        if self._memory_exhausted():
            self._manage_memory()
            if self._memory_exhausted():
                raise MemoryThresholdExceeded(
                    "Memory threshold exceeded",
                    results=results.as_dict(),
                    context={"memory_usage": self._memory_reader(), "ceiling": self._memory_ceiling()},
                )

        if results.failure_rate > self.failure_rate_threshold:
            raise FailureRateExceeded(
                "Failure rate threshold exceeded",
                results=results.as_dict(),
                context={"failure_rate": round(results.failure_rate, 4)},
            )

    # ===== State =====

    def _record_failed_item(self, item: Any, error: str) -> None:
        self.failed_items.append({
            "item": _summarize_item(item),
            "error": error,
            "timestamp": time.time(),
        })

    def _report_progress(self, current: int, total: int) -> None:
        if self.progress_callback is None:
            return
        self.progress_callback(current, total, {
            "processed": self.processed_count,
            "memory_usage": self._memory_reader(),
            "last_id": self.last_processed_id,
        })

    def _load_state(self) -> None:
        state = self.store.get(self.state_key, {}) or {}
        self.last_processed_id = int(state.get("last_processed_id", 0) or 0)
        self.processed_count = int(state.get("processed_count", 0) or 0)
        self.failed_items.extend(state.get("failed_items", []) or [])

    def _save_state(self, results: BatchResult) -> None:
        self.store.set(self.state_key, {
            "last_processed_id": self.last_processed_id,
            "processed_count": self.processed_count,
            "failed_items": list(self.failed_items),
            "last_results": results.as_dict(),
            "timestamp": time.time(),
        })

    def _finalize(self, results: BatchResult, completed: bool) -> None:
        results.memory_peak = max(results.memory_peak, self._memory_reader())
        if completed:
            # A finished run must not make the next run skip everything
            self.last_processed_id = 0
        self._save_state(results)
        log_with_context(
            logger, "info", "Batch processing finished",
            scope=self.scope,
            completed=completed,
            memory_peak=results.memory_peak,
            **{k: v for k, v in results.as_dict().items() if k != "memory_peak"},
        )
