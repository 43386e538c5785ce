import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "DOCUMENT_CLASSIFICATION_FAILED": 10,
    "DOCUMENT_EXTRACTION_FAILED": 5,
    "AI_EXTERNAL_SERVICE_ERROR": 5,
    "ENTRY_VALIDATION_FAILED": 20,
    "REPORT_GENERATION_FAILED": 5,
}


class AuditAlertTracker:
    """Counts failure audit actions in a sliding window and logs at thresholds."""

    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()

    def record(self, action: str, metadata: Optional[dict] = None) -> None:
        limit = self._thresholds.get(action)
        if not limit:
            return
        now = time.monotonic()
        with self._lock:
            self._prune(now)
            bucket = self._buckets.setdefault(action, deque())
            bucket.append(now)
            # Alert at threshold and at every multiple of threshold
            if len(bucket) >= limit and len(bucket) % limit == 0:
                logger.warning(
                    "ALERT audit_action=%s count=%s window_seconds=%s metadata=%s",
                    action,
                    len(bucket),
                    self._window_seconds,
                    metadata or {},
                )

    def _prune(self, now: float) -> None:
        """Drop expired timestamps, and whole buckets once they empty out."""
        cutoff = now - self._window_seconds
        for action in list(self._buckets):
            bucket = self._buckets[action]
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if not bucket:
                del self._buckets[action]

    def count(self, action: str) -> int:
        with self._lock:
            self._prune(time.monotonic())
            return len(self._buckets.get(action, ()))

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


alert_tracker = AuditAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
