"""
Time-windowed barcode deduplication
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60


class BarcodeDeduplicator:
    """
    Remembers recently accepted codes for a fixed time-to-live.

    A repeat inside the window does not refresh the timestamp, so a code
    stays blocked only until its original entry ages out.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._recent: Dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._recent)

    def __contains__(self, code):
        with self._lock:
            return code in self._recent

    def is_duplicate(self, code: str) -> bool:
        """
        Check a code and record it if it was not seen inside the window

        Args:
            code: Decoded barcode text

        Returns:
            bool: True if the code is still blocked, False if it was
            just recorded
        """
        if not code or not code.strip():
            return True

        with self._lock:
            now = self._clock()
            self._cleanup_expired(now)

            if code in self._recent:
                return True

            self._recent[code] = now
            return False

    def _cleanup_expired(self, now):
        expired = [code for code, seen_at in self._recent.items()
                   if now - seen_at > self.ttl_seconds]
        for code in expired:
            del self._recent[code]
        if expired:
            logger.debug("Expired %d dedup entries", len(expired))

    def remove(self, code: str):
        """Unblock a code immediately (e.g. its saved record was deleted)."""
        if not code or not code.strip():
            return
        with self._lock:
            if self._recent.pop(code, None) is not None:
                logger.info("Removed %s from dedup cache", code)

    def clear(self):
        with self._lock:
            self._recent.clear()
