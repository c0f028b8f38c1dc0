from collections import Counter
from threading import Lock
from typing import Counter as CounterType, Dict


class Metrics:
    """Process-local counters; one instance per application."""

    def __init__(self) -> None:
        self._counts: CounterType[str] = Counter()
        self._lock = Lock()

    def _inc(self, key: str) -> None:
        with self._lock:
            self._counts[key] += 1

    def record_validation(self, *, valid: bool) -> None:
        self._inc("coupon_validations")
        if not valid:
            self._inc("coupon_rejections")

    def record_redemption(self, *, replayed: bool) -> None:
        self._inc("coupon_redemption_replays" if replayed else "coupon_redemptions")

    def record_redemption_conflict(self) -> None:
        self._inc("coupon_redemption_conflicts")

    def record_store_fault(self) -> None:
        self._inc("coupon_store_faults")

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
