from collections import Counter
from threading import Lock


class Metrics:
    """Process-local counters and stage timings served on /metrics."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._timings: dict[str, tuple[int, float]] = {}

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters[key]

    def observe(self, key: str, seconds: float) -> None:
        with self._lock:
            count, total = self._timings.get(key, (0, 0.0))
            self._timings[key] = (count + 1, total + seconds)

    def snapshot(self) -> dict[str, int | float]:
        with self._lock:
            values: dict[str, int | float] = dict(self._counters)
            for key, (count, total) in self._timings.items():
                values[f"{key}.count"] = count
                values[f"{key}.seconds_sum"] = round(total, 3)
        return dict(sorted(values.items()))


metrics = Metrics()
