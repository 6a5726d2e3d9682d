"""
Pipeline monitoring
Observability port injected into every component
"""
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Any, List
import logging

logger = logging.getLogger(__name__)


class Telemetry:
    """
    No-op telemetry
    Components call it unconditionally; backends override the three hooks
    """

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        pass

    def record(self, name: str, value: float, **tags: Any) -> None:
        pass

    @contextmanager
    def span(self, name: str, **tags: Any):
        """Time a block and record <name>.duration_seconds"""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record(f"{name}.duration_seconds", time.perf_counter() - started, **tags)


class InMemoryTelemetry(Telemetry):
    """Keeps counters, timings and span names in memory"""

    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.timings: Dict[str, List[float]] = defaultdict(list)
        self.spans: List[str] = []

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        self.counters[name] += value

    def record(self, name: str, value: float, **tags: Any) -> None:
        self.timings[name].append(value)

    @contextmanager
    def span(self, name: str, **tags: Any):
        self.spans.append(name)
        with super().span(name, **tags):
            yield

    def get_metrics(self) -> Dict[str, Any]:
        """Snapshot of everything collected so far"""
        return {
            "counters": dict(self.counters),
            "timings": {
                name: {
                    "count": len(values),
                    "total": round(sum(values), 4),
                    "max": round(max(values), 4),
                }
                for name, values in self.timings.items() if values
            },
            "spans": list(self.spans),
        }

    def log_metrics_summary(self) -> None:
        """Log counters and timings, one line each"""
        metrics = self.get_metrics()
        logger.info("=" * 60)
        logger.info("PIPELINE METRICS SUMMARY")
        logger.info("=" * 60)
        for name, value in sorted(metrics["counters"].items()):
            logger.info(f"{name}: {value}")
        for name, stats in sorted(metrics["timings"].items()):
            logger.info(f"{name}: {stats['count']} calls, {stats['total']:.2f}s total, {stats['max']:.2f}s max")
        logger.info("=" * 60)
