"""
In-memory time-series store for runtime telemetry.

Producers call record() from any thread. Points land in a per-metric buffer,
are checked against alert rules inline, and are moved into a bounded,
retention-trimmed history on flush (size-triggered or periodic).
"""

import math
import time
import logging
import statistics
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

TimeRange = Tuple[float, float]

class Aggregation(str, Enum):
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT = "count"
    P95 = "p95"

@dataclass(frozen=True)
class MetricPoint:
    """A single timestamped, tagged numeric observation."""
    name: str
    value: float
    unit: str = "count"
    timestamp: float = field(default_factory=time.time)
    tags: Dict[str, str] = field(default_factory=dict)

    def has_tags(self, tags: Optional[Dict[str, str]]) -> bool:
        if not tags:
            return True
        return all(self.tags.get(k) == v for k, v in tags.items())

@dataclass
class MetricStoreConfig:
    buffer_size: int = 1000
    flush_interval_seconds: float = 30.0
    retention_seconds: float = 86400.0  # 24h
    max_points_per_metric: int = 10000

    def __post_init__(self):
        if self.buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        if self.flush_interval_seconds <= 0:
            raise ValueError("flush_interval_seconds must be > 0")
        if self.retention_seconds <= 0:
            raise ValueError("retention_seconds must be > 0")
        if self.max_points_per_metric < 1:
            raise ValueError("max_points_per_metric must be >= 1")

def aggregate(values: List[float], aggregation: Aggregation) -> float:
    """Reduce values with the given aggregation. Empty input yields 0."""
    aggregation = Aggregation(aggregation)
    if aggregation is Aggregation.COUNT:
        return len(values)
    if not values:
        return 0
    if aggregation is Aggregation.SUM:
        return math.fsum(values)
    if aggregation is Aggregation.AVG:
        return math.fsum(values) / len(values)
    if aggregation is Aggregation.MIN:
        return min(values)
    if aggregation is Aggregation.MAX:
        return max(values)
    # p95
    if len(values) < 2:
        return max(values)
    try:
        return statistics.quantiles(values, n=20)[18]
    except statistics.StatisticsError:
        return max(values)

class MetricStore:
    def __init__(
        self,
        config: Optional[MetricStoreConfig] = None,
        alert_engine=None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or MetricStoreConfig()
        self.alert_engine = alert_engine
        self.clock = clock

        self._lock = threading.RLock()
        self._buffers: Dict[str, List[MetricPoint]] = {}
        self._history: Dict[str, Deque[MetricPoint]] = {}
        self._pending_flush: Set[str] = set()
        self.dropped_points = 0

        self._running = False
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------- Ingestion -------------------------

    def record(self, name: str, value: float, unit: str = "count", tags: Optional[Dict[str, Any]] = None) -> Optional[MetricPoint]:
        """Record a point. Best-effort: failures are logged and the point is dropped."""
        try:
            point = MetricPoint(
                name=str(name),
                value=float(value),
                unit=unit,
                timestamp=self.clock(),
                tags={str(k): str(v) for k, v in (tags or {}).items()},
            )
            self._buffer(point)
        except Exception as e:
            with self._lock:
                self.dropped_points += 1
            logger.error(f"Failed to record metric {name!r}={value!r}: {e}")
            return None

        if self.alert_engine is not None:
            self.alert_engine.check(point)
        return point

    def increment(self, name: str, value: float = 1, tags: Optional[Dict[str, Any]] = None):
        return self.record(name, value, "count", tags)

    def gauge(self, name: str, value: float, unit: str = "value", tags: Optional[Dict[str, Any]] = None):
        return self.record(name, value, unit, tags)

    def histogram(self, name: str, value: float, tags: Optional[Dict[str, Any]] = None):
        return self.record(f"{name}.histogram", value, "value", tags)

    def record_performance(self, name: str, start: float, tags: Optional[Dict[str, Any]] = None) -> float:
        """Record milliseconds elapsed since start (a time.perf_counter() reading)."""
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        self.record(name, elapsed_ms, "ms", {**(tags or {}), "type": "performance"})
        return elapsed_ms

    def record_business(self, name: str, value: float, tags: Optional[Dict[str, Any]] = None):
        return self.record(name, value, "count", {**(tags or {}), "type": "business"})

    def record_system(self, name: str, value: float, unit: str = "count", tags: Optional[Dict[str, Any]] = None):
        return self.record(name, value, unit, {**(tags or {}), "type": "system"})

    def start_timer(self, name: str, tags: Optional[Dict[str, Any]] = None) -> Callable[[], float]:
        """Start a wall-clock timer. Calling the returned function records the elapsed ms."""
        start = time.perf_counter()

        def stop() -> float:
            return self.record_performance(name, start, tags)

        return stop

    def _buffer(self, point: MetricPoint):
        flush_inline = False
        wake_flusher = False
        with self._lock:
            buffer = self._buffers.setdefault(point.name, [])
            buffer.append(point)
            if len(buffer) >= self.config.buffer_size:
                if self._running:
                    self._pending_flush.add(point.name)
                    wake_flusher = True
                else:
                    flush_inline = True

        if flush_inline:
            self.flush(point.name)
        elif wake_flusher:
            self._wake.set()

    # ------------------------- Flush & retention -------------------------

    def flush(self, name: Optional[str] = None) -> int:
        """Move buffered points into history and trim expired points. Returns points moved."""
        with self._lock:
            names = [name] if name is not None else list(self._buffers.keys())
            cutoff = self.clock() - self.config.retention_seconds
            moved = 0
            for metric_name in names:
                buffer = self._buffers.get(metric_name)
                if buffer:
                    history = self._history.get(metric_name)
                    if history is None:
                        history = deque(maxlen=self.config.max_points_per_metric)
                        self._history[metric_name] = history
                    history.extend(buffer)
                    self._buffers[metric_name] = []
                    moved += len(buffer)
                self._trim(metric_name, cutoff)

            if name is None:
                # metrics that stopped receiving points still age out
                for metric_name in list(self._history.keys()):
                    if metric_name not in self._buffers:
                        self._trim(metric_name, cutoff)

        if moved:
            logger.debug(f"Flushed {moved} metric points ({name or 'all metrics'})")
        return moved

    def _trim(self, name: str, cutoff: float):
        """Drop points at or before cutoff (must be called with lock held)."""
        history = self._history.get(name)
        if history is None:
            return
        while history and history[0].timestamp <= cutoff:
            history.popleft()
        if not history and not self._buffers.get(name):
            del self._history[name]
            self._buffers.pop(name, None)

    def start(self):
        """Start the periodic flush thread."""
        if self._running:
            return
        self._running = True
        self._wake.clear()
        self._thread = threading.Thread(target=self._flush_loop, name="metric-flush", daemon=True)
        self._thread.start()
        logger.info(f"Metric store flush loop started ({self.config.flush_interval_seconds}s interval)")

    def stop(self):
        """Stop the flush thread and flush whatever is still buffered."""
        self._running = False
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self.flush()
        logger.info("Metric store stopped")

    def _flush_loop(self):
        interval = self.config.flush_interval_seconds
        next_full_flush = time.monotonic() + interval
        while self._running:
            woke = self._wake.wait(timeout=max(0.0, next_full_flush - time.monotonic()))
            if not self._running:
                break
            try:
                if woke:
                    self._wake.clear()
                    with self._lock:
                        pending, self._pending_flush = self._pending_flush, set()
                    for name in pending:
                        self.flush(name)
                if time.monotonic() >= next_full_flush:
                    self.flush()
                    next_full_flush = time.monotonic() + interval
            except Exception as e:
                logger.error(f"Error in metric flush loop: {e}")

    # ------------------------- Queries -------------------------

    def get_metrics(self, name: str, time_range: Optional[TimeRange] = None,
                    tags: Optional[Dict[str, str]] = None) -> List[MetricPoint]:
        """Retained points for a metric, optionally within an inclusive (start, end) range."""
        with self._lock:
            points = list(self._history.get(name, ()))

        if time_range is not None:
            start, end = time_range
            points = [p for p in points if start <= p.timestamp <= end]
        if tags:
            points = [p for p in points if p.has_tags(tags)]
        return points

    def get_aggregated_metrics(self, name: str, aggregation: Aggregation,
                               time_range: Optional[TimeRange] = None,
                               tags: Optional[Dict[str, str]] = None) -> float:
        values = [p.value for p in self.get_metrics(name, time_range, tags)]
        return aggregate(values, aggregation)

    def get_latest_value(self, name: str) -> Optional[float]:
        with self._lock:
            history = self._history.get(name)
            if not history:
                return None
            return history[-1].value

    def get_metric_names(self) -> List[str]:
        with self._lock:
            names = set(self._history.keys())
            names.update(n for n, buf in self._buffers.items() if buf)
        return sorted(names)

    def health_check(self) -> Dict[str, Any]:
        with self._lock:
            retained = sum(len(h) for h in self._history.values())
            buffered = sum(len(b) for b in self._buffers.values())
            metric_count = len(self._history)
        details = {
            "total_metrics": retained,
            "buffered_metrics": buffered,
            "metric_names": metric_count,
            "dropped_points": self.dropped_points,
            "flush_loop_running": self._running,
        }
        if self.alert_engine is not None:
            details["alert_rules"] = len(self.alert_engine.get_alert_rules())
            details["alerts_fired"] = self.alert_engine.alerts_fired
        return {"status": "healthy", "details": details}
