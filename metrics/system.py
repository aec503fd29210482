"""
Periodic host and process metrics, sampled with psutil and recorded into the metric store.
"""

import time
import logging
import threading
from typing import Dict, Optional

import psutil

logger = logging.getLogger(__name__)

class SystemMetricsCollector:
    """
    Records system.cpu_usage and system.memory_usage as 0-1 ratios so the
    default alert rules apply, plus process memory and uptime.
    """

    def __init__(self, metric_store, interval_seconds: float = 60.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.metric_store = metric_store
        self.interval_seconds = interval_seconds
        self.process = psutil.Process()
        self.started_at = time.time()

        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def collect(self) -> Dict[str, float]:
        """Take one sample and record it. Returns the recorded values."""
        memory = psutil.virtual_memory()
        process_memory = self.process.memory_info()
        sample = {
            "system.cpu_usage": psutil.cpu_percent(interval=None) / 100.0,
            "system.memory_usage": memory.percent / 100.0,
            "system.memory_available": float(memory.available),
            "system.process_memory_rss": float(process_memory.rss),
            "system.process_threads": float(self.process.num_threads()),
            "system.uptime": time.time() - self.started_at,
        }
        units = {
            "system.cpu_usage": "ratio",
            "system.memory_usage": "ratio",
            "system.memory_available": "bytes",
            "system.process_memory_rss": "bytes",
            "system.process_threads": "count",
            "system.uptime": "seconds",
        }
        for name, value in sample.items():
            self.metric_store.record_system(name, value, units[name])
        return sample

    def start(self):
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        # first cpu_percent(interval=None) call only primes the counter
        psutil.cpu_percent(interval=None)
        self._thread = threading.Thread(target=self._collect_loop, name="system-metrics", daemon=True)
        self._thread.start()
        logger.info(f"System metrics collector started ({self.interval_seconds}s interval)")

    def stop(self):
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("System metrics collector stopped")

    def _collect_loop(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.collect()
            except Exception as e:
                logger.error(f"Failed to collect system metrics: {e}")
