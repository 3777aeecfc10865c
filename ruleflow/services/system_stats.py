"""
Host metrics sampled for storage and CPU threshold rules.
"""

from __future__ import annotations

import datetime
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Tuple

import psutil

from ..core.clock import ensure_utc


logger = logging.getLogger("system_monitor")

CpuSample = Tuple[datetime.datetime, float]


@dataclass(frozen=True)
class SystemSnapshot:
    taken_at: datetime.datetime
    storage_percent: float
    cpu_percent: float
    cpu_samples: Tuple[CpuSample, ...] = field(default_factory=tuple)
    history_start: Optional[datetime.datetime] = None

    def cpu_sustained(self, threshold: float, duration_minutes: int) -> bool:
        """True when every sample of the last ``duration_minutes`` is at or above ``threshold``.

        The window must be fully covered by history; a monitor that started
        less than ``duration_minutes`` ago never reports a sustained load.
        """
        start = self.taken_at - datetime.timedelta(minutes=duration_minutes)
        if self.history_start is None or self.history_start > start:
            return False
        window = [value for ts, value in self.cpu_samples if ts >= start]
        if not window:
            return False
        return all(value >= threshold for value in window)


def _read_cpu() -> float:
    return float(psutil.cpu_percent(interval=None))


class SystemMonitor:
    """Keeps a rolling window of CPU samples and reads storage usage on demand."""

    def __init__(
        self,
        storage_root: str = "/",
        window_minutes: int = 60,
        cpu_reader: Optional[Callable[[], float]] = None,
        storage_reader: Optional[Callable[[], float]] = None,
        max_gap_sec: float = 300.0,
    ) -> None:
        self.storage_root = storage_root
        self.window = datetime.timedelta(minutes=max(1, window_minutes))
        # a longer pause between samples restarts the history
        self.max_gap = datetime.timedelta(seconds=max_gap_sec)
        self._cpu_reader = cpu_reader or _read_cpu
        self._storage_reader = storage_reader or self._read_storage
        self._samples: Deque[CpuSample] = deque()
        self._history_start: Optional[datetime.datetime] = None
        self._lock = threading.Lock()

    def _read_storage(self) -> float:
        return float(psutil.disk_usage(self.storage_root).percent)

    def sample(self, now: datetime.datetime) -> SystemSnapshot:
        now = ensure_utc(now)
        storage = round(self._storage_reader(), 2)
        cpu = round(self._cpu_reader(), 2)
        with self._lock:
            if self._samples and now - self._samples[-1][0] > self.max_gap:
                logger.debug("CPU history restarted after %s without samples", now - self._samples[-1][0])
                self._samples.clear()
                self._history_start = None
            if self._history_start is None:
                self._history_start = now
            self._samples.append((now, cpu))
            cutoff = now - self.window
            while self._samples and self._samples[0][0] < cutoff:
                self._samples.popleft()
            samples = tuple(self._samples)
            history_start = self._history_start
        logger.debug("System sample storage=%s%% cpu=%s%%", storage, cpu)
        return SystemSnapshot(
            taken_at=now,
            storage_percent=storage,
            cpu_percent=cpu,
            cpu_samples=samples,
            history_start=history_start,
        )

    def samples(self) -> List[CpuSample]:
        with self._lock:
            return list(self._samples)
