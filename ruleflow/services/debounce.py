"""
Per-rule cool-down state and per-rule locks.

The tracker is process-local. When a rule has no in-memory entry the caller
passes the persisted ``last_triggered`` as ``seed`` so a restart does not
open an early re-fire window.
"""

from __future__ import annotations

import datetime
import threading
from typing import Dict, Iterable, Optional

from ..core.clock import ensure_utc


class DebounceTracker:
    def __init__(self) -> None:
        self._last_fired: Dict[int, datetime.datetime] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, rule_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(rule_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[rule_id] = lock
            return lock

    def last_fired(self, rule_id: int) -> Optional[datetime.datetime]:
        with self._guard:
            return self._last_fired.get(rule_id)

    def is_cooling(
        self,
        rule_id: int,
        now: datetime.datetime,
        cooldown: datetime.timedelta,
        seed: Optional[datetime.datetime] = None,
    ) -> bool:
        if cooldown <= datetime.timedelta(0):
            return False
        with self._guard:
            last = self._last_fired.get(rule_id)
            if last is None and seed is not None:
                last = ensure_utc(seed)
                self._last_fired[rule_id] = last
        if last is None:
            return False
        return ensure_utc(now) - last < cooldown

    def mark_fired(self, rule_id: int, now: datetime.datetime) -> None:
        with self._guard:
            self._last_fired[rule_id] = ensure_utc(now)

    def forget(self, rule_id: int) -> None:
        with self._guard:
            self._last_fired.pop(rule_id, None)
            self._locks.pop(rule_id, None)

    def retain(self, rule_ids: Iterable[int]) -> int:
        """Drop state for rules not in ``rule_ids``; returns how many were dropped."""
        keep = set(rule_ids)
        with self._guard:
            stale = [rid for rid in set(self._last_fired) | set(self._locks) if rid not in keep]
            for rid in stale:
                self._last_fired.pop(rid, None)
                lock = self._locks.get(rid)
                # a held lock belongs to an in-flight proceed step
                if lock is not None and not lock.locked():
                    self._locks.pop(rid, None)
        return len(stale)

    def __contains__(self, rule_id: int) -> bool:
        with self._guard:
            return rule_id in self._last_fired
