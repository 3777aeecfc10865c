"""
Rule scheduler: the control loop that evaluates rules and enqueues firings.

One daemon thread ticks every ``interval_sec``. Evaluation fans out over a
bounded thread pool; matched rules go through the per-rule proceed step
(debounce check, re-read, ``last_triggered`` write) and are handed to a
separate bounded dispatch pool so slow actions never delay a tick.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from ..core.clock import ensure_utc, utcnow
from ..core.config import settings
from ..core.db import SessionLocal
from ..core.errors import RuleValidationError, log_exception
from ..models.execution_log import STATUS_FAILED
from ..models.rule import ENFORCED, ENFORCEMENT_ERROR, AutomationRule
from .databases import DatabaseGateway
from .debounce import DebounceTracker
from .dispatcher import ActionDispatcher
from .execution_log import record_execution
from .firing import Firing, RuleSnapshot
from .rule_store import validate_rule_definition
from .system_stats import SystemMonitor, SystemSnapshot
from .triggers import TRIGGER_KINDS, EvaluationContext, UploadEvent, Verdict

POLL_KINDS = tuple(name for name, kind in TRIGGER_KINDS.items() if not kind.push)


@dataclass
class TickReport:
    started_at: datetime.datetime
    evaluated: int = 0
    matched: int = 0
    fired: int = 0
    errors: int = 0
    duration_ms: float = 0.0


class RuleScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime.datetime] = utcnow,
        interval_sec: Optional[float] = None,
        monitor: Optional[SystemMonitor] = None,
        databases: Optional[DatabaseGateway] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        debounce: Optional[DebounceTracker] = None,
        evaluation_workers: Optional[int] = None,
        dispatch_workers: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.interval_sec = float(interval_sec or settings.scheduler_interval_sec)
        self.monitor = monitor or SystemMonitor(
            settings.storage_root,
            settings.cpu_window_minutes,
            max_gap_sec=max(300.0, 3 * self.interval_sec),
        )
        self.databases = databases if databases is not None else DatabaseGateway()
        self.dispatcher = dispatcher or ActionDispatcher(session_factory)
        self.debounce = debounce or DebounceTracker()
        self.evaluation_workers = max(1, evaluation_workers or settings.evaluation_workers)
        self.dispatch_workers = max(1, dispatch_workers or settings.dispatch_workers)
        self.timezone = timezone or settings.schedule_timezone
        self.logger = logging.getLogger("RuleScheduler")

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._tick_lock = threading.Lock()
        self._inflight: Set[Future] = set()
        self._inflight_lock = threading.Lock()
        self._eval_pool: Optional[ThreadPoolExecutor] = None
        self._dispatch_pool: Optional[ThreadPoolExecutor] = None
        self.last_tick: Optional[datetime.datetime] = None
        self.last_report: Optional[TickReport] = None

    # lifecycle

    def _ensure_pools(self) -> None:
        if self._eval_pool is None:
            self._eval_pool = ThreadPoolExecutor(self.evaluation_workers, thread_name_prefix="rule-eval")
        if self._dispatch_pool is None:
            self._dispatch_pool = ThreadPoolExecutor(self.dispatch_workers, thread_name_prefix="rule-dispatch")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._ensure_pools()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="rule-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        # in-flight firings complete and are logged before the pools go away
        for pool in (self._eval_pool, self._dispatch_pool):
            if pool is not None:
                pool.shutdown(wait=True)
        self._eval_pool = None
        self._dispatch_pool = None
        self.logger.info("Rule scheduler stopped")

    def _run(self) -> None:
        self.logger.info(
            "Rule scheduler started (interval=%ss eval_workers=%s dispatch_workers=%s)",
            self.interval_sec,
            self.evaluation_workers,
            self.dispatch_workers,
        )
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:
                self.logger.exception("Rule scheduler tick failed: %s", exc)
            self._stop_event.wait(self.interval_sec)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every enqueued firing has been dispatched and logged."""
        with self._inflight_lock:
            pending = list(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def status(self) -> Dict[str, object]:
        report = self.last_report
        with self._inflight_lock:
            inflight = len(self._inflight)
        return {
            "running": self.running,
            "interval_sec": self.interval_sec,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_tick_duration_ms": report.duration_ms if report else None,
            "last_tick_evaluated": report.evaluated if report else 0,
            "last_tick_fired": report.fired if report else 0,
            "inflight_dispatches": inflight,
        }

    # evaluation

    def _load_rules(self) -> tuple[List[RuleSnapshot], List[int]]:
        with self.session_factory() as db:
            rows = (
                db.query(AutomationRule)
                .filter(
                    AutomationRule.active.is_(True),
                    AutomationRule.enforcement_status == ENFORCED,
                    AutomationRule.trigger_kind.in_(POLL_KINDS),
                )
                .order_by(AutomationRule.id.asc())
                .all()
            )
            snapshots = [RuleSnapshot.from_model(row) for row in rows]
            all_ids = [rule_id for (rule_id,) in db.query(AutomationRule.id).all()]
        return snapshots, all_ids

    def _sample_system(self, now: datetime.datetime) -> Optional[SystemSnapshot]:
        try:
            return self.monitor.sample(now)
        except Exception as exc:
            log_exception(self.logger, "System metrics sampling failed", exc=exc)
            return None

    def _normalize(self, snap: RuleSnapshot) -> Optional[RuleSnapshot]:
        try:
            trigger_config, action_config = validate_rule_definition(
                snap.trigger_kind, snap.trigger_config, snap.action_kind, snap.action_config
            )
        except RuleValidationError as exc:
            self._mark_invalid(snap, exc)
            return None
        return dataclasses.replace(snap, trigger_config=trigger_config, action_config=action_config)

    def _mark_invalid(self, snap: RuleSnapshot, exc: RuleValidationError) -> None:
        self.logger.warning("Rule %s has an invalid stored definition: %s", snap.id, exc)
        with self.session_factory() as db:
            rule = db.get(AutomationRule, snap.id)
            if rule is not None:
                rule.enforcement_status = ENFORCEMENT_ERROR
                db.add(rule)
            record_execution(
                db,
                owner_id=snap.owner_id,
                rule_id=snap.id,
                rule_name=snap.name,
                trigger_kind=snap.trigger_kind,
                action_kind=snap.action_kind,
                status=STATUS_FAILED,
                attempt_count=0,
                error_message=f"Invalid rule definition: {exc}",
            )

    def _record_evaluation_error(self, snap: RuleSnapshot, exc: Exception) -> None:
        with self.session_factory() as db:
            record_execution(
                db,
                owner_id=snap.owner_id,
                rule_id=snap.id,
                rule_name=snap.name,
                trigger_kind=snap.trigger_kind,
                action_kind=snap.action_kind,
                status=STATUS_FAILED,
                attempt_count=0,
                error_message=f"Evaluation failed: {exc}",
            )

    def _evaluate(self, snap: RuleSnapshot, context: EvaluationContext) -> Verdict:
        return TRIGGER_KINDS[snap.trigger_kind].evaluate(snap.trigger_config, context)

    def tick(self, now: Optional[datetime.datetime] = None) -> TickReport:
        """Run one evaluation pass synchronously; firings are dispatched in the background."""
        with self._tick_lock:
            self._ensure_pools()
            now = ensure_utc(now or self.clock())
            previous = self.last_tick or (now - datetime.timedelta(seconds=self.interval_sec))
            report = TickReport(started_at=now)
            started = time.monotonic()

            snapshots, all_ids = self._load_rules()
            self.debounce.retain(all_ids)
            # host metrics only when a storage or CPU rule is loaded
            system = None
            if any(TRIGGER_KINDS[snap.trigger_kind].needs_system for snap in snapshots):
                system = self._sample_system(now)

            futures: Dict[Future, RuleSnapshot] = {}
            for snap in snapshots:
                normalized = self._normalize(snap)
                if normalized is None:
                    report.errors += 1
                    continue
                context = EvaluationContext(
                    now=now,
                    previous_tick=previous,
                    system=system,
                    databases=self.databases,
                    timezone=self.timezone,
                )
                futures[self._eval_pool.submit(self._evaluate, normalized, context)] = normalized

            for future in as_completed(futures):
                snap = futures[future]
                report.evaluated += 1
                try:
                    verdict = future.result()
                except Exception as exc:
                    report.errors += 1
                    self.logger.warning("Evaluation failed rule_id=%s kind=%s: %s", snap.id, snap.trigger_kind, exc)
                    self._record_evaluation_error(snap, exc)
                    continue
                if not verdict.matched:
                    continue
                report.matched += 1
                if self._proceed(snap, verdict.payload or {}, now):
                    report.fired += 1

            self.last_tick = now
            report.duration_ms = round((time.monotonic() - started) * 1000, 2)
            self.last_report = report
            self.logger.debug(
                "Tick evaluated=%s matched=%s fired=%s errors=%s duration_ms=%s",
                report.evaluated,
                report.matched,
                report.fired,
                report.errors,
                report.duration_ms,
            )
            return report

    def handle_file_upload(self, event: UploadEvent) -> int:
        """Evaluate the owner's file_upload rules against one upload; returns firings enqueued."""
        self._ensure_pools()
        now = ensure_utc(self.clock())
        if event.uploaded_at is None:
            event = dataclasses.replace(event, uploaded_at=now)
        with self.session_factory() as db:
            rows = (
                db.query(AutomationRule)
                .filter(
                    AutomationRule.owner_id == event.owner_id,
                    AutomationRule.active.is_(True),
                    AutomationRule.enforcement_status == ENFORCED,
                    AutomationRule.trigger_kind == "file_upload",
                )
                .order_by(AutomationRule.id.asc())
                .all()
            )
            snapshots = [RuleSnapshot.from_model(row) for row in rows]

        fired = 0
        for snap in snapshots:
            normalized = self._normalize(snap)
            if normalized is None:
                continue
            context = EvaluationContext(now=now, upload=event, timezone=self.timezone)
            try:
                verdict = self._evaluate(normalized, context)
            except Exception as exc:
                self.logger.warning("Upload evaluation failed rule_id=%s: %s", snap.id, exc)
                self._record_evaluation_error(normalized, exc)
                continue
            if verdict.matched and self._proceed(normalized, verdict.payload or {}, now):
                fired += 1
        if fired:
            self.logger.info("File upload %s fired %s rule(s) owner=%s", event.file_name, fired, event.owner_id)
        return fired

    # proceed + dispatch

    def _proceed(self, snap: RuleSnapshot, payload: Dict[str, object], now: datetime.datetime) -> bool:
        cooldown = TRIGGER_KINDS[snap.trigger_kind].cooldown(snap.trigger_config)
        with self.debounce.lock_for(snap.id):
            if self.debounce.is_cooling(snap.id, now, cooldown, seed=snap.last_triggered):
                return False
            with self.session_factory() as db:
                rule = db.get(AutomationRule, snap.id)
                if rule is None or not rule.active or rule.enforcement_status != ENFORCED:
                    self.logger.info("Skipping firing for rule %s: deleted or disabled since evaluation", snap.id)
                    return False
                rule.last_triggered = now
                db.add(rule)
                db.commit()
            self.debounce.mark_fired(snap.id, now)
            self._submit(Firing(rule=snap, payload=dict(payload), fired_at=now))
        return True

    def _submit(self, firing: Firing) -> None:
        future = self._dispatch_pool.submit(self._dispatch, firing)
        with self._inflight_lock:
            self._inflight.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    def _dispatch(self, firing: Firing) -> None:
        try:
            self.dispatcher.dispatch(firing)
        except Exception as exc:
            log_exception(
                self.logger,
                "Dispatch crashed",
                extra={"rule_id": firing.rule.id, "kind": firing.rule.action_kind},
                exc=exc,
            )


def build_scheduler(session_factory: Optional[Callable[[], Session]] = None) -> RuleScheduler:
    return RuleScheduler(session_factory or SessionLocal)
