"""
Action dispatcher with bounded retries.

Every dispatch ends in exactly one execution-log entry whose attempt count
is the number of sends actually made.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import ActionError, RuleValidationError, log_exception
from ..models.execution_log import STATUS_FAILED, STATUS_SUCCESS, ExecutionLog
from .actions import ACTION_KINDS, ActionContext
from .execution_log import record_execution
from .firing import Firing


class ActionDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        context: Optional[ActionContext] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[Sequence[float]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.context = context or ActionContext(session_factory=session_factory)
        self.max_attempts = max(1, max_attempts or settings.action_max_attempts)
        self.backoff: List[float] = list(settings.backoff_schedule() if backoff is None else backoff)
        self.sleep = sleep
        self.logger = logging.getLogger("action_dispatcher")

    def _delay_before(self, attempt_index: int) -> float:
        if not self.backoff:
            return 0.0
        if attempt_index < len(self.backoff):
            return self.backoff[attempt_index]
        return self.backoff[-1]

    def dispatch(self, firing: Firing) -> ExecutionLog:
        rule = firing.rule
        payload = firing.payload or {}
        attempts = 0
        last_error: Optional[str] = None
        result = None

        kind = ACTION_KINDS.get(rule.action_kind)
        if kind is None:
            last_error = f"Unknown action kind: {rule.action_kind}"
        else:
            try:
                config = kind.validate(rule.action_config)
                rendered = kind.render(config, payload, rule, fired_at=firing.fired_at)
            except RuleValidationError as exc:
                last_error = str(exc)
            else:
                while attempts < self.max_attempts:
                    delay = self._delay_before(attempts)
                    if delay > 0:
                        self.sleep(delay)
                    attempts += 1
                    try:
                        result = kind.send(rendered, self.context, rule)
                        last_error = None
                        break
                    except ActionError as exc:
                        last_error = str(exc) or exc.__class__.__name__
                        if not exc.transient:
                            self.logger.warning(
                                "Action failed permanently rule_id=%s kind=%s attempt=%s: %s",
                                rule.id,
                                rule.action_kind,
                                attempts,
                                last_error,
                            )
                            break
                        self.logger.warning(
                            "Transient action failure rule_id=%s kind=%s attempt=%s/%s: %s",
                            rule.id,
                            rule.action_kind,
                            attempts,
                            self.max_attempts,
                            last_error,
                        )
                    except Exception as exc:
                        last_error = f"Unexpected error: {exc}"
                        log_exception(
                            self.logger,
                            "Action raised unexpected error",
                            extra={"rule_id": rule.id, "kind": rule.action_kind},
                            exc=exc,
                        )
                        break

        status = STATUS_SUCCESS if last_error is None else STATUS_FAILED
        if status == STATUS_FAILED:
            self.logger.error(
                'Rule "%s" (id=%s) failed after %s attempts: %s', rule.name, rule.id, attempts, last_error
            )
        with self.session_factory() as db:
            return record_execution(
                db,
                owner_id=rule.owner_id,
                rule_id=rule.id,
                rule_name=rule.name,
                trigger_kind=rule.trigger_kind,
                action_kind=rule.action_kind,
                status=status,
                trigger_payload=payload,
                action_result=result,
                attempt_count=attempts,
                error_message=last_error,
            )
