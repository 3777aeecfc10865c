"""
Rule scheduler process entrypoint.

Runs the scheduling loop outside the API process. Start the API with
ENABLE_RULE_SCHEDULER=false when this worker is deployed, otherwise rules
are evaluated twice per interval.
"""

from __future__ import annotations

import logging
import os
import time

from .core.db import SessionLocal
from .core.logging_config import setup_logging
from .services.scheduler import build_scheduler


logger = logging.getLogger("worker")


def main() -> int:
    setup_logging()
    logger.info("Worker booted (pid=%s)", os.getpid())
    scheduler = build_scheduler(SessionLocal)
    logger.info("Worker started interval=%ss", scheduler.interval_sec)

    while True:
        try:
            report = scheduler.tick()
            if report.fired:
                logger.info("Tick evaluated=%s fired=%s", report.evaluated, report.fired)
            time.sleep(scheduler.interval_sec)
        except KeyboardInterrupt:
            scheduler.stop(timeout=30)
            scheduler.databases.dispose()
            return 0
        except Exception:
            logger.exception("Worker loop error")
            time.sleep(scheduler.interval_sec)


if __name__ == "__main__":
    raise SystemExit(main())
