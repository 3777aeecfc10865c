"""Create database tables for the RuleFlow backend."""

from __future__ import annotations

import logging

from ruleflow.core.db import engine
from ruleflow.core.logging_config import setup_logging
from ruleflow.models import Base


logger = logging.getLogger("scripts.create_db")


def main() -> None:
    setup_logging(level=logging.INFO)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified: %s", ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    main()
