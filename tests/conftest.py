import os
import tempfile
from pathlib import Path

# Configure before any ruleflow import; settings and the engine are built at import time.
_TEST_DB = Path(tempfile.gettempdir()) / "ruleflow_test_api.db"
if "DATABASE_URL" not in os.environ:
    _TEST_DB.unlink(missing_ok=True)
os.environ.setdefault("DATABASE_URL", f"sqlite+pysqlite:///{_TEST_DB}")
os.environ.setdefault("AUTO_CREATE_DB", "true")
os.environ.setdefault("AUTO_RUN_MIGRATIONS", "false")
os.environ.setdefault("ENABLE_RULE_SCHEDULER", "false")
os.environ.setdefault("RULEFLOW_AUTH_DISABLED", "true")
os.environ.setdefault("RULEFLOW_USER_DATABASES", "{}")

import pytest
from sqlalchemy.orm import sessionmaker

from ruleflow.core.db import build_engine
from ruleflow.models import Base


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'ruleflow.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()
