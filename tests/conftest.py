"""
Shared fixtures for the workflow core tests.

Service tests run against an in-memory SQLite database; the ports to the
host application (job store, history sink, dispatcher) are in-memory fakes
or MagicMocks.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldflow.database import Base
from fieldflow.models import db_models  # noqa: F401  registers tables
from fieldflow.models.db_models import AutomationRuleDB
from fieldflow.models.lifecycle import JobRecord, TransitionHistoryEntry
from fieldflow.services.clock import FixedClock
from fieldflow.services.interfaces import ActionDispatcher, DispatchOutcome, HistorySink, JobStore


TENANT_ID = "tenant-1"
OTHER_TENANT_ID = "tenant-2"

# Wednesday
NOW = datetime(2024, 1, 10, 15, 0, 0)


# =============================================================================
# IN-MEMORY PORTS
# =============================================================================

class InMemoryJobStore(JobStore):
    """Job store keyed by (tenant_id, job_id) with a version check on write."""

    def __init__(self):
        self.jobs: Dict[Tuple[str, str], JobRecord] = {}
        self.persist_calls = 0

    def add(self, job: JobRecord) -> JobRecord:
        self.jobs[(job.tenant_id, job.id)] = job
        return job

    def load_job(self, tenant_id: str, job_id: str) -> Optional[JobRecord]:
        job = self.jobs.get((tenant_id, job_id))
        return replace(job) if job else None

    def persist_job(self, job: JobRecord, expected_version: int) -> bool:
        self.persist_calls += 1
        current = self.jobs.get((job.tenant_id, job.id))
        if current is None or current.version != expected_version:
            return False
        self.jobs[(job.tenant_id, job.id)] = job
        return True


class InMemoryHistorySink(HistorySink):
    def __init__(self):
        self.entries: List[TransitionHistoryEntry] = []

    def append_history(self, entry: TransitionHistoryEntry) -> None:
        self.entries.append(entry)

    def get_history(self, tenant_id: str, job_id: str) -> List[TransitionHistoryEntry]:
        return [e for e in self.entries if e.tenant_id == tenant_id and e.job_id == job_id]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database per test, shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def mock_dispatcher():
    """Dispatcher that succeeds for every action."""
    dispatcher = MagicMock(spec=ActionDispatcher)
    dispatcher.dispatch.return_value = DispatchOutcome.ok()
    return dispatcher


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def history_sink():
    return InMemoryHistorySink()


@pytest.fixture
def make_rule(db_session, clock):
    """Insert a rule row directly, bypassing RuleService validation."""
    def _make_rule(
        event: str = "job.created",
        conditions=None,
        actions=None,
        constraints=None,
        test_mode: bool = False,
        is_active: bool = True,
        tenant_id: str = TENANT_ID,
        name: str = "Test rule",
    ) -> AutomationRuleDB:
        rule_id = str(uuid4())
        rule = AutomationRuleDB(
            id=rule_id,
            tenant_id=tenant_id,
            name=name,
            is_active=is_active,
            test_mode=test_mode,
            trigger={"event": event, "conditions": conditions or []},
            actions=actions if actions is not None else [{"type": "send_email", "config": {"template": "welcome"}}],
            constraints=constraints,
            lineage_id=rule_id,
            version=1,
            effective_date=clock.now(),
            created_at=clock.now(),
        )
        db_session.add(rule)
        db_session.commit()
        return rule
    return _make_rule
