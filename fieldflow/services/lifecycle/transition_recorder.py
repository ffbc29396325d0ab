"""
Transition Recorder

Writes the immutable job transition history. One entry per accepted
transition; rejected transitions never reach this module.
"""
from typing import List
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import TransitionHistoryDB
from ...models.lifecycle import TransitionHistoryEntry
from ..interfaces import HistorySink


class TransitionRecorder(HistorySink):
    """History sink backed by the job_transition_history table."""

    def __init__(self, db: Session):
        self.db = db

    def append_history(self, entry: TransitionHistoryEntry) -> TransitionHistoryDB:
        row = TransitionHistoryDB(
            id=str(uuid4()),
            tenant_id=entry.tenant_id,
            job_id=entry.job_id,
            previous_state=entry.previous_state,
            new_state=entry.new_state,
            event_type=entry.event_type,
            actor_id=entry.actor_id,
            actor_name=entry.actor_name,
            reason=entry.reason,
            event_metadata=dict(entry.metadata),
            created_at=entry.timestamp,
        )
        self.db.add(row)
        self.db.flush()  # Get ID without committing
        return row

    def get_history(self, tenant_id: str, job_id: str) -> List[TransitionHistoryDB]:
        """Full trail for a job, oldest first."""
        return (
            self.db.query(TransitionHistoryDB)
            .filter(
                TransitionHistoryDB.tenant_id == tenant_id,
                TransitionHistoryDB.job_id == job_id,
            )
            .order_by(TransitionHistoryDB.created_at.asc())
            .all()
        )
