"""
Scheduler API Routes

Internal endpoints hit by the external job runner on a fixed cadence.
Follow-up sequence steps, deferred rule actions, automation monitoring.
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session

from ..config import INTERNAL_API_KEY
from ..database import get_db
from ..exceptions import SequenceNotFoundError
from ..services.interfaces import ActionDispatcher
from ..services.automation import (
    ExecutionLogService,
    LoggingActionDispatcher,
    ScheduledActionProcessor,
    SequenceScheduler,
)


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# DEPENDENCIES
# =============================================================================

_action_dispatcher: ActionDispatcher = LoggingActionDispatcher()


def set_action_dispatcher(dispatcher: ActionDispatcher) -> None:
    """Install the host application's dispatcher for heartbeat runs."""
    global _action_dispatcher
    _action_dispatcher = dispatcher


def get_action_dispatcher() -> ActionDispatcher:
    return _action_dispatcher


# =============================================================================
# HEARTBEAT ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/follow-ups/process", response_model=dict)
def run_follow_up_steps(
    tenant_id: Optional[str] = None,
    db: Session = Depends(get_db),
    dispatcher: ActionDispatcher = Depends(get_action_dispatcher),
    _: bool = Depends(verify_internal_key),
):
    """
    Advance every due follow-up sequence by one step.

    Safe to call from several runners at once: each due step is claimed
    before it is dispatched.
    """
    scheduler = SequenceScheduler(db, dispatcher)

    return scheduler.process_due_steps(tenant_id=tenant_id)


@router.post("/scheduled-actions/process", response_model=dict)
def run_scheduled_actions(
    tenant_id: Optional[str] = None,
    db: Session = Depends(get_db),
    dispatcher: ActionDispatcher = Depends(get_action_dispatcher),
    _: bool = Depends(verify_internal_key),
):
    """Dispatch delayed rule actions whose time has come."""
    processor = ScheduledActionProcessor(db, dispatcher)

    return processor.process_due_actions(tenant_id=tenant_id)


@router.post("/heartbeat", response_model=dict)
def run_heartbeat(
    db: Session = Depends(get_db),
    dispatcher: ActionDispatcher = Depends(get_action_dispatcher),
    _: bool = Depends(verify_internal_key),
):
    """
    Run every periodic task once.

    For runners that only support a single endpoint.
    """
    scheduler = SequenceScheduler(db, dispatcher)
    processor = ScheduledActionProcessor(db, dispatcher)
    run_date = scheduler.clock.now()

    results = {
        "follow_ups": scheduler.process_due_steps(now=run_date),
        "scheduled_actions": processor.process_due_actions(now=run_date),
    }

    return {
        "run_date": run_date.isoformat(),
        "results": results,
    }


# =============================================================================
# MONITORING ENDPOINTS (READ-ONLY)
# =============================================================================

@router.get("/automation-stats", response_model=dict)
def get_automation_stats(
    tenant_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Execution counts for a tenant: passed, failed, suppressed, test mode, by rule.
    """
    log = ExecutionLogService(db)
    stats = log.get_execution_stats(tenant_id, start_date, end_date)

    return {
        "tenant_id": tenant_id,
        "start_date": start_date.isoformat() if start_date else None,
        "end_date": end_date.isoformat() if end_date else None,
        **stats,
    }


@router.get("/follow-ups/{sequence_id}", response_model=dict)
def get_follow_up_sequence(
    sequence_id: str,
    tenant_id: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Current state of one follow-up sequence.

    For checking on a sequence the heartbeat keeps failing.
    """
    scheduler = SequenceScheduler(db)
    try:
        sequence = scheduler.find_one_sequence(tenant_id, sequence_id)
    except SequenceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "id": sequence.id,
        "lead_id": sequence.lead_id,
        "status": sequence.status.value,
        "current_step": sequence.current_step,
        "total_steps": len(sequence.steps or []),
        "next_step_at": sequence.next_step_at.isoformat() if sequence.next_step_at else None,
        "steps": sequence.steps,
    }
