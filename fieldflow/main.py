"""
FieldFlow - FastAPI Application

Hosts the workflow core's internal heartbeat surface.

Architecture:
- Domain event → RuleEngine → conditions / suppression → ActionDispatcher
- Job transition → JobStateMachine → JobStore + TransitionRecorder → RuleEngine
- Heartbeat → SequenceScheduler / ScheduledActionProcessor → ActionDispatcher
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from .config import LOG_LEVEL
from .database import init_db
from .routers import scheduler_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="FieldFlow Workflow Core",
    description="""
    FieldFlow - Job lifecycle and automation core

    ## Internal endpoints
    - **/internal/follow-ups/process**: advance due follow-up sequences
    - **/internal/scheduled-actions/process**: run delayed rule actions
    - **/internal/heartbeat**: both of the above
    - **/internal/automation-stats**: execution counts per tenant

    All internal endpoints require the X-Internal-Key header.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers
app.include_router(scheduler_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m fieldflow.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
