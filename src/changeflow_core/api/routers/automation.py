"""API endpoints for the automation scheduler.

Both endpoints require `Authorization: Bearer <AUTOMATION_SECRET>`. The sweep is
triggered from outside (cron or `python -m changeflow_core.poller`); the API
never runs one on its own.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from changeflow_core import schemas
from changeflow_core.clock import Clock
from changeflow_core.config import Settings, get_settings
from changeflow_core.database import get_db
from changeflow_core.scheduler import AutomationScheduler, automation_status

from ..dependencies import require_automation_token
from .changes import get_clock

logger = logging.getLogger("changeflow-core.automation")

router = APIRouter(tags=["automation"], dependencies=[Depends(require_automation_token)])


@router.post("/sweep", response_model=schemas.SweepResponse)
def run_sweep(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    """
    Process every due automation record (up to the configured batch size).

    Always answers 200: per-record problems are listed in `errors` and never
    fail the sweep as a whole.
    """
    scheduler = AutomationScheduler(clock=clock, batch_size=settings.automation_batch_size)
    result = scheduler.sweep(db)
    if result.errors:
        logger.warning(f"Sweep finished with {len(result.errors)} record error(s)")
    return schemas.SweepResponse(success=True, **result.to_dict())


@router.get("/status", response_model=schemas.AutomationStatusResponse)
def get_automation_status(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    """List pending automation records and those executed within the recent window."""
    status = automation_status(db, clock=clock, recent_hours=settings.automation_recent_hours)
    return schemas.AutomationStatusResponse(
        pending=[schemas.AutomationItem.model_validate(a) for a in status["pending"]],
        recent=[schemas.AutomationItem.model_validate(a) for a in status["recent"]],
        timestamp=status["timestamp"],
    )
