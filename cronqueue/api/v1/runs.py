from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict

router = APIRouter()

class JobStatusResponse(BaseModel):
    name: str
    pending: int
    leased: int
    next_run_at: Optional[datetime] = None
    max_attempts_seen: int
    queue: Optional[str] = None
    priority: Optional[int] = None
    cron: Optional[str] = None
    known: bool
    model_config = ConfigDict(from_attributes=True)

class RunsStatusResponse(BaseModel):
    jobs: list[JobStatusResponse]

@router.get("/status", response_model=RunsStatusResponse)
async def runs_status(request: Request):
    """
    Per-job counts of pending and leased runs, as seen by this host's scheduler.
    """
    scheduler = request.app.state.scheduler
    report = await scheduler.status()
    return RunsStatusResponse(jobs=[JobStatusResponse.model_validate(s) for s in report])
