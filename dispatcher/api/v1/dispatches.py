from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from dispatcher.api.deps import DispatchServiceDep
from dispatcher.domain.errors import (
    BatchSourceError,
    JobAlreadyCompletedError,
    JobNotFoundError,
    ReentrancyError,
    ValidationError,
)
from dispatcher.domain.models import JobState
from dispatcher.domain.states import JobPhase, Severity
from dispatcher.services.dispatch_service import DispatchService

router = APIRouter()

class StartDispatch(BaseModel):
    access_token: Optional[str] = None

class SummaryResponse(BaseModel):
    success: int
    failed: int
    rate_limited: int
    retried: int

class DispatchResponse(BaseModel):
    job_id: str
    phase: JobPhase
    active: bool
    total: int
    current: int
    succeeded: int
    failed: int
    rate_limited: int
    total_attempts: int
    stored_phase: Optional[JobPhase] = None
    summary: Optional[SummaryResponse] = None
    last_error: Optional[str] = None

class ActivityEntry(BaseModel):
    timestamp: datetime
    message: str
    severity: Severity

async def _describe(service: DispatchService, job_id: str) -> DispatchResponse:
    state: Optional[JobState] = service.engine.get_state(job_id)
    if state is None:
        snapshot = await service.store.load(job_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Dispatch not found")
        state = snapshot.to_state()

    summary = await service.store.load_summary(job_id)
    return DispatchResponse(
        job_id=job_id,
        phase=state.phase,
        active=service.is_running(job_id),
        total=state.total,
        current=state.processed,
        succeeded=len(state.succeeded),
        failed=len(state.failed),
        rate_limited=state.rate_limited_count,
        total_attempts=state.total_attempts,
        stored_phase=await service.store.load_phase(job_id),
        summary=SummaryResponse(**asdict(summary)) if summary else None,
        last_error=service.last_errors.get(job_id),
    )

@router.post("/{job_id}/start", response_model=DispatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_dispatch(job_id: str, payload: StartDispatch, service: DispatchServiceDep):
    try:
        await service.start(job_id, access_token=payload.access_token)
    except (ReentrancyError, JobAlreadyCompletedError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BatchSourceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return await _describe(service, job_id)

@router.get("/{job_id}", response_model=DispatchResponse)
async def get_dispatch(job_id: str, service: DispatchServiceDep):
    return await _describe(service, job_id)

@router.post("/{job_id}/pause", response_model=DispatchResponse)
async def pause_dispatch(job_id: str, service: DispatchServiceDep):
    try:
        service.engine.pause(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="No active dispatch for this job")
    return await _describe(service, job_id)

@router.post("/{job_id}/resume", response_model=DispatchResponse)
async def resume_dispatch(job_id: str, service: DispatchServiceDep):
    try:
        service.engine.resume(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="No active dispatch for this job")
    return await _describe(service, job_id)

@router.post("/{job_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
async def cancel_dispatch(job_id: str, service: DispatchServiceDep):
    try:
        service.engine.cancel(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="No active dispatch for this job")
    return {"job_id": job_id, "cancel_requested": True}

@router.delete("/{job_id}/progress", status_code=status.HTTP_204_NO_CONTENT)
async def clear_progress(job_id: str, service: DispatchServiceDep):
    try:
        await service.clear(job_id)
    except ReentrancyError:
        raise HTTPException(status_code=409, detail="Dispatch is still active")

activity_router = APIRouter()

@activity_router.get("", response_model=list[ActivityEntry])
async def list_activity(service: DispatchServiceDep):
    # Newest first
    return [
        ActivityEntry(timestamp=e.timestamp, message=e.message, severity=e.severity)
        for e in reversed(service.engine.activity.entries())
    ]
