# -*- coding: utf-8 -*-

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.batching.manager import BatchJobManager
from ..core.batching.models import JobHandle
from .deps import get_manager, get_owner_id

router = APIRouter()


class SubmitRequest(BaseModel):
    unit_ids: list[str]
    task: str = 'summary'
    options: dict = Field(default_factory=dict)
    shared_context: dict = Field(default_factory=dict)


class ActionRequest(BaseModel):
    action: Literal['cancel', 'retry_failed', 'retry_units', 'resubmit']
    unit_ids: Optional[list[str]] = None


def _job_row(job) -> dict:
    return {
        "job_id": job.id,
        "collection_id": job.collection_id,
        "task": job.task,
        "status": job.status,
        "total_units": job.total_units,
        "success_count": job.success_count,
        "error_count": job.error_count,
        "estimated_cost": job.estimated_cost,
        "actual_cost": job.actual_cost,
        "created_at": job.created_at,
        "completed_at": job.completed_at,
    }


def _handle_response(handle: JobHandle, status_code: int = 200) -> JSONResponse:
    """A handle whose provider step failed is reported as a provider error."""
    if handle.status == 'failed':
        return JSONResponse(status_code=502, content={"error": handle.error, "job_id": handle.job_id})
    return JSONResponse(status_code=status_code, content=handle.to_dict())


@router.post("/batch")
def submit_batch(request: SubmitRequest,
                 owner_id: str = Depends(get_owner_id),
                 manager: BatchJobManager = Depends(get_manager)):
    handle = manager.submit(
        owner_id, request.unit_ids, task=request.task,
        options=request.options, shared_context=request.shared_context
    )
    return _handle_response(handle, status_code=201)


@router.post("/batch/estimate")
def estimate_batch(request: SubmitRequest,
                   owner_id: str = Depends(get_owner_id),
                   manager: BatchJobManager = Depends(get_manager)) -> dict:
    return manager.estimate(
        owner_id, request.unit_ids, task=request.task,
        options=request.options, shared_context=request.shared_context
    )


@router.get("/batch")
def list_batches(status: Optional[str] = None, limit: int = 50,
                 owner_id: str = Depends(get_owner_id),
                 manager: BatchJobManager = Depends(get_manager)) -> list:
    return [_job_row(job) for job in manager.list_jobs(owner_id, status=status, limit=limit)]


@router.get("/batch/{job_id}")
def get_batch(job_id: str,
              owner_id: str = Depends(get_owner_id),
              manager: BatchJobManager = Depends(get_manager)) -> dict:
    return manager.get_status(job_id, owner_id)


@router.post("/batch/{job_id}/actions")
def batch_action(job_id: str, request: ActionRequest,
                 owner_id: str = Depends(get_owner_id),
                 manager: BatchJobManager = Depends(get_manager)):
    match request.action:
        case 'cancel':
            job = manager.cancel(job_id, owner_id)
            return {"job_id": job.id, "status": job.status, "message": "Batch job cancelled"}
        case 'retry_failed':
            return _handle_response(manager.retry_failed(job_id, owner_id))
        case 'retry_units':
            return _handle_response(manager.retry_units(job_id, request.unit_ids or [], owner_id))
        case 'resubmit':
            return _handle_response(manager.resubmit(job_id, owner_id))


@router.post("/batch/{job_id}/results")
def ingest_batch(job_id: str,
                 owner_id: str = Depends(get_owner_id),
                 manager: BatchJobManager = Depends(get_manager)) -> dict:
    return manager.ingest(job_id, owner_id).to_dict()
