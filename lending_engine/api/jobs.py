"""
Queue administration endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .dependencies import LendingSystem, get_lending_system, to_http_error
from .schemas import DrainRequest
from ..jobs import JobStatus

router = APIRouter()


@router.get("")
def queue_status(system: LendingSystem = Depends(get_lending_system)):
    return {
        "counts": system.queue.counts(),
        "workers_running": system.worker_pool.running
    }


@router.get("/list")
def list_jobs(
    status_filter: Optional[str] = Query(None, alias="status"),
    tenant_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        job_status = JobStatus(status_filter) if status_filter else None
    except ValueError as e:
        raise to_http_error(e)
    jobs = system.queue.list_jobs(status=job_status, tenant_id=tenant_id)
    return {"jobs": [job.to_dict() for job in jobs], "count": len(jobs)}


@router.get("/{job_id}")
def get_job(job_id: str, system: LendingSystem = Depends(get_lending_system)):
    job = system.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


@router.post("/drain")
def drain_queue(
    request: Optional[DrainRequest] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Process queued jobs on the request thread until the queue is idle"""
    max_jobs = request.max_jobs if request else None
    return system.worker_pool.drain(max_jobs=max_jobs or system.config.worker_batch_size)


@router.post("/recover")
def recover_stuck(system: LendingSystem = Depends(get_lending_system)):
    """Return stuck jobs and events to the queue and re-route events that never got a job"""
    recovered = system.worker_pool.recover()
    rerouted = system.ingest.enqueue_pending(limit=system.config.worker_batch_size)
    return {**recovered, "enqueued": len(rerouted)}
