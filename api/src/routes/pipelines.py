import asyncio

from fastapi import APIRouter, Depends, HTTPException
from typing import List, Optional

from api.src.deps import get_scheduler
from api.src.models.run import PipelineRunResponse, run_response
from controller.src.errors import RunNotFound
from controller.src.models.run import Run, RunStatus
from controller.src.services.scheduler import Scheduler
from controller.src.services.status_reporter import DatabaseSink, MemorySink

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

def _get_run(scheduler: Scheduler, run_id: str) -> Run:
    try:
        return scheduler.get_run(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[RunStatus] = None,
    branch: Optional[str] = None,
    repository: Optional[str] = None,
    scheduler: Scheduler = Depends(get_scheduler),
):
    """List pipeline runs, newest first."""
    runs = scheduler.list_runs(branch=branch, status=status, repository=repository)
    return [run_response(run) for run in runs[offset:offset + limit]]

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: str, scheduler: Scheduler = Depends(get_scheduler)):
    """Get a specific pipeline run, from the archive once it is no longer in memory."""
    try:
        return run_response(scheduler.get_run(run_id))
    except RunNotFound:
        pass

    archive = scheduler.reporter.get_sink(DatabaseSink)
    archived = await asyncio.to_thread(archive.get_run, run_id) if archive is not None else None
    if archived is None:
        raise HTTPException(status_code=404, detail="Pipeline run not found")
    return archived

@router.get("/runs/{run_id}/logs")
async def get_run_logs(
    run_id: str,
    job: Optional[str] = None,
    scheduler: Scheduler = Depends(get_scheduler),
):
    """
    Output of every started step. Streamed lines are served from the
    memory sink when configured, otherwise the captured output tail.
    """
    run = _get_run(scheduler, run_id)
    memory = scheduler.reporter.get_sink(MemorySink)

    jobs = []
    for execution in run.jobs.values():
        if job is not None and execution.name != job:
            continue
        steps = []
        for step in execution.steps:
            if memory is not None:
                logs = "\n".join(memory.lines(run_id, execution.name, step.name))
            else:
                logs = step.output
            steps.append({
                "name": step.name,
                "status": step.status.value,
                "logs": logs,
                "started_at": step.started_at,
                "finished_at": step.finished_at,
            })
        jobs.append({"name": execution.name, "status": execution.status.value, "steps": steps})

    return {"run_id": run_id, "jobs": jobs}

@router.get("/runs/{run_id}/events")
async def get_run_events(run_id: str, scheduler: Scheduler = Depends(get_scheduler)):
    """Status updates published for a run, oldest first."""
    _get_run(scheduler, run_id)
    memory = scheduler.reporter.get_sink(MemorySink)
    if memory is None:
        raise HTTPException(status_code=404, detail="Status history is not recorded")
    return {
        "run_id": run_id,
        "events": [
            update.model_dump(mode="json", by_alias=True, exclude_none=True)
            for update in memory.history(run_id)
        ],
    }

@router.post("/runs/{run_id}/cancel", response_model=PipelineRunResponse)
async def cancel_run(run_id: str, scheduler: Scheduler = Depends(get_scheduler)):
    """Request cancellation. Running jobs settle asynchronously."""
    try:
        run = await scheduler.cancel(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Pipeline run not found")
    return run_response(run)

@router.get("/stats")
async def get_pipeline_stats(scheduler: Scheduler = Depends(get_scheduler)):
    """Get pipeline statistics."""
    stats = scheduler.stats()
    stats["repositories"] = len(scheduler.store.repositories())
    return stats
