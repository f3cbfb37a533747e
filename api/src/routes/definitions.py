"""
Per-repository pipeline definition registry.
"""

from fastapi import APIRouter, Request, HTTPException, Depends
from typing import List
import json

from api.src.deps import get_scheduler
from api.src.models.run import DefinitionResponse
from controller.src.errors import DefinitionInvalid
from controller.src.models.pipeline import PipelineDefinition
from controller.src.services.scheduler import Scheduler

router = APIRouter(prefix="/definitions", tags=["definitions"])

def _response(repository: str, definition: PipelineDefinition) -> DefinitionResponse:
    return DefinitionResponse(
        repository=repository,
        pipeline=definition.name,
        jobs=[job.id for job in definition.jobs],
    )

@router.get("", response_model=List[DefinitionResponse])
async def list_definitions(scheduler: Scheduler = Depends(get_scheduler)):
    store = scheduler.store
    return [_response(repo, store.get(repo)) for repo in store.repositories()]

@router.put("/{repository:path}", response_model=DefinitionResponse)
async def register_definition(
    repository: str,
    request: Request,
    scheduler: Scheduler = Depends(get_scheduler),
):
    """
    Register the pipeline for a repository.
    The body is the YAML text, or JSON with the definition under `definition`.
    """
    body = await request.body()
    raw = body.decode("utf-8", errors="replace")

    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            payload = json.loads(raw)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        raw = payload.get("definition", payload) if isinstance(payload, dict) else payload

    try:
        definition = scheduler.store.register(repository, raw)
    except DefinitionInvalid as e:
        raise HTTPException(status_code=422, detail=str(e))

    return _response(repository, definition)

@router.get("/{repository:path}", response_model=DefinitionResponse)
async def get_definition(repository: str, scheduler: Scheduler = Depends(get_scheduler)):
    definition = scheduler.store.get(repository)
    if definition is None:
        raise HTTPException(status_code=404, detail="Pipeline definition not found")
    return _response(repository, definition)

@router.delete("/{repository:path}")
async def delete_definition(repository: str, scheduler: Scheduler = Depends(get_scheduler)):
    if not scheduler.store.remove(repository):
        raise HTTPException(status_code=404, detail="Pipeline definition not found")
    return {"status": "deleted", "repository": repository}
