"""Trigger event ingestion route."""

from fastapi import APIRouter, Depends

from ...models import TriggerEvent
from ..app import require_app, require_project, verify_api_key
from ..models import TriggerEventRequest

router = APIRouter()


@router.post("/projects/{slug}/events", status_code=202, dependencies=[Depends(verify_api_key)])
async def ingest_event(slug: str, req: TriggerEventRequest):
    """Hand a trigger event to the automation engine. Fire-and-forget."""
    project_id = await require_project(slug)
    await require_app().emit_automation_event(TriggerEvent(
        project_id=project_id,
        trigger_type=req.trigger_type,
        entity_type=req.entity_type,
        entity_id=req.entity_id,
        data=req.data,
        previous_data=req.previous_data,
        metadata=req.metadata,
    ))
    return {"status": "accepted"}
