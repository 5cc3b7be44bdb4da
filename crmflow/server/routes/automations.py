"""Automation dry-run route."""

from fastapi import APIRouter, Depends, HTTPException

from ...errors import NotFoundError
from ..app import require_app, require_project, verify_api_key
from ..models import DryRunRequest

router = APIRouter()


@router.post("/projects/{slug}/automations/{automation_id}/test", dependencies=[Depends(verify_api_key)])
async def dry_run_automation(slug: str, automation_id: str, req: DryRunRequest):
    """Evaluate an automation against a live record without running any action."""
    project_id = await require_project(slug)
    app = require_app()
    try:
        result = await app.dry_run_automation(project_id, automation_id, req.entity_type, req.entity_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    return result.to_dict()
