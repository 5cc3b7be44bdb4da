"""Cron-triggered batch routes."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..app import require_app, verify_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter()


@router.api_route(
    "/cron/process-sequences",
    methods=["GET", "POST"],
    dependencies=[Depends(verify_cron_secret)],
)
async def process_sequences():
    """Run one tick of due sequence steps and time-based automations."""
    app = require_app()
    try:
        return await app.process_due_work()
    except Exception as e:
        logger.exception("Cron run failed")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
