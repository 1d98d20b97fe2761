import logging
from typing import Any
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from modqueue.core import deps
from modqueue.modules.moderation.schemas import CronResult
from modqueue.modules.worker.runner import JobWorker

logger = logging.getLogger(__name__)

router = APIRouter()

@router.api_route("/cron", methods=["GET", "POST"], response_model=CronResult)
async def run_cron(
    _: None = Depends(deps.verify_cron_secret),
    worker: JobWorker = Depends(deps.get_job_worker)
) -> Any:
    """Scheduler entry point: recover stale jobs, then drain one batch."""
    try:
        result = await worker.run_once()
    except Exception as e:
        logger.error(f"[Worker] Cron run failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, **result}
