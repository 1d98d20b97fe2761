from typing import Any, List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query

from modqueue.core import deps
from modqueue.modules.auth import models as auth_models
from modqueue.modules.moderation import schemas
from modqueue.modules.moderation.models import ActorType, TargetType
from modqueue.modules.moderation.service import ModerationService
from modqueue.modules.moderation.states import ScanStatus
from modqueue.modules.worker.runner import JobWorker

router = APIRouter()

def _actor_type(user: auth_models.User) -> ActorType:
    return ActorType.MODERATOR if user.role == auth_models.UserRole.MODERATOR else ActorType.ADMIN

# --- Review queue ---

@router.get("/queue", response_model=schemas.QueueResponse)
async def read_review_queue(
    status: Optional[ScanStatus] = ScanStatus.PENDING_REVIEW,
    target_type: Optional[TargetType] = None,
    model_id: Optional[UUID] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: auth_models.User = Depends(deps.get_current_staff_user),
    service: ModerationService = Depends(deps.get_moderation_service)
) -> Any:
    return await service.get_review_queue(status=status, target_type=target_type, model_id=model_id, page=page, limit=limit)

@router.post("/scans/rescan", response_model=schemas.RescanResponse)
async def rescan_scans(
    rescan_in: schemas.RescanRequest,
    current_user: auth_models.User = Depends(deps.get_current_staff_user),
    service: ModerationService = Depends(deps.get_moderation_service)
) -> Any:
    job_id = await service.request_rescan(rescan_in.scan_ids, current_user.id, priority=rescan_in.priority)
    return {"job_id": job_id, "scan_count": len(set(rescan_in.scan_ids))}

@router.post("/scans/{scan_id}/review", response_model=schemas.ScanRead)
async def review_scan(
    scan_id: str,
    review_in: schemas.ReviewRequest,
    current_user: auth_models.User = Depends(deps.get_current_staff_user),
    service: ModerationService = Depends(deps.get_moderation_service)
) -> Any:
    return await service.review_scan(
        scan_id,
        current_user.id,
        review_in.action,
        notes=review_in.notes,
        add_as_anchor=review_in.add_as_anchor,
        actor_type=_actor_type(current_user),
    )

@router.post("/scans/{scan_id}/scan-now", response_model=schemas.ScanRead)
async def scan_now(
    scan_id: str,
    current_user: auth_models.User = Depends(deps.get_current_staff_user),
    worker: JobWorker = Depends(deps.get_job_worker)
) -> Any:
    return await worker.trigger_immediate_scan(scan_id, current_user.id)

@router.get("/scans/{scan_id}/status", response_model=schemas.CreatorUploadStatus)
async def read_upload_status(
    scan_id: str,
    current_user: auth_models.User = Depends(deps.get_current_active_user),
    service: ModerationService = Depends(deps.get_moderation_service)
) -> Any:
    return await service.get_creator_upload_status(scan_id, current_user.id)

# --- Anchors ---

@router.get("/anchors", response_model=List[schemas.AnchorRead])
async def read_anchors(
    model_id: UUID,
    current_user: auth_models.User = Depends(deps.get_current_admin_user),
    service: ModerationService = Depends(deps.get_moderation_service)
) -> Any:
    return await service.get_model_anchors(model_id)

@router.post("/anchors", response_model=schemas.AnchorRead)
async def create_anchor(
    anchor_in: schemas.AnchorCreate,
    current_user: auth_models.User = Depends(deps.get_current_admin_user),
    service: ModerationService = Depends(deps.get_moderation_service)
) -> Any:
    return await service.add_model_anchor(
        anchor_in.model_id, anchor_in.storage_key, anchor_in.storage_url, current_user.id, note=anchor_in.note
    )

@router.delete("/anchors/{anchor_id}")
async def delete_anchor(
    anchor_id: str,
    current_user: auth_models.User = Depends(deps.get_current_admin_user),
    service: ModerationService = Depends(deps.get_moderation_service)
) -> Any:
    await service.remove_model_anchor(anchor_id, current_user.id)
    return {"success": True}

# --- Stats & jobs ---

@router.get("/stats", response_model=schemas.ModerationStats)
async def read_stats(
    current_user: auth_models.User = Depends(deps.get_current_staff_user),
    service: ModerationService = Depends(deps.get_moderation_service),
    worker: JobWorker = Depends(deps.get_job_worker)
) -> Any:
    return {
        "scans": await service.get_moderation_stats(),
        "jobs": await worker.get_queue_stats(),
    }

@router.post("/jobs/{job_id}/cancel", response_model=schemas.JobRead)
async def cancel_job(
    job_id: str,
    current_user: auth_models.User = Depends(deps.get_current_staff_user),
    worker: JobWorker = Depends(deps.get_job_worker)
) -> Any:
    return await worker.cancel_job(job_id, current_user.id)

@router.post("/jobs/{job_id}/retry", response_model=schemas.JobRead)
async def retry_job(
    job_id: str,
    current_user: auth_models.User = Depends(deps.get_current_staff_user),
    worker: JobWorker = Depends(deps.get_job_worker)
) -> Any:
    return await worker.retry_job(job_id, current_user.id)

@router.patch("/jobs/{job_id}/priority", response_model=schemas.JobRead)
async def update_job_priority(
    job_id: str,
    priority_in: schemas.PriorityUpdate,
    current_user: auth_models.User = Depends(deps.get_current_staff_user),
    worker: JobWorker = Depends(deps.get_job_worker)
) -> Any:
    return await worker.prioritize_job(job_id, priority_in.priority)
