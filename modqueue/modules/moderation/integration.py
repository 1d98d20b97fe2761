"""
Hooks the upload paths call once a file is in storage.

Queueing is fire-and-forget from the uploader's point of view: a failure to
queue is logged and reported as ``None`` so the upload itself still succeeds.
"""
import logging
from typing import Optional

from modqueue.core.errors import ModerationError
from modqueue.modules.moderation.models import TargetType
from modqueue.modules.moderation.service import ModerationService, IdLike

logger = logging.getLogger(__name__)

async def queue_upload_for_moderation(
    service: ModerationService,
    target_type: TargetType,
    target_id: str,
    model_id: Optional[IdLike],
    creator_id: IdLike,
    storage_key: str,
    storage_url: str,
    priority: int = 5
) -> Optional[str]:
    try:
        scan_id = await service.create_scan(
            target_type=target_type,
            target_id=target_id,
            model_id=model_id,
            creator_id=creator_id,
            storage_key=storage_key,
            storage_url=storage_url,
            priority=priority,
        )
    except ModerationError as e:
        logger.error(f"[Moderation] Could not queue {target_type} {target_id}: {e.message}")
        return None
    return scan_id

async def on_model_profile_upload(service: ModerationService, model_id: IdLike, creator_id: IdLike, storage_key: str, storage_url: str) -> Optional[str]:
    return await queue_upload_for_moderation(
        service, TargetType.MODEL_PROFILE, str(model_id), model_id, creator_id, storage_key, storage_url, priority=3
    )

async def on_gallery_upload(service: ModerationService, image_id: str, model_id: IdLike, creator_id: IdLike, storage_key: str, storage_url: str) -> Optional[str]:
    return await queue_upload_for_moderation(
        service, TargetType.MODEL_GALLERY, image_id, model_id, creator_id, storage_key, storage_url
    )

async def on_ppv_upload(service: ModerationService, content_id: str, model_id: Optional[IdLike], creator_id: IdLike, storage_key: str, storage_url: str) -> Optional[str]:
    return await queue_upload_for_moderation(
        service, TargetType.PPV_CONTENT, content_id, model_id, creator_id, storage_key, storage_url
    )

async def on_model_onboarding(service: ModerationService, model_id: IdLike, creator_id: IdLike, storage_key: str, storage_url: str) -> Optional[str]:
    # New models jump the queue so creators aren't left waiting to publish.
    return await queue_upload_for_moderation(
        service, TargetType.ONBOARDING, str(model_id), model_id, creator_id, storage_key, storage_url, priority=2
    )
