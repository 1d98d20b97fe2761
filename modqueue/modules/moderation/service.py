import logging
import math
import time
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID

from modqueue.core.config import Settings
from modqueue.core.db import Database
from modqueue.core.errors import ValidationError, NotFoundError, InvalidStateError
from modqueue.modules.moderation import store
from modqueue.modules.moderation.models import (
    ModerationScan, ModelAnchor, ModerationJob, TargetType, JobType, ReviewAction, ActorType,
    ModerationFlag, utcnow,
)
from modqueue.modules.moderation.policy import determine_status
from modqueue.modules.moderation.states import ScanStatus, JobStatus, RESCANNABLE
from modqueue.modules.moderation.vision import VisionClient, VisionResult

logger = logging.getLogger(__name__)

IdLike = Union[str, UUID]

# What a creator sees about their own upload. No scores, no flags.
CREATOR_STATUS_MESSAGES = {
    ScanStatus.PENDING_SCAN: "Processing upload...",
    ScanStatus.SCANNING: "Checking content...",
    ScanStatus.APPROVED: "Approved",
    ScanStatus.PENDING_REVIEW: "Under review for compliance",
    ScanStatus.REJECTED: "Content not approved",
    ScanStatus.FAILED: "Processing error - please retry",
}

def as_uuid(value: IdLike, name: str = "id") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}: {value!r}")

def _check_priority(priority: int) -> int:
    if not isinstance(priority, int) or isinstance(priority, bool) or not 1 <= priority <= 10:
        raise ValidationError("priority must be an integer between 1 (highest) and 10 (lowest)")
    return priority

def _job_type_for(target_type: TargetType) -> JobType:
    if target_type == TargetType.ONBOARDING:
        return JobType.MODEL_ONBOARDING
    return JobType.CONTENT_UPLOAD


class ModerationService:
    """
    Orchestrates scans, anchors and reviews.
    Holds no per-request state; everything lives in the database.
    """

    def __init__(self, database: Database, vision: VisionClient, settings: Settings):
        self.database = database
        self.vision = vision
        self.settings = settings

    # -- Scan creation -------------------------------------------------------

    async def create_scan(
        self,
        target_type: Union[str, TargetType],
        target_id: str,
        model_id: Optional[IdLike],
        creator_id: IdLike,
        storage_key: str,
        storage_url: str,
        priority: int = 5
    ) -> str:
        try:
            target_type = TargetType(target_type)
        except ValueError:
            raise ValidationError(f"Unknown target type: {target_type!r}")
        if not target_id:
            raise ValidationError("target_id is required")
        if not creator_id:
            raise ValidationError("creator_id is required")
        if not storage_key or not storage_url:
            raise ValidationError("storage_key and storage_url are required")
        priority = _check_priority(priority)

        fields = dict(
            target_type=target_type,
            target_id=str(target_id),
            model_id=as_uuid(model_id, "model_id") if model_id else None,
            creator_id=as_uuid(creator_id, "creator_id"),
            storage_key=storage_key,
            storage_url=storage_url,
            priority=priority,
            flags=[],
        )

        if not self.settings.MODERATION_ENABLED:
            async with self.database.session() as db:
                scan = await store.create_scan(
                    db, status=ScanStatus.APPROVED,
                    staff_summary="Moderation bypassed - system disabled", **fields
                )
                await db.commit()
            logger.info(f"[Moderation] Disabled; auto-approved scan {scan.id}")
            return str(scan.id)

        async with self.database.session() as db:
            scan = await store.create_scan(db, status=ScanStatus.PENDING_SCAN, **fields)
            await db.commit()

        try:
            async with self.database.session() as db:
                job = await store.create_job(
                    db,
                    job_type=_job_type_for(target_type),
                    scan_id=scan.id,
                    priority=priority,
                    max_attempts=self.settings.WORKER_MAX_ATTEMPTS,
                )
                await db.commit()
        except Exception as e:
            # The scan is committed; stale recovery queues a job for it later.
            logger.error(f"[Moderation] Scan {scan.id} saved but its job was not: {e}", exc_info=True)
            raise

        logger.info(f"[Moderation] Queued scan {scan.id} ({target_type.value}) as job {job.id}, priority {priority}")
        return str(scan.id)

    async def get_scan(self, scan_id: IdLike) -> ModerationScan:
        async with self.database.session() as db:
            scan = await store.get_scan(db, as_uuid(scan_id, "scan_id"))
        if not scan:
            raise NotFoundError("Scan not found")
        return scan

    # -- Anchors -------------------------------------------------------------

    async def get_model_anchors(self, model_id: IdLike) -> List[ModelAnchor]:
        async with self.database.session() as db:
            return await store.list_active_anchors(db, [as_uuid(model_id, "model_id")])

    async def add_model_anchor(
        self,
        model_id: IdLike,
        storage_key: str,
        storage_url: str,
        added_by: IdLike,
        note: Optional[str] = None,
        source_scan_id: Optional[UUID] = None
    ) -> ModelAnchor:
        if not model_id:
            raise ValidationError("model_id is required")
        if not storage_key or not storage_url:
            raise ValidationError("storage_key and storage_url are required")
        model_uuid = as_uuid(model_id, "model_id")
        added_by = as_uuid(added_by, "added_by")

        async with self.database.session() as db:
            existing = await store.count_active_anchors(db, model_uuid)
            limit = self.settings.MODERATION_MAX_ANCHORS_PER_MODEL
            if existing >= limit:
                raise ValidationError(f"Maximum {limit} anchors per model")

            anchor = await store.create_anchor(
                db,
                model_id=model_uuid,
                storage_key=storage_key,
                storage_url=storage_url,
                added_by=added_by,
                note=note,
                source_scan_id=source_scan_id,
            )
            await store.add_audit_log(
                db,
                model_id=model_uuid,
                actor_id=added_by,
                actor_type=ActorType.ADMIN,
                action="anchor_added",
                details={"anchor_id": str(anchor.id), "storage_key": storage_key},
            )
            await db.commit()
        return anchor

    async def remove_model_anchor(self, anchor_id: IdLike, removed_by: IdLike) -> None:
        anchor_uuid = as_uuid(anchor_id, "anchor_id")
        removed_by = as_uuid(removed_by, "removed_by")
        async with self.database.session() as db:
            anchor = await store.get_anchor(db, anchor_uuid)
            if not anchor or not await store.deactivate_anchor(db, anchor_uuid, removed_by):
                raise NotFoundError("Anchor not found")
            await store.add_audit_log(
                db,
                model_id=anchor.model_id,
                actor_id=removed_by,
                actor_type=ActorType.ADMIN,
                action="anchor_removed",
                details={"anchor_id": str(anchor_uuid)},
            )
            await db.commit()

    # -- Scanning ------------------------------------------------------------

    async def run_vision_scan(self, scan: ModerationScan) -> Tuple[VisionResult, int]:
        """Calls the vision client for one scan. Returns the result and the anchor count it was judged against."""
        anchors = await self.get_model_anchors(scan.model_id) if scan.model_id else []
        anchor_urls = [a.storage_url for a in anchors if a.storage_url]
        result = await self.vision.analyze(scan.storage_url or scan.storage_key, anchor_urls)
        return result, len(anchors)

    async def process_scan_job(self, job_id: IdLike, worker_id: Optional[str] = None) -> JobStatus:
        """
        Runs every scan a claimed job references and settles the job.

        Scan failures are recorded (scan -> failed, job -> failed) and reported
        through the return value instead of raised. Every scan and job write is
        conditional on the job still being processing under `worker_id` (the
        current holder when omitted). Once the job has been recovered or handed
        to another worker, whatever this run produces is dropped.
        """
        job_uuid = as_uuid(job_id, "job_id")
        async with self.database.session() as db:
            job = await store.get_job(db, job_uuid)
        if not job:
            raise NotFoundError("Job not found")
        if job.status != JobStatus.PROCESSING:
            raise InvalidStateError(f"Job {job.id} is {job.status.value}, not processing")
        if worker_id is not None and job.worker_id != worker_id:
            raise InvalidStateError(f"Job {job.id} is held by {job.worker_id}, not {worker_id}")
        owner = (job.id, job.worker_id)

        scan_ids = job.target_scan_ids
        errors: List[str] = []
        for scan_id in scan_ids:
            try:
                await self._scan_one(scan_id, owner)
            except Exception as e:
                logger.error(f"[Moderation] Scan {scan_id} failed in job {job.id}: {e}", exc_info=True)
                await self.fail_scan(scan_id, str(e), owner=owner)
                errors.append(f"{scan_id}: {e}" if len(scan_ids) > 1 else str(e))

        # A bulk job only fails outright when nothing in it could be scanned.
        failed = bool(errors) and len(errors) == len(scan_ids)
        now = utcnow()
        async with self.database.session() as db:
            if failed:
                status = JobStatus.FAILED
                settled = await store.update_job(
                    db, job.id, JobStatus.PROCESSING, held_by=job.worker_id,
                    status=JobStatus.FAILED,
                    last_error="; ".join(errors),
                    attempts=ModerationJob.attempts + 1,
                )
            else:
                status = JobStatus.COMPLETED
                settled = await store.update_job(
                    db, job.id, JobStatus.PROCESSING, held_by=job.worker_id,
                    status=JobStatus.COMPLETED,
                    completed_at=now,
                    last_error="; ".join(errors) or None,
                )
            await db.commit()

        if not settled:
            logger.info(f"[Moderation] Job {job.id} no longer held by {job.worker_id}; result ignored")
        return status

    async def _scan_one(self, scan_id: UUID, owner: Optional[Tuple[UUID, str]] = None) -> Optional[ScanStatus]:
        started = time.monotonic()
        async with self.database.session() as db:
            scan = await store.get_scan(db, scan_id)
            if not scan:
                raise NotFoundError(f"Scan not found: {scan_id}")
            if scan.status != ScanStatus.PENDING_SCAN:
                logger.warning(f"[Moderation] Scan {scan_id} is {scan.status.value}, skipping")
                return None
            moved = await store.update_scan(
                db, scan_id, ScanStatus.PENDING_SCAN,
                owner=owner,
                status=ScanStatus.SCANNING,
                scan_started_at=utcnow(),
                error_message=None,
            )
            await db.commit()
        if not moved:
            logger.info(f"[Moderation] Scan {scan_id} picked up elsewhere, skipping")
            return None

        result, anchor_count = await self.run_vision_scan(scan)
        decision = determine_status(result, anchor_count, self.settings)
        duration_ms = int((time.monotonic() - started) * 1000)

        async with self.database.session() as db:
            applied = await store.update_scan(
                db, scan_id, ScanStatus.SCANNING,
                owner=owner,
                status=decision.status,
                flags=[f.value for f in decision.flags],
                confidence=result.confidence,
                detected_faces=result.detected_faces,
                face_consistency_score=result.face_consistency_score,
                celebrity_risk_score=result.celebrity_risk_score,
                real_person_risk_score=result.real_person_risk_score,
                deepfake_risk_score=result.deepfake_risk_score,
                minor_risk_score=result.minor_risk_score,
                staff_summary=result.staff_summary,
                scan_model=result.model or None,
                scan_duration_ms=duration_ms,
                scan_completed_at=utcnow(),
            )
            if not applied:
                await db.rollback()
                logger.info(f"[Moderation] Late vision result for scan {scan_id} ignored")
                return None
            await store.add_audit_log(
                db,
                scan_id=scan_id,
                model_id=scan.model_id,
                creator_id=scan.creator_id,
                actor_type=ActorType.SYSTEM,
                action="scan_completed",
                previous_status=ScanStatus.SCANNING.value,
                new_status=decision.status.value,
                details={**result.as_dict(), "flags": [f.value for f in decision.flags],
                         "reason": decision.reason, "duration_ms": duration_ms},
            )
            await db.commit()

        logger.info(f"[Moderation] Scan {scan_id} -> {decision.status.value} ({decision.reason})")
        if ModerationFlag.MINOR_APPEARANCE_RISK in decision.flags or ModerationFlag.YOUTH_CODED_APPEARANCE in decision.flags:
            self._alert_admins(scan_id, "CRITICAL: Minor risk detected", result)
        return decision.status

    async def fail_scan(self, scan_id: UUID, message: str, owner: Optional[Tuple[UUID, str]] = None) -> bool:
        """
        Marks a scan failed from whichever pre-result state it is in. With
        `owner`, only while that (job, worker) pair still holds the job.
        """
        async with self.database.session() as db:
            failed = False
            for expected in (ScanStatus.SCANNING, ScanStatus.PENDING_SCAN):
                failed = await store.update_scan(
                    db, scan_id, expected,
                    owner=owner,
                    status=ScanStatus.FAILED,
                    error_message=message,
                    staff_summary=f"Scan failed: {message}",
                    scan_completed_at=utcnow(),
                )
                if failed:
                    await store.add_audit_log(
                        db,
                        scan_id=scan_id,
                        actor_type=ActorType.SYSTEM,
                        action="scan_failed",
                        previous_status=expected.value,
                        new_status=ScanStatus.FAILED.value,
                        details={"error": message},
                    )
                    break
            await db.commit()
        return failed

    async def reset_scan(self, scan_id: UUID, reason: str) -> bool:
        """Puts a scan that never produced a result (scanning or failed) back to pending_scan."""
        async with self.database.session() as db:
            reset = False
            for expected in (ScanStatus.SCANNING, ScanStatus.FAILED):
                reset = await store.update_scan(
                    db, scan_id, expected,
                    status=ScanStatus.PENDING_SCAN,
                    scan_started_at=None,
                    error_message=None,
                )
                if reset:
                    await store.add_audit_log(
                        db,
                        scan_id=scan_id,
                        actor_type=ActorType.SYSTEM,
                        action="scan_requeued",
                        previous_status=expected.value,
                        new_status=ScanStatus.PENDING_SCAN.value,
                        details={"reason": reason},
                    )
                    break
            await db.commit()
        return reset

    def _alert_admins(self, scan_id: UUID, subject: str, result: VisionResult):
        logger.warning(f"[ADMIN ALERT] {subject} | scan={scan_id} | {result.as_dict()}")

    # -- Review --------------------------------------------------------------

    async def review_scan(
        self,
        scan_id: IdLike,
        reviewer_id: IdLike,
        action: Union[str, ReviewAction],
        notes: Optional[str] = None,
        add_as_anchor: bool = False,
        actor_type: ActorType = ActorType.ADMIN
    ) -> ModerationScan:
        """
        Records a human decision on a scan waiting in pending_review.

        ``escalated`` keeps the scan in pending_review, bumps it to priority 1
        and records the escalation; the scan can then be reviewed again.
        """
        try:
            action = ReviewAction(action)
        except ValueError:
            raise ValidationError(f"Invalid action: {action!r}")
        scan_uuid = as_uuid(scan_id, "scan_id")
        reviewer_uuid = as_uuid(reviewer_id, "reviewer_id")

        async with self.database.session() as db:
            scan = await store.get_scan(db, scan_uuid)
            if not scan:
                raise NotFoundError("Scan not found")
            if scan.status != ScanStatus.PENDING_REVIEW:
                raise InvalidStateError(f"Scan is {scan.status.value}; only pending_review scans can be reviewed")

            wants_anchor = add_as_anchor and action == ReviewAction.APPROVED
            if wants_anchor and scan.model_id:
                count = await store.count_active_anchors(db, scan.model_id)
                if count >= self.settings.MODERATION_MAX_ANCHORS_PER_MODEL:
                    raise ValidationError(
                        f"Maximum {self.settings.MODERATION_MAX_ANCHORS_PER_MODEL} anchors per model"
                    )

            new_status = ScanStatus.PENDING_REVIEW if action == ReviewAction.ESCALATED else ScanStatus(action.value)
            values: Dict[str, Any] = dict(
                status=new_status,
                reviewed_by=reviewer_uuid,
                reviewed_at=utcnow(),
                review_notes=notes,
                review_action=action,
            )
            if action == ReviewAction.ESCALATED:
                values["priority"] = 1

            if not await store.update_scan(db, scan_uuid, ScanStatus.PENDING_REVIEW, **values):
                raise InvalidStateError("Scan was reviewed by someone else")

            await store.add_audit_log(
                db,
                scan_id=scan_uuid,
                model_id=scan.model_id,
                creator_id=scan.creator_id,
                actor_id=reviewer_uuid,
                actor_type=actor_type,
                action=f"review_{action.value}",
                previous_status=ScanStatus.PENDING_REVIEW.value,
                new_status=new_status.value,
                details={"notes": notes, "added_as_anchor": bool(wants_anchor and scan.model_id)},
            )
            await db.commit()

        if wants_anchor:
            if scan.model_id:
                await self.add_model_anchor(
                    scan.model_id, scan.storage_key, scan.storage_url, reviewer_uuid,
                    note="Added during review approval", source_scan_id=scan_uuid,
                )
            else:
                logger.warning(f"[Moderation] Scan {scan_uuid} has no model; not added as anchor")

        logger.info(f"[Moderation] Scan {scan_uuid} reviewed by {reviewer_uuid}: {action.value}")
        return await self.get_scan(scan_uuid)

    async def request_rescan(self, scan_ids: Iterable[IdLike], requested_by: IdLike, priority: int = 5) -> str:
        """Sends settled scans back through the scanner. Returns the id of the job that will run them."""
        ids: List[UUID] = []
        for value in scan_ids:
            scan_uuid = as_uuid(value, "scan_id")
            if scan_uuid not in ids:
                ids.append(scan_uuid)
        if not ids:
            raise ValidationError("At least one scan id is required")
        priority = _check_priority(priority)
        requested_by = as_uuid(requested_by, "requested_by")

        async with self.database.session() as db:
            scans = []
            for scan_uuid in ids:
                scan = await store.get_scan(db, scan_uuid)
                if not scan:
                    raise NotFoundError(f"Scan not found: {scan_uuid}")
                if scan.status not in RESCANNABLE:
                    raise InvalidStateError(f"Scan {scan_uuid} is {scan.status.value} and cannot be re-scanned")
                scans.append(scan)

        for scan in scans:
            async with self.database.session() as db:
                moved = await store.update_scan(
                    db, scan.id, scan.status,
                    status=ScanStatus.PENDING_SCAN,
                    flags=[],
                    error_message=None,
                )
                if not moved:
                    raise InvalidStateError(f"Scan {scan.id} changed while requesting re-scan")
                await store.add_audit_log(
                    db,
                    scan_id=scan.id,
                    model_id=scan.model_id,
                    creator_id=scan.creator_id,
                    actor_id=requested_by,
                    actor_type=ActorType.ADMIN,
                    action="rescan_requested",
                    previous_status=scan.status.value,
                    new_status=ScanStatus.PENDING_SCAN.value,
                )
                await db.commit()

        async with self.database.session() as db:
            if len(scans) == 1:
                job = await store.create_job(
                    db, job_type=_job_type_for(scans[0].target_type), scan_id=scans[0].id,
                    priority=priority, max_attempts=self.settings.WORKER_MAX_ATTEMPTS,
                )
            else:
                job = await store.create_job(
                    db, job_type=JobType.BULK_RESCAN, scan_ids=[str(s.id) for s in scans],
                    priority=priority, max_attempts=self.settings.WORKER_MAX_ATTEMPTS,
                )
            await db.commit()
        logger.info(f"[Moderation] Re-scan of {len(scans)} scan(s) queued as job {job.id}")
        return str(job.id)

    # -- Reads ---------------------------------------------------------------

    async def get_moderation_stats(self) -> Dict[str, Any]:
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        async with self.database.session() as db:
            by_status = await store.count_scans_by_status(db)
            approved_today = await store.count_reviewed_since(db, ScanStatus.APPROVED, today)
            rejected_today = await store.count_reviewed_since(db, ScanStatus.REJECTED, today)
            recent_flags = await store.recent_scan_flags(db, utcnow() - timedelta(days=30))
            avg_scan_ms = await store.average_scan_duration_ms(db)

        flag_counts = {flag.value: 0 for flag in ModerationFlag}
        for flags in recent_flags:
            for flag in flags or []:
                if flag in flag_counts:
                    flag_counts[flag] += 1

        status_counts = {status.value: by_status.get(status, 0) for status in ScanStatus}
        return {
            "by_status": status_counts,
            "pending_scans": status_counts["pending_scan"] + status_counts["scanning"],
            "pending_reviews": status_counts["pending_review"],
            "approved_today": approved_today,
            "rejected_today": rejected_today,
            "flag_counts": flag_counts,
            "flagged_celebrity": flag_counts["celeb_risk"] + flag_counts["celeb_high_confidence"],
            "flagged_minor": flag_counts["minor_appearance_risk"] + flag_counts["youth_coded_appearance"],
            "avg_scan_time_ms": avg_scan_ms,
        }

    async def get_review_queue(
        self,
        status: Optional[Union[str, ScanStatus]] = ScanStatus.PENDING_REVIEW,
        target_type: Optional[Union[str, TargetType]] = None,
        model_id: Optional[IdLike] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        try:
            status = ScanStatus(status) if status else None
            target_type = TargetType(target_type) if target_type else None
        except ValueError as e:
            raise ValidationError(str(e))
        if page < 1:
            raise ValidationError("page must be >= 1")
        limit = max(1, min(limit, 100))

        async with self.database.session() as db:
            rows, total = await store.list_scans(
                db, status=status, target_type=target_type,
                model_id=as_uuid(model_id, "model_id") if model_id else None,
                offset=(page - 1) * limit, limit=limit
            )
            model_ids = {scan.model_id for scan, _, _ in rows if scan.model_id}
            anchors = await store.list_active_anchors(db, model_ids)

        anchors_by_model: Dict[UUID, List[ModelAnchor]] = {}
        for anchor in anchors:
            anchors_by_model.setdefault(anchor.model_id, []).append(anchor)

        items = []
        for scan, creator, model in rows:
            items.append({
                "scan": scan,
                "creator": creator,
                "model": model,
                "anchors": anchors_by_model.get(scan.model_id, []),
            })
        return {
            "items": items,
            "total": total,
            "page": page,
            "size": limit,
            "pages": math.ceil(total / limit) if total else 0,
        }

    async def get_creator_upload_status(self, scan_id: IdLike, creator_id: IdLike) -> Dict[str, Any]:
        scan = await self.get_scan(scan_id)
        if scan.creator_id != as_uuid(creator_id, "creator_id"):
            # Same answer as a missing scan so other creators' uploads stay invisible.
            raise NotFoundError("Scan not found")
        return {
            "id": scan.id,
            "status": scan.status,
            "message": CREATOR_STATUS_MESSAGES[scan.status],
            "created_at": scan.created_at,
        }
