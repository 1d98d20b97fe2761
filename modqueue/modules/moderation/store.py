"""
Persistence for scans, anchors, jobs and the moderation audit trail.

No business rules live here. Status changes are single-row conditional
UPDATEs keyed by id and the status the caller last saw; each returns whether
the row actually changed so callers can tell a lost race from a success.
Callers own the transaction (commit/rollback).
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from modqueue.modules.auth.models import User
from modqueue.modules.creators.models import CreatorModel
from modqueue.modules.moderation.models import (
    ModerationScan, ModelAnchor, ModerationJob, ModerationAuditLog, TargetType, JobType, utcnow,
)
from modqueue.modules.moderation.states import ScanStatus, JobStatus, ensure_transition

# -- Scans -------------------------------------------------------------------

async def create_scan(db: AsyncSession, **fields) -> ModerationScan:
    scan = ModerationScan(**fields)
    db.add(scan)
    await db.flush()
    return scan

async def get_scan(db: AsyncSession, scan_id: UUID) -> Optional[ModerationScan]:
    return await db.get(ModerationScan, scan_id, populate_existing=True)

async def update_scan(
    db: AsyncSession,
    scan_id: UUID,
    expected: ScanStatus,
    owner: Optional[Tuple[UUID, str]] = None,
    **values: Any
) -> bool:
    """
    Applies values only while the scan is still in `expected`.

    With `owner` as (job_id, worker_id) the write also requires that job to be
    processing under that worker, so a worker that lost its job cannot touch
    the scan the next holder is working on.
    """
    target = values.get("status")
    if target is not None:
        ensure_transition(expected, target)
    values.setdefault("updated_at", utcnow())
    stmt = update(ModerationScan).where(ModerationScan.id == scan_id, ModerationScan.status == expected)
    if owner is not None:
        job_id, worker_id = owner
        stmt = stmt.where(
            select(ModerationJob.id)
            .where(
                ModerationJob.id == job_id,
                ModerationJob.status == JobStatus.PROCESSING,
                ModerationJob.worker_id == worker_id,
            )
            .exists()
        )
    result = await db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return result.rowcount == 1

async def list_scans(
    db: AsyncSession,
    status: Optional[ScanStatus] = None,
    target_type: Optional[TargetType] = None,
    model_id: Optional[UUID] = None,
    offset: int = 0,
    limit: int = 20
) -> Tuple[List[Tuple[ModerationScan, Optional[User], Optional[CreatorModel]]], int]:
    filters = []
    if status is not None:
        filters.append(ModerationScan.status == status)
    if target_type is not None:
        filters.append(ModerationScan.target_type == target_type)
    if model_id is not None:
        filters.append(ModerationScan.model_id == model_id)

    total = (await db.execute(
        select(func.count(ModerationScan.id)).where(*filters)
    )).scalar() or 0

    result = await db.execute(
        select(ModerationScan, User, CreatorModel)
        .outerjoin(User, ModerationScan.creator_id == User.id)
        .outerjoin(CreatorModel, ModerationScan.model_id == CreatorModel.id)
        .where(*filters)
        .order_by(ModerationScan.priority.asc(), ModerationScan.created_at.asc())
        .offset(offset)
        .limit(limit)
    )
    return [tuple(row) for row in result.all()], total

async def list_pending_scans_before(db: AsyncSession, cutoff: datetime, limit: int = 100) -> List[ModerationScan]:
    """pending_scan rows untouched since `cutoff`, oldest first."""
    result = await db.execute(
        select(ModerationScan)
        .where(ModerationScan.status == ScanStatus.PENDING_SCAN, ModerationScan.updated_at < cutoff)
        .order_by(ModerationScan.updated_at.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())

async def count_scans_by_status(db: AsyncSession) -> Dict[ScanStatus, int]:
    result = await db.execute(
        select(ModerationScan.status, func.count(ModerationScan.id)).group_by(ModerationScan.status)
    )
    return {row[0]: row[1] for row in result.all()}

async def count_reviewed_since(db: AsyncSession, status: ScanStatus, since: datetime) -> int:
    result = await db.execute(
        select(func.count(ModerationScan.id)).where(
            ModerationScan.status == status,
            func.coalesce(ModerationScan.reviewed_at, ModerationScan.scan_completed_at) >= since,
        )
    )
    return result.scalar() or 0

async def recent_scan_flags(db: AsyncSession, since: datetime) -> Sequence[list]:
    result = await db.execute(
        select(ModerationScan.flags).where(ModerationScan.created_at >= since)
    )
    return result.scalars().all()

async def average_scan_duration_ms(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.avg(ModerationScan.scan_duration_ms)).where(ModerationScan.scan_duration_ms.is_not(None))
    )
    value = result.scalar()
    return int(value) if value is not None else 0

# -- Anchors -----------------------------------------------------------------

async def create_anchor(db: AsyncSession, **fields) -> ModelAnchor:
    anchor = ModelAnchor(is_active=True, **fields)
    db.add(anchor)
    await db.flush()
    return anchor

async def get_anchor(db: AsyncSession, anchor_id: UUID) -> Optional[ModelAnchor]:
    return await db.get(ModelAnchor, anchor_id, populate_existing=True)

async def list_active_anchors(db: AsyncSession, model_ids: Iterable[UUID]) -> List[ModelAnchor]:
    model_ids = list(model_ids)
    if not model_ids:
        return []
    result = await db.execute(
        select(ModelAnchor)
        .where(ModelAnchor.model_id.in_(model_ids), ModelAnchor.is_active.is_(True))
        .order_by(ModelAnchor.created_at.asc())
    )
    return list(result.scalars().all())

async def count_active_anchors(db: AsyncSession, model_id: UUID) -> int:
    result = await db.execute(
        select(func.count(ModelAnchor.id)).where(
            ModelAnchor.model_id == model_id, ModelAnchor.is_active.is_(True)
        )
    )
    return result.scalar() or 0

async def deactivate_anchor(db: AsyncSession, anchor_id: UUID, removed_by: UUID) -> bool:
    result = await db.execute(
        update(ModelAnchor)
        .where(ModelAnchor.id == anchor_id, ModelAnchor.is_active.is_(True))
        .values(is_active=False, deactivated_at=utcnow(), deactivated_by=removed_by)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

# -- Jobs --------------------------------------------------------------------

async def create_job(db: AsyncSession, **fields) -> ModerationJob:
    job = ModerationJob(status=JobStatus.QUEUED, attempts=0, **fields)
    db.add(job)
    await db.flush()
    return job

async def get_job(db: AsyncSession, job_id: UUID) -> Optional[ModerationJob]:
    return await db.get(ModerationJob, job_id, populate_existing=True)

async def find_open_job_for_scan(db: AsyncSession, scan_id: UUID) -> Optional[ModerationJob]:
    result = await db.execute(
        select(ModerationJob)
        .where(
            ModerationJob.scan_id == scan_id,
            ModerationJob.status.in_([JobStatus.QUEUED, JobStatus.PROCESSING]),
        )
        .order_by(ModerationJob.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()

async def find_latest_job_for_scan(db: AsyncSession, scan_id: UUID) -> Optional[ModerationJob]:
    result = await db.execute(
        select(ModerationJob)
        .where(ModerationJob.scan_id == scan_id)
        .order_by(ModerationJob.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()

async def list_bulk_jobs(db: AsyncSession, statuses: Iterable[JobStatus]) -> List[ModerationJob]:
    result = await db.execute(
        select(ModerationJob)
        .where(ModerationJob.job_type == JobType.BULK_RESCAN, ModerationJob.status.in_(list(statuses)))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())

async def list_queued_jobs(db: AsyncSession, limit: int) -> List[ModerationJob]:
    """Lowest priority number first, FIFO within a priority."""
    result = await db.execute(
        select(ModerationJob)
        .where(ModerationJob.status == JobStatus.QUEUED)
        .order_by(ModerationJob.priority.asc(), ModerationJob.created_at.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())

async def claim_job(db: AsyncSession, job_id: UUID, worker_id: str) -> bool:
    """queued -> processing. Succeeds for exactly one caller per queued job."""
    now = utcnow()
    result = await db.execute(
        update(ModerationJob)
        .where(ModerationJob.id == job_id, ModerationJob.status == JobStatus.QUEUED)
        .values(
            status=JobStatus.PROCESSING,
            worker_id=worker_id,
            started_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

async def update_job(
    db: AsyncSession,
    job_id: UUID,
    expected: JobStatus,
    held_by: Optional[str] = None,
    **values: Any
) -> bool:
    """Applies values only while the job is in `expected` (and held by `held_by`, if given)."""
    target = values.get("status")
    if target is not None:
        ensure_transition(expected, target)
    values.setdefault("updated_at", utcnow())
    stmt = update(ModerationJob).where(ModerationJob.id == job_id, ModerationJob.status == expected)
    if held_by is not None:
        stmt = stmt.where(ModerationJob.worker_id == held_by)
    result = await db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return result.rowcount == 1

async def list_stale_jobs(db: AsyncSession, cutoff: datetime) -> List[ModerationJob]:
    result = await db.execute(
        select(ModerationJob)
        .where(ModerationJob.status == JobStatus.PROCESSING, ModerationJob.started_at < cutoff)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())

async def count_jobs_by_status(db: AsyncSession) -> Dict[JobStatus, int]:
    result = await db.execute(
        select(ModerationJob.status, func.count(ModerationJob.id)).group_by(ModerationJob.status)
    )
    return {row[0]: row[1] for row in result.all()}

async def count_jobs_finished_since(db: AsyncSession, status: JobStatus, since: datetime) -> int:
    column = ModerationJob.completed_at if status == JobStatus.COMPLETED else ModerationJob.updated_at
    result = await db.execute(
        select(func.count(ModerationJob.id)).where(ModerationJob.status == status, column >= since)
    )
    return result.scalar() or 0

async def recent_completed_jobs(db: AsyncSession, limit: int = 100) -> List[ModerationJob]:
    result = await db.execute(
        select(ModerationJob)
        .where(ModerationJob.status == JobStatus.COMPLETED, ModerationJob.started_at.is_not(None))
        .order_by(ModerationJob.completed_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())

# -- Audit -------------------------------------------------------------------

async def add_audit_log(db: AsyncSession, **fields) -> ModerationAuditLog:
    entry = ModerationAuditLog(**fields)
    db.add(entry)
    await db.flush()
    return entry
