import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from modqueue.core.config import Settings
from modqueue.core.db import Database
from modqueue.core.errors import NotFoundError, InvalidStateError, JobTimeoutError
from modqueue.modules.moderation import store
from modqueue.modules.moderation.models import ModerationJob, ModerationScan, ActorType, utcnow
from modqueue.modules.moderation.service import ModerationService, IdLike, as_uuid, _check_priority, _job_type_for
from modqueue.modules.moderation.states import JobStatus, ScanStatus, RESCANNABLE, ensure_transition

logger = logging.getLogger(__name__)

def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"

@dataclass
class QueueRunResult:
    processed: int = 0
    failed: int = 0
    remaining: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

class JobWorker:
    """
    Drains the moderation job queue.

    Invocations are stateless and may overlap (several cron hits, several
    processes). The only coordination is the conditional claim in
    ``store.claim_job``: a job moves queued -> processing for exactly one worker.
    """

    def __init__(self, database: Database, service: ModerationService, settings: Settings, worker_id: Optional[str] = None):
        self.database = database
        self.service = service
        self.settings = settings
        self.worker_id = worker_id or default_worker_id()
        self.is_running = False
        self._task = None

    # -- Queue processing ----------------------------------------------------

    async def process_job_queue(self, max_jobs: Optional[int] = None, per_job_timeout: Optional[float] = None) -> QueueRunResult:
        """Claims and runs up to `max_jobs` jobs, one at a time, each under `per_job_timeout` seconds."""
        max_jobs = max_jobs if max_jobs is not None else self.settings.WORKER_MAX_JOBS
        timeout = per_job_timeout if per_job_timeout is not None else self.settings.WORKER_JOB_TIMEOUT_SECONDS
        result = QueueRunResult()

        for _ in range(max_jobs):
            job = await self._claim_next(max_jobs)
            if job is None:
                break
            status = await self._run_claimed(job, timeout)
            if status == JobStatus.COMPLETED:
                result.processed += 1
            else:
                result.failed += 1

        async with self.database.session() as db:
            counts = await store.count_jobs_by_status(db)
        result.remaining = counts.get(JobStatus.QUEUED, 0)
        return result

    async def _claim_next(self, window: int) -> Optional[ModerationJob]:
        """
        Claims the first queued job in priority order. Candidates are read in
        windows; a window lost entirely to other workers is followed by a
        fresh one until a claim sticks or nothing is queued.
        """
        tried = set()
        async with self.database.session() as db:
            while True:
                candidates = [
                    c for c in await store.list_queued_jobs(db, limit=max(window, 1) * 2)
                    if c.id not in tried
                ]
                if not candidates:
                    await db.commit()
                    return None
                for candidate in candidates:
                    tried.add(candidate.id)
                    if await store.claim_job(db, candidate.id, self.worker_id):
                        await db.commit()
                        job = await store.get_job(db, candidate.id)
                        logger.info(f"[Worker] {self.worker_id} claimed job {job.id} (priority {job.priority})")
                        return job
                    # Another worker got there first; try the next one.
                    logger.debug(f"[Worker] Lost claim on job {candidate.id}")
                await db.commit()

    async def _run_claimed(self, job: ModerationJob, timeout: float) -> JobStatus:
        try:
            return await asyncio.wait_for(self.service.process_scan_job(job.id, worker_id=self.worker_id), timeout=timeout)
        except asyncio.TimeoutError:
            message = JobTimeoutError(f"Job timed out after {timeout:g}s").message
            logger.error(f"[Worker] Job {job.id}: {message}")
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"[Worker] Job {job.id} failed: {message}", exc_info=True)

        if await self._fail_job(job, message):
            for scan_id in job.target_scan_ids:
                await self.service.fail_scan(scan_id, message)
        else:
            logger.info(f"[Worker] Job {job.id} no longer held by {self.worker_id}; scans left to the current holder")
        return JobStatus.FAILED

    async def _fail_job(self, job: ModerationJob, message: str) -> bool:
        async with self.database.session() as db:
            failed = await store.update_job(
                db, job.id, JobStatus.PROCESSING, held_by=self.worker_id,
                status=JobStatus.FAILED,
                last_error=message,
                attempts=ModerationJob.attempts + 1,
            )
            await db.commit()
        return failed

    # -- Recovery ------------------------------------------------------------

    async def recover_stale_jobs(self, stale_after: Optional[float] = None) -> int:
        """
        Requeues jobs stuck in processing longer than `stale_after` seconds
        (their worker is presumed dead). Jobs out of attempts fail for good.
        Pending scans left without a job for as long get a new one. Returns
        the number of jobs requeued or re-created.
        """
        stale_after = stale_after if stale_after is not None else self.settings.stale_job_seconds
        cutoff = utcnow() - timedelta(seconds=stale_after)
        async with self.database.session() as db:
            stale = await store.list_stale_jobs(db, cutoff)

        recovered = 0
        for job in stale:
            attempts = job.attempts + 1
            exhausted = attempts >= job.max_attempts
            async with self.database.session() as db:
                if exhausted:
                    message = f"Abandoned by {job.worker_id}; gave up after {attempts} attempts"
                    changed = await store.update_job(
                        db, job.id, JobStatus.PROCESSING, held_by=job.worker_id,
                        status=JobStatus.FAILED, attempts=attempts, last_error=message,
                    )
                else:
                    message = f"Recovered from stale state (worker {job.worker_id})"
                    changed = await store.update_job(
                        db, job.id, JobStatus.PROCESSING, held_by=job.worker_id,
                        status=JobStatus.QUEUED, attempts=attempts, last_error=message,
                        worker_id=None, started_at=None,
                    )
                await db.commit()
            if not changed:
                continue

            for scan_id in job.target_scan_ids:
                if exhausted:
                    await self.service.fail_scan(scan_id, message)
                else:
                    await self.service.reset_scan(scan_id, message)

            if exhausted:
                logger.warning(f"[Worker] Job {job.id} failed terminally: {message}")
            else:
                recovered += 1
                logger.info(f"[Worker] Job {job.id} requeued (attempt {attempts}/{job.max_attempts})")
        return recovered + await self.requeue_orphaned_scans(stale_after)

    async def requeue_orphaned_scans(self, older_than: Optional[float] = None) -> int:
        """
        Queues a job for every pending scan that has been waiting longer than
        `older_than` seconds with no job to run it, which happens when the job
        insert after the scan commit failed. Scans whose job was cancelled are
        left alone.
        """
        older_than = older_than if older_than is not None else self.settings.stale_job_seconds
        cutoff = utcnow() - timedelta(seconds=older_than)
        orphans = []
        async with self.database.session() as db:
            pending = await store.list_pending_scans_before(db, cutoff)
            if not pending:
                return 0
            covered = set()
            for bulk in await store.list_bulk_jobs(db, [JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.CANCELLED]):
                covered.update(bulk.target_scan_ids)
            for scan in pending:
                if scan.id in covered:
                    continue
                latest = await store.find_latest_job_for_scan(db, scan.id)
                if latest is None or latest.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                    orphans.append(scan)

        for scan in orphans:
            async with self.database.session() as db:
                job = await store.create_job(
                    db, job_type=_job_type_for(scan.target_type), scan_id=scan.id,
                    priority=scan.priority, max_attempts=self.settings.WORKER_MAX_ATTEMPTS,
                )
                await db.commit()
            logger.warning(f"[Worker] Scan {scan.id} was pending with no job; queued job {job.id}")
        return len(orphans)

    # -- Stats ---------------------------------------------------------------

    async def get_queue_stats(self) -> Dict[str, Any]:
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        async with self.database.session() as db:
            counts = await store.count_jobs_by_status(db)
            completed_today = await store.count_jobs_finished_since(db, JobStatus.COMPLETED, today)
            failed_today = await store.count_jobs_finished_since(db, JobStatus.FAILED, today)
            recent = await store.recent_completed_jobs(db)

        waits = [
            (job.started_at - job.created_at).total_seconds() * 1000
            for job in recent if job.started_at and job.created_at
        ]
        stats = {status.value: counts.get(status, 0) for status in JobStatus}
        stats.update({
            "completed_today": completed_today,
            "failed_today": failed_today,
            "avg_wait_time_ms": round(sum(waits) / len(waits)) if waits else 0,
        })
        return stats

    # -- Job administration --------------------------------------------------

    async def _load_job(self, job_id: IdLike) -> ModerationJob:
        async with self.database.session() as db:
            job = await store.get_job(db, as_uuid(job_id, "job_id"))
        if not job:
            raise NotFoundError("Job not found")
        return job

    async def _audit(self, job: ModerationJob, action: str, actor_id: Optional[UUID], previous: JobStatus, new: JobStatus):
        async with self.database.session() as db:
            await store.add_audit_log(
                db,
                scan_id=job.scan_id,
                actor_id=actor_id,
                actor_type=ActorType.ADMIN if actor_id else ActorType.SYSTEM,
                action=action,
                previous_status=previous.value,
                new_status=new.value,
                details={"job_id": str(job.id)},
            )
            await db.commit()

    async def cancel_job(self, job_id: IdLike, actor_id: Optional[IdLike] = None) -> ModerationJob:
        job = await self._load_job(job_id)
        ensure_transition(job.status, JobStatus.CANCELLED)
        async with self.database.session() as db:
            if not await store.update_job(db, job.id, job.status, status=JobStatus.CANCELLED):
                raise InvalidStateError("Job changed state; reload and try again")
            await db.commit()
        await self._audit(job, "job_cancelled", as_uuid(actor_id, "actor_id") if actor_id else None, job.status, JobStatus.CANCELLED)
        logger.info(f"[Worker] Job {job.id} cancelled")
        return await self._load_job(job.id)

    async def retry_job(self, job_id: IdLike, actor_id: Optional[IdLike] = None) -> ModerationJob:
        """Failed or cancelled -> queued. The attempt count is kept for the audit trail."""
        job = await self._load_job(job_id)
        ensure_transition(job.status, JobStatus.QUEUED)
        if job.status == JobStatus.PROCESSING:
            raise InvalidStateError("Job is processing; use stale recovery instead")
        async with self.database.session() as db:
            requeued = await store.update_job(
                db, job.id, job.status,
                status=JobStatus.QUEUED,
                last_error=None,
                worker_id=None,
                started_at=None,
                completed_at=None,
            )
            if not requeued:
                raise InvalidStateError("Job changed state; reload and try again")
            await db.commit()

        for scan_id in job.target_scan_ids:
            await self.service.reset_scan(scan_id, f"Job {job.id} retried")
        await self._audit(job, "job_retried", as_uuid(actor_id, "actor_id") if actor_id else None, job.status, JobStatus.QUEUED)
        logger.info(f"[Worker] Job {job.id} requeued for retry (attempts so far: {job.attempts})")
        return await self._load_job(job.id)

    async def prioritize_job(self, job_id: IdLike, priority: int) -> ModerationJob:
        priority = _check_priority(priority)
        job = await self._load_job(job_id)
        if job.status != JobStatus.QUEUED:
            raise InvalidStateError(f"Only queued jobs can be re-prioritised (job is {job.status.value})")
        async with self.database.session() as db:
            if not await store.update_job(db, job.id, JobStatus.QUEUED, priority=priority):
                raise InvalidStateError("Job is no longer queued")
            await db.commit()
        return await self._load_job(job.id)

    async def trigger_immediate_scan(self, scan_id: IdLike, requested_by: IdLike) -> ModerationScan:
        """Runs one scan now, outside the cron cadence, and returns it in its new state."""
        scan = await self.service.get_scan(scan_id)
        async with self.database.session() as db:
            job = await store.find_open_job_for_scan(db, scan.id)

        if job is not None and job.status == JobStatus.PROCESSING:
            raise InvalidStateError("Scan is already being processed")

        if job is None:
            if scan.status == ScanStatus.PENDING_SCAN:
                async with self.database.session() as db:
                    job = await store.create_job(
                        db, job_type=_job_type_for(scan.target_type), scan_id=scan.id,
                        priority=1, max_attempts=self.settings.WORKER_MAX_ATTEMPTS,
                    )
                    await db.commit()
            elif scan.status in RESCANNABLE:
                job = await self._load_job(await self.service.request_rescan([scan.id], requested_by, priority=1))
            else:
                raise InvalidStateError(f"Scan is {scan.status.value} and cannot be scanned now")
        elif job.priority != 1:
            job = await self.prioritize_job(job.id, 1)

        async with self.database.session() as db:
            claimed = await store.claim_job(db, job.id, self.worker_id)
            await db.commit()
            job = await store.get_job(db, job.id)
        if not claimed:
            raise InvalidStateError("Job was claimed by another worker")

        logger.info(f"[Worker] Immediate scan of {scan.id} via job {job.id}")
        await self._run_claimed(job, self.settings.WORKER_JOB_TIMEOUT_SECONDS)
        return await self.service.get_scan(scan.id)

    # -- Scheduling ----------------------------------------------------------

    async def run_once(self) -> Dict[str, Any]:
        """One scheduler tick: recover stale jobs, drain a batch, report."""
        started = time.monotonic()
        recovered = await self.recover_stale_jobs()
        result = await self.process_job_queue()
        stats = await self.get_queue_stats()
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"[Worker] Tick: recovered={recovered} processed={result.processed} "
            f"failed={result.failed} remaining={result.remaining} duration_ms={duration_ms}"
        )
        return {"recovered": recovered, **result.as_dict(), "stats": stats, "duration_ms": duration_ms}

    async def start(self, interval: float):
        """Starts an in-process polling loop. Deployments driven by the cron endpoint leave this off."""
        if self.is_running:
            return
        self.is_running = True
        self._task = asyncio.create_task(self._poll(interval))
        logger.info(f"[Worker] {self.worker_id} started, polling every {interval:g}s.")

    async def stop(self):
        self.is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[Worker] Stopped.")

    async def _poll(self, interval: float):
        while self.is_running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"[Worker] Tick error: {e}", exc_info=True)
            await asyncio.sleep(interval)
