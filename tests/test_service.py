"""ModerationService: scan creation, anchors, review, rescans and reads."""

import uuid

import pytest
from sqlalchemy import select

from modqueue.core.config import Settings
from modqueue.core.errors import InvalidStateError, NotFoundError, ValidationError
from modqueue.modules.moderation import integration, store
from modqueue.modules.moderation.models import (
    JobType,
    ModerationAuditLog,
    ModerationFlag,
    ModerationJob,
    ReviewAction,
)
from modqueue.modules.moderation.service import ModerationService
from modqueue.modules.moderation.states import JobStatus, ScanStatus

from tests.conftest import clean_result


async def _jobs_for(database, scan_id):
    async with database.session() as db:
        result = await db.execute(select(ModerationJob).where(ModerationJob.scan_id == uuid.UUID(scan_id)))
        return list(result.scalars().all())


async def _audit_actions(database, scan_id):
    async with database.session() as db:
        result = await db.execute(
            select(ModerationAuditLog.action)
            .where(ModerationAuditLog.scan_id == uuid.UUID(str(scan_id)))
            .order_by(ModerationAuditLog.created_at)
        )
        return list(result.scalars().all())


async def _scan_to_review(worker, make_scan, vision, **result_overrides):
    """Creates a scan and runs it through the queue so it lands in pending_review."""
    vision.result = clean_result(flags=[ModerationFlag.CELEB_HIGH_CONFIDENCE], **result_overrides)
    scan_id = await make_scan()
    await worker.process_job_queue()
    return scan_id


class TestCreateScan:
    async def test_creates_pending_scan_and_queued_job(self, service, database, make_scan):
        scan_id = await make_scan(priority=3)

        scan = await service.get_scan(scan_id)
        jobs = await _jobs_for(database, scan_id)
        assert scan.status == ScanStatus.PENDING_SCAN
        assert scan.priority == 3
        assert len(jobs) == 1
        assert jobs[0].status == JobStatus.QUEUED
        assert jobs[0].priority == 3
        assert jobs[0].job_type == JobType.CONTENT_UPLOAD

    async def test_onboarding_gets_onboarding_job(self, database, make_scan):
        scan_id = await make_scan(target_type="onboarding")
        jobs = await _jobs_for(database, scan_id)
        assert jobs[0].job_type == JobType.MODEL_ONBOARDING

    @pytest.mark.parametrize("field, value", [
        ("storage_key", ""),
        ("storage_url", ""),
        ("target_id", ""),
        ("target_type", "billboard"),
        ("priority", 0),
        ("priority", 11),
    ])
    async def test_rejects_bad_input(self, service, creator, field, value):
        kwargs = dict(
            target_type="model_gallery",
            target_id="img-1",
            model_id=None,
            creator_id=creator.id,
            storage_key="uploads/img-1.jpg",
            storage_url="https://cdn.example.com/uploads/img-1.jpg",
        )
        kwargs[field] = value
        with pytest.raises(ValidationError):
            await service.create_scan(**kwargs)

    async def test_disabled_moderation_auto_approves_without_job(self, database, vision, creator, settings):
        disabled = ModerationService(database, vision, settings.model_copy(update={"MODERATION_ENABLED": False}))

        scan_id = await disabled.create_scan("ppv_content", "ppv-1", None, creator.id, "k", "https://cdn/k")

        scan = await disabled.get_scan(scan_id)
        assert scan.status == ScanStatus.APPROVED
        assert await _jobs_for(database, scan_id) == []
        assert vision.calls == []

    async def test_unknown_scan_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.get_scan(uuid.uuid4())

    async def test_malformed_scan_id_is_a_validation_error(self, service):
        with pytest.raises(ValidationError):
            await service.get_scan("not-a-uuid")


class TestIntegrationHooks:
    async def test_profile_upload_is_queued_at_priority_three(self, service, database, model, creator):
        scan_id = await integration.on_model_profile_upload(
            service, model.id, creator.id, "models/nova/avatar.jpg", "https://cdn/avatar.jpg"
        )

        scan = await service.get_scan(scan_id)
        assert scan.target_type.value == "model_profile"
        assert scan.target_id == str(model.id)
        assert scan.priority == 3

    async def test_onboarding_is_queued_ahead_of_gallery(self, service, model, creator):
        onboarding_id = await integration.on_model_onboarding(service, model.id, creator.id, "k1", "https://cdn/k1")
        gallery_id = await integration.on_gallery_upload(service, "img-9", model.id, creator.id, "k2", "https://cdn/k2")

        assert (await service.get_scan(onboarding_id)).priority == 2
        assert (await service.get_scan(gallery_id)).priority == 5

    async def test_queue_failure_does_not_raise(self, service, creator):
        scan_id = await integration.on_ppv_upload(service, "ppv-1", None, creator.id, "", "")
        assert scan_id is None


class TestAnchors:
    async def test_add_and_list_in_creation_order(self, service, model, admin):
        first = await service.add_model_anchor(model.id, "a/1.jpg", "https://cdn/a/1.jpg", admin.id, note="front")
        second = await service.add_model_anchor(model.id, "a/2.jpg", "https://cdn/a/2.jpg", admin.id)

        anchors = await service.get_model_anchors(model.id)
        assert [a.id for a in anchors] == [first.id, second.id]
        assert anchors[0].note == "front"

    @pytest.mark.parametrize("key, url", [("", "https://cdn/a.jpg"), ("a.jpg", "")])
    async def test_add_requires_storage(self, service, model, admin, key, url):
        with pytest.raises(ValidationError):
            await service.add_model_anchor(model.id, key, url, admin.id)

    async def test_add_respects_per_model_limit(self, database, vision, model, admin, settings):
        limited = ModerationService(database, vision, settings.model_copy(update={"MODERATION_MAX_ANCHORS_PER_MODEL": 2}))
        await limited.add_model_anchor(model.id, "a/1.jpg", "https://cdn/1", admin.id)
        await limited.add_model_anchor(model.id, "a/2.jpg", "https://cdn/2", admin.id)

        with pytest.raises(ValidationError):
            await limited.add_model_anchor(model.id, "a/3.jpg", "https://cdn/3", admin.id)

    async def test_remove_soft_deletes(self, service, database, model, admin):
        anchor = await service.add_model_anchor(model.id, "a/1.jpg", "https://cdn/a/1.jpg", admin.id)

        await service.remove_model_anchor(anchor.id, admin.id)

        assert await service.get_model_anchors(model.id) == []
        async with database.session() as db:
            stored = await store.get_anchor(db, anchor.id)
        assert stored is not None
        assert stored.is_active is False
        assert stored.deactivated_by == admin.id

    async def test_remove_missing_anchor(self, service, admin):
        with pytest.raises(NotFoundError):
            await service.remove_model_anchor(uuid.uuid4(), admin.id)

    async def test_remove_twice_is_not_found(self, service, model, admin):
        anchor = await service.add_model_anchor(model.id, "a/1.jpg", "https://cdn/a/1.jpg", admin.id)
        await service.remove_model_anchor(anchor.id, admin.id)

        with pytest.raises(NotFoundError):
            await service.remove_model_anchor(anchor.id, admin.id)


class TestRunVisionScan:
    async def test_passes_active_anchor_urls(self, service, vision, model, add_anchors, make_scan):
        anchors = await add_anchors(model.id, count=2)
        scan = await service.get_scan(await make_scan())

        result, anchor_count = await service.run_vision_scan(scan)

        assert anchor_count == 2
        assert result is vision.result
        assert vision.calls == [(scan.storage_url, [a.storage_url for a in anchors])]

    async def test_scan_without_model_has_no_anchors(self, service, vision, make_scan):
        scan = await service.get_scan(await make_scan(model_id=None))

        _, anchor_count = await service.run_vision_scan(scan)

        assert anchor_count == 0
        assert vision.calls[0][1] == []


class TestReviewScan:
    async def test_approve(self, service, worker, vision, make_scan, moderator, database):
        scan_id = await _scan_to_review(worker, make_scan, vision)

        scan = await service.review_scan(scan_id, moderator.id, "approved", notes="Original character")

        assert scan.status == ScanStatus.APPROVED
        assert scan.reviewed_by == moderator.id
        assert scan.review_notes == "Original character"
        assert scan.reviewed_at is not None
        assert "review_approved" in await _audit_actions(database, scan_id)

    async def test_reject(self, service, worker, vision, make_scan, admin):
        scan_id = await _scan_to_review(worker, make_scan, vision)

        scan = await service.review_scan(scan_id, admin.id, ReviewAction.REJECTED)

        assert scan.status == ScanStatus.REJECTED

    async def test_escalation_keeps_scan_reviewable_at_top_priority(self, service, worker, vision, make_scan, admin, moderator):
        scan_id = await _scan_to_review(worker, make_scan, vision)

        escalated = await service.review_scan(scan_id, moderator.id, "escalated", notes="Need a second look")
        assert escalated.status == ScanStatus.PENDING_REVIEW
        assert escalated.priority == 1
        assert escalated.review_action == ReviewAction.ESCALATED

        final = await service.review_scan(scan_id, admin.id, "rejected")
        assert final.status == ScanStatus.REJECTED

    async def test_second_review_is_invalid_state(self, service, worker, vision, make_scan, admin):
        scan_id = await _scan_to_review(worker, make_scan, vision)
        await service.review_scan(scan_id, admin.id, "approved")

        with pytest.raises(InvalidStateError):
            await service.review_scan(scan_id, admin.id, "rejected")

        assert (await service.get_scan(scan_id)).status == ScanStatus.APPROVED

    async def test_cannot_review_before_scan(self, service, make_scan, admin):
        scan_id = await make_scan()
        with pytest.raises(InvalidStateError):
            await service.review_scan(scan_id, admin.id, "approved")

    async def test_missing_scan(self, service, admin):
        with pytest.raises(NotFoundError):
            await service.review_scan(uuid.uuid4(), admin.id, "approved")

    async def test_invalid_action(self, service, worker, vision, make_scan, admin):
        scan_id = await _scan_to_review(worker, make_scan, vision)
        with pytest.raises(ValidationError):
            await service.review_scan(scan_id, admin.id, "deleted")

    async def test_approve_with_add_as_anchor(self, service, worker, vision, make_scan, admin, model):
        """Scenario D: approval can promote the asset to an anchor."""
        scan_id = await _scan_to_review(worker, make_scan, vision)
        scan = await service.get_scan(scan_id)

        reviewed = await service.review_scan(scan_id, admin.id, "approved", add_as_anchor=True)

        assert reviewed.status == ScanStatus.APPROVED
        anchors = await service.get_model_anchors(model.id)
        assert len(anchors) == 1
        assert anchors[0].is_active
        assert anchors[0].storage_key == scan.storage_key
        assert anchors[0].storage_url == scan.storage_url
        assert anchors[0].source_scan_id == scan.id

    async def test_reject_ignores_add_as_anchor(self, service, worker, vision, make_scan, admin, model):
        scan_id = await _scan_to_review(worker, make_scan, vision)

        await service.review_scan(scan_id, admin.id, "rejected", add_as_anchor=True)

        assert await service.get_model_anchors(model.id) == []


class TestRequestRescan:
    async def test_single_scan_rescan_requeues_it(self, service, worker, database, vision, make_scan, admin):
        scan_id = await _scan_to_review(worker, make_scan, vision)

        job_id = await service.request_rescan([scan_id], admin.id, priority=2)

        scan = await service.get_scan(scan_id)
        assert scan.status == ScanStatus.PENDING_SCAN
        assert scan.flags == []
        async with database.session() as db:
            job = await store.get_job(db, uuid.UUID(job_id))
        assert job.status == JobStatus.QUEUED
        assert job.scan_id == scan.id
        assert job.priority == 2

    async def test_bulk_rescan_runs_every_scan(self, service, worker, database, vision, make_scan, admin, model, add_anchors):
        first = await _scan_to_review(worker, make_scan, vision)
        second = await _scan_to_review(worker, make_scan, vision)

        job_id = await service.request_rescan([first, second], admin.id)
        async with database.session() as db:
            job = await store.get_job(db, uuid.UUID(job_id))
        assert job.job_type == JobType.BULK_RESCAN
        assert job.scan_id is None
        assert set(job.scan_ids) == {first, second}

        await add_anchors(model.id)
        vision.result = clean_result()
        run = await worker.process_job_queue()

        assert run.processed == 1
        assert (await service.get_scan(first)).status == ScanStatus.APPROVED
        assert (await service.get_scan(second)).status == ScanStatus.APPROVED

    async def test_in_flight_scan_cannot_be_rescanned(self, service, make_scan, admin):
        scan_id = await make_scan()
        with pytest.raises(InvalidStateError):
            await service.request_rescan([scan_id], admin.id)

    async def test_empty_request(self, service, admin):
        with pytest.raises(ValidationError):
            await service.request_rescan([], admin.id)


class TestReads:
    async def test_stats_count_statuses_and_flags(self, service, worker, vision, make_scan, admin):
        vision.result = clean_result(minor_risk_score=70)
        await make_scan()
        await make_scan()
        await worker.process_job_queue()
        await make_scan()

        stats = await service.get_moderation_stats()

        assert stats["by_status"]["pending_review"] == 2
        assert stats["by_status"]["pending_scan"] == 1
        assert stats["pending_reviews"] == 2
        assert stats["pending_scans"] == 1
        assert stats["flag_counts"]["minor_appearance_risk"] == 2
        assert stats["flagged_minor"] == 2

    async def test_review_queue_joins_creator_model_and_anchors(self, service, worker, vision, make_scan, model, creator, add_anchors):
        anchors = await add_anchors(model.id, count=1)
        await _scan_to_review(worker, make_scan, vision)
        await make_scan()  # still pending_scan, not in the review queue

        page = await service.get_review_queue()

        assert page["total"] == 1
        assert page["pages"] == 1
        item = page["items"][0]
        assert item["scan"].status == ScanStatus.PENDING_REVIEW
        assert item["creator"].id == creator.id
        assert item["model"].id == model.id
        assert [a.id for a in item["anchors"]] == [anchors[0].id]

    async def test_review_queue_paginates(self, service, make_scan):
        for _ in range(3):
            await make_scan()

        page = await service.get_review_queue(status="pending_scan", page=2, limit=2)

        assert page["total"] == 3
        assert page["pages"] == 2
        assert len(page["items"]) == 1

    async def test_review_queue_filters_target_type(self, service, make_scan):
        await make_scan(target_type="ppv_content")
        await make_scan(target_type="model_gallery")

        page = await service.get_review_queue(status="pending_scan", target_type="ppv_content")

        assert page["total"] == 1
        assert page["items"][0]["scan"].target_type.value == "ppv_content"

    async def test_creator_status_hides_internals(self, service, make_scan, creator):
        scan_id = await make_scan()

        status = await service.get_creator_upload_status(scan_id, creator.id)

        assert status["status"] == ScanStatus.PENDING_SCAN
        assert status["message"] == "Processing upload..."
        assert set(status) == {"id", "status", "message", "created_at"}

    async def test_creator_cannot_see_other_creators_upload(self, service, make_scan, other_creator):
        scan_id = await make_scan()
        with pytest.raises(NotFoundError):
            await service.get_creator_upload_status(scan_id, other_creator.id)
