import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Enum, ForeignKey, Text, JSON, Uuid, func,
)
from modqueue.core.db import Base
from modqueue.modules.moderation.states import ScanStatus, JobStatus

class TargetType(str, enum.Enum):
    MODEL_PROFILE = "model_profile"
    MODEL_GALLERY = "model_gallery"
    MODEL_COVER = "model_cover"
    PPV_CONTENT = "ppv_content"
    CHAT_MEDIA = "chat_media"
    ONBOARDING = "onboarding"

class JobType(str, enum.Enum):
    MODEL_ONBOARDING = "model_onboarding"
    CONTENT_UPLOAD = "content_upload"
    BULK_RESCAN = "bulk_rescan"

class ReviewAction(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"

class ActorType(str, enum.Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    MODERATOR = "moderator"

class ModerationFlag(str, enum.Enum):
    FACE_DRIFT = "face_drift"
    CELEB_RISK = "celeb_risk"
    CELEB_HIGH_CONFIDENCE = "celeb_high_confidence"
    REAL_PERSON_SUSPECTED = "real_person_suspected"
    FACESWAP_SUSPECTED = "faceswap_suspected"
    DEEPFAKE_DETECTED = "deepfake_detected"
    MINOR_APPEARANCE_RISK = "minor_appearance_risk"
    YOUTH_CODED_APPEARANCE = "youth_coded_appearance"
    NO_FACE_DETECTED = "no_face_detected"
    MULTIPLE_FACES = "multiple_faces"
    LOW_QUALITY_IMAGE = "low_quality_image"
    NO_ANCHORS = "no_anchors"
    INSUFFICIENT_ANCHORS = "insufficient_anchors"
    STYLE_INCONSISTENCY = "style_inconsistency"
    AI_GENERATED_CONFIRMED = "ai_generated_confirmed"
    REAL_PHOTO_SUSPECTED = "real_photo_suspected"

# A human must decide on anything carrying one of these.
HIGH_RISK_FLAGS = frozenset({
    ModerationFlag.CELEB_HIGH_CONFIDENCE,
    ModerationFlag.DEEPFAKE_DETECTED,
    ModerationFlag.MINOR_APPEARANCE_RISK,
    ModerationFlag.YOUTH_CODED_APPEARANCE,
    ModerationFlag.FACESWAP_SUSPECTED,
    ModerationFlag.REAL_PERSON_SUSPECTED,
})

def _values(enum_cls):
    return [member.value for member in enum_cls]

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class ModerationScan(Base):
    __tablename__ = "moderation_scans"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    target_type = Column(Enum(TargetType, name="moderation_target_type", values_callable=_values), nullable=False)
    target_id = Column(String, nullable=False, index=True)
    model_id = Column(Uuid(as_uuid=True), ForeignKey("creator_models.id"), nullable=True, index=True)
    creator_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)

    storage_key = Column(String, nullable=False)
    storage_url = Column(String, nullable=False)
    priority = Column(Integer, default=5, nullable=False)

    status = Column(Enum(ScanStatus, name="moderation_scan_status", values_callable=_values), default=ScanStatus.PENDING_SCAN, nullable=False, index=True)
    flags = Column(JSON, default=list, nullable=False)
    confidence = Column(Float, nullable=True) # 0..1
    detected_faces = Column(Integer, nullable=True)

    # Vision scores, 0..100
    face_consistency_score = Column(Integer, nullable=True)
    celebrity_risk_score = Column(Integer, nullable=True)
    real_person_risk_score = Column(Integer, nullable=True)
    deepfake_risk_score = Column(Integer, nullable=True)
    minor_risk_score = Column(Integer, nullable=True)

    staff_summary = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    scan_model = Column(String, nullable=True)
    scan_duration_ms = Column(Integer, nullable=True)

    reviewed_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    review_action = Column(Enum(ReviewAction, name="moderation_review_action", values_callable=_values), nullable=True)
    review_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    scan_started_at = Column(DateTime(timezone=True), nullable=True)
    scan_completed_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class ModelAnchor(Base):
    __tablename__ = "model_anchors"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    model_id = Column(Uuid(as_uuid=True), ForeignKey("creator_models.id"), nullable=False, index=True)
    storage_key = Column(String, nullable=False)
    storage_url = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    added_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    note = Column(Text, nullable=True)
    source_scan_id = Column(Uuid(as_uuid=True), ForeignKey("moderation_scans.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)

class ModerationJob(Base):
    __tablename__ = "moderation_jobs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_type = Column(Enum(JobType, name="moderation_job_type", values_callable=_values), nullable=False)
    scan_id = Column(Uuid(as_uuid=True), ForeignKey("moderation_scans.id"), nullable=True, index=True)
    scan_ids = Column(JSON, default=list, nullable=False) # bulk_rescan targets, as strings

    status = Column(Enum(JobStatus, name="moderation_job_status", values_callable=_values), default=JobStatus.QUEUED, nullable=False, index=True)
    priority = Column(Integer, default=5, nullable=False) # 1 = served first
    worker_id = Column(String, nullable=True)

    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def target_scan_ids(self) -> list:
        if self.scan_id is not None:
            return [self.scan_id]
        return [uuid.UUID(str(s)) for s in (self.scan_ids or [])]

class ModerationAuditLog(Base):
    __tablename__ = "moderation_audit_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    scan_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    model_id = Column(Uuid(as_uuid=True), nullable=True)
    creator_id = Column(Uuid(as_uuid=True), nullable=True)
    actor_id = Column(Uuid(as_uuid=True), nullable=True) # Null for system actions
    actor_type = Column(Enum(ActorType, name="moderation_actor_type", values_callable=_values), nullable=False)

    action = Column(String, nullable=False) # e.g. "scan_completed", "review_approved", "anchor_added"
    previous_status = Column(String, nullable=True)
    new_status = Column(String, nullable=True)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
