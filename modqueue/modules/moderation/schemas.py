from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from modqueue.modules.moderation.models import TargetType, JobType, ReviewAction
from modqueue.modules.moderation.states import ScanStatus, JobStatus

class ScanRead(BaseModel):
    id: UUID
    target_type: TargetType
    target_id: str
    model_id: Optional[UUID] = None
    creator_id: UUID
    storage_key: str
    storage_url: str
    priority: int
    status: ScanStatus
    flags: List[str] = []
    confidence: Optional[float] = None
    detected_faces: Optional[int] = None
    face_consistency_score: Optional[int] = None
    celebrity_risk_score: Optional[int] = None
    real_person_risk_score: Optional[int] = None
    deepfake_risk_score: Optional[int] = None
    minor_risk_score: Optional[int] = None
    staff_summary: Optional[str] = None
    error_message: Optional[str] = None
    scan_model: Optional[str] = None
    scan_duration_ms: Optional[int] = None
    reviewed_by: Optional[UUID] = None
    review_action: Optional[ReviewAction] = None
    review_notes: Optional[str] = None
    created_at: datetime
    scan_completed_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        protected_namespaces = ()

class AnchorCreate(BaseModel):
    model_id: UUID
    storage_key: str
    storage_url: str
    note: Optional[str] = None

    class Config:
        protected_namespaces = ()

class AnchorRead(BaseModel):
    id: UUID
    model_id: UUID
    storage_key: str
    storage_url: str
    is_active: bool
    added_by: Optional[UUID] = None
    note: Optional[str] = None
    source_scan_id: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True
        protected_namespaces = ()

class ReviewRequest(BaseModel):
    action: ReviewAction
    notes: Optional[str] = None
    add_as_anchor: bool = False

class RescanRequest(BaseModel):
    scan_ids: List[UUID] = Field(..., min_length=1)
    priority: int = Field(5, ge=1, le=10)

class RescanResponse(BaseModel):
    job_id: UUID
    scan_count: int

class PriorityUpdate(BaseModel):
    priority: int = Field(..., ge=1, le=10)

class JobRead(BaseModel):
    id: UUID
    job_type: JobType
    scan_id: Optional[UUID] = None
    scan_ids: List[str] = []
    status: JobStatus
    priority: int
    worker_id: Optional[str] = None
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class UserSummary(BaseModel):
    id: UUID
    email: str
    full_name: Optional[str] = None

    class Config:
        from_attributes = True

class ModelSummary(BaseModel):
    id: UUID
    display_name: str
    avatar_url: Optional[str] = None

    class Config:
        from_attributes = True

class QueueItem(BaseModel):
    scan: ScanRead
    creator: Optional[UserSummary] = None
    model: Optional[ModelSummary] = None
    anchors: List[AnchorRead] = []

class QueueResponse(BaseModel):
    items: List[QueueItem]
    total: int
    page: int
    size: int
    pages: int

class CreatorUploadStatus(BaseModel):
    id: UUID
    status: ScanStatus
    message: str
    created_at: datetime

class ModerationStats(BaseModel):
    scans: Dict[str, Any]
    jobs: Dict[str, Any]

class CronResult(BaseModel):
    success: bool
    recovered: int = 0
    processed: int = 0
    failed: int = 0
    remaining: int = 0
    stats: Dict[str, Any] = {}
    duration_ms: int = 0
