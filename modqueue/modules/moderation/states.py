"""
Scan and job lifecycles.

Every status write in the store goes through ``ensure_transition`` first, and the
UPDATE itself is conditional on the status the caller read, so an illegal or
raced transition never lands.
"""
import enum
from typing import Dict, FrozenSet, Union

from modqueue.core.errors import InvalidStateError


class ScanStatus(str, enum.Enum):
    PENDING_SCAN = "pending_scan"
    SCANNING = "scanning"
    APPROVED = "approved"
    PENDING_REVIEW = "pending_review"
    REJECTED = "rejected"
    FAILED = "failed"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


SCAN_TRANSITIONS: Dict[ScanStatus, FrozenSet[ScanStatus]] = {
    ScanStatus.PENDING_SCAN: frozenset({ScanStatus.SCANNING, ScanStatus.FAILED}),
    ScanStatus.SCANNING: frozenset({
        ScanStatus.APPROVED,
        ScanStatus.PENDING_REVIEW,
        ScanStatus.REJECTED,
        ScanStatus.FAILED,
        ScanStatus.PENDING_SCAN,  # stale recovery
    }),
    ScanStatus.PENDING_REVIEW: frozenset({
        ScanStatus.APPROVED,
        ScanStatus.REJECTED,
        ScanStatus.PENDING_REVIEW,  # escalation
        ScanStatus.PENDING_SCAN,
    }),
    ScanStatus.APPROVED: frozenset({ScanStatus.PENDING_SCAN}),
    ScanStatus.REJECTED: frozenset({ScanStatus.PENDING_SCAN}),
    ScanStatus.FAILED: frozenset({ScanStatus.PENDING_SCAN}),
}

JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.QUEUED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.CANCELLED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
}

# Scans a moderator may send back through the scanner.
RESCANNABLE = frozenset({
    ScanStatus.APPROVED,
    ScanStatus.REJECTED,
    ScanStatus.FAILED,
    ScanStatus.PENDING_REVIEW,
})

Status = Union[ScanStatus, JobStatus]


def can_transition(current: Status, target: Status) -> bool:
    if isinstance(current, ScanStatus) and isinstance(target, ScanStatus):
        return target in SCAN_TRANSITIONS[current]
    if isinstance(current, JobStatus) and isinstance(target, JobStatus):
        return target in JOB_TRANSITIONS[current]
    return False


def ensure_transition(current: Status, target: Status) -> None:
    if not can_transition(current, target):
        kind = "scan" if isinstance(current, ScanStatus) else "job"
        raise InvalidStateError(
            f"Cannot move {kind} from '{current.value}' to '{target.value}'",
            details={"current": current.value, "target": target.value},
        )
