from dataclasses import dataclass
from typing import List

from modqueue.core.config import Settings
from modqueue.modules.moderation.models import ModerationFlag, HIGH_RISK_FLAGS
from modqueue.modules.moderation.states import ScanStatus
from modqueue.modules.moderation.vision import VisionResult


@dataclass
class Decision:
    status: ScanStatus
    flags: List[ModerationFlag]
    reason: str


def derive_flags(result: VisionResult, anchor_count: int, settings: Settings) -> List[ModerationFlag]:
    """Vision flags plus the ones implied by scores, face count and anchor coverage."""
    flags = list(result.flags)

    def add(flag: ModerationFlag):
        if flag not in flags:
            flags.append(flag)

    if result.minor_risk_score >= settings.MODERATION_REVIEW_MIN_MINOR_RISK:
        add(ModerationFlag.MINOR_APPEARANCE_RISK)
    if result.celebrity_risk_score >= settings.MODERATION_HIGH_CELEBRITY_RISK:
        add(ModerationFlag.CELEB_HIGH_CONFIDENCE)
    if result.celebrity_risk_score >= settings.MODERATION_REVIEW_MIN_CELEBRITY_RISK:
        add(ModerationFlag.CELEB_RISK)
    if result.deepfake_risk_score >= settings.MODERATION_HIGH_DEEPFAKE_RISK:
        add(ModerationFlag.DEEPFAKE_DETECTED)
    if result.detected_faces == 0:
        add(ModerationFlag.NO_FACE_DETECTED)
    elif result.detected_faces > 1:
        add(ModerationFlag.MULTIPLE_FACES)

    if anchor_count == 0:
        add(ModerationFlag.NO_ANCHORS)
    else:
        # The model may claim no_anchors on its own; we know better.
        if ModerationFlag.NO_ANCHORS in flags:
            flags.remove(ModerationFlag.NO_ANCHORS)
        if anchor_count < settings.MODERATION_MIN_ANCHORS:
            add(ModerationFlag.INSUFFICIENT_ANCHORS)
    return flags


def determine_status(result: VisionResult, anchor_count: int, settings: Settings) -> Decision:
    """
    Maps a vision result to a scan status. Only ever returns APPROVED or
    PENDING_REVIEW: rejection is a human call, pipeline errors are FAILED upstream.
    """
    flags = derive_flags(result, anchor_count, settings)
    enough_anchors = anchor_count >= settings.MODERATION_MIN_ANCHORS

    high_risk = [f for f in flags if f in HIGH_RISK_FLAGS]
    if high_risk:
        return Decision(ScanStatus.PENDING_REVIEW, flags, f"high-risk flags: {', '.join(f.value for f in high_risk)}")

    if ModerationFlag.NO_FACE_DETECTED in flags:
        return Decision(ScanStatus.PENDING_REVIEW, flags, "no face detected")

    if ModerationFlag.NO_ANCHORS in flags:
        return Decision(ScanStatus.PENDING_REVIEW, flags, "no anchors to compare against")

    if result.confidence < settings.MODERATION_MIN_CONFIDENCE:
        return Decision(ScanStatus.PENDING_REVIEW, flags, f"low confidence ({result.confidence:.2f})")

    if (
        result.celebrity_risk_score >= settings.MODERATION_REVIEW_MIN_CELEBRITY_RISK
        or result.deepfake_risk_score >= settings.MODERATION_REVIEW_MIN_DEEPFAKE_RISK
        or (enough_anchors and result.face_consistency_score <= settings.MODERATION_REVIEW_MAX_FACE_CONSISTENCY)
    ):
        return Decision(ScanStatus.PENDING_REVIEW, flags, "risk scores above review thresholds")

    can_auto_approve = (
        result.celebrity_risk_score <= settings.MODERATION_AUTO_APPROVE_MAX_CELEBRITY_RISK
        and result.deepfake_risk_score <= settings.MODERATION_AUTO_APPROVE_MAX_DEEPFAKE_RISK
        and result.real_person_risk_score <= settings.MODERATION_AUTO_APPROVE_MAX_REAL_PERSON_RISK
        and result.minor_risk_score < settings.MODERATION_AUTO_APPROVE_MAX_MINOR_RISK
        and (not enough_anchors or result.face_consistency_score >= settings.MODERATION_AUTO_APPROVE_MIN_FACE_CONSISTENCY)
    )
    if can_auto_approve:
        return Decision(ScanStatus.APPROVED, flags, "within auto-approve thresholds")

    return Decision(ScanStatus.PENDING_REVIEW, flags, "uncertain; needs a human")
