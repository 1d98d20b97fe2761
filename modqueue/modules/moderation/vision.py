"""Vision adapter: asks an Anthropic vision model to assess an upload against a model's anchors.

An inability to analyse (network, API, timeout, garbage response) raises
``ExternalServiceError``. It is never turned into a "clean" result.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

import anthropic

from modqueue.core.config import Settings
from modqueue.core.errors import ExternalServiceError
from modqueue.modules.moderation.models import ModerationFlag

logger = logging.getLogger(__name__)

VISION_PROMPT = """You are a content moderation assistant for a platform of AI-generated fictional characters. Analyze the image and return ONLY a JSON object with no markdown formatting.

CONTEXT:
- Characters on this platform are AI-generated and fictional, never real people.
- Every character must clearly be an adult (18+).
- Real celebrities or otherwise identifiable real people are not allowed.
- Recurring characters must stay visually consistent with their approved anchor images.

ANALYZE FOR (all scores 0-100):
1. face_consistency_score: match against the anchor images (100 = same character). 0 and the "no_anchors" flag when no anchors are given.
2. celebrity_risk_score: resemblance to a real celebrity or public figure.
3. real_person_risk_score: likelihood this is a photograph of a real person rather than AI/artistic output.
4. deepfake_risk_score: signs of face swapping, deepfake artifacts or manipulation.
5. minor_risk_score: likelihood the subject appears under 18 (facial features, proportions, styling, context). This is critical.
6. face_count: number of human faces visible.

FLAGS (include when they apply):
face_drift, celeb_risk, celeb_high_confidence, real_person_suspected, faceswap_suspected,
deepfake_detected, minor_appearance_risk, youth_coded_appearance, no_face_detected,
multiple_faces, low_quality_image, no_anchors, style_inconsistency,
ai_generated_confirmed, real_photo_suspected

RESPOND WITH ONLY THIS JSON:
{
  "face_consistency_score": <0-100>,
  "celebrity_risk_score": <0-100>,
  "real_person_risk_score": <0-100>,
  "deepfake_risk_score": <0-100>,
  "minor_risk_score": <0-100>,
  "face_count": <integer>,
  "flags": [<flag strings>],
  "confidence": <0-100, confidence that the assessment is correct>,
  "staff_summary": "<one or two neutral sentences on the key findings>"
}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_VALID_FLAGS = {flag.value for flag in ModerationFlag}


@dataclass
class VisionResult:
    """Structured outcome of one vision analysis."""

    flags: List[ModerationFlag] = field(default_factory=list)
    confidence: float = 0.0  # 0..1
    detected_faces: int = 0
    face_consistency_score: int = 0
    celebrity_risk_score: int = 0
    real_person_risk_score: int = 0
    deepfake_risk_score: int = 0
    minor_risk_score: int = 0
    staff_summary: str = ""
    model: str = ""

    def as_dict(self) -> dict:
        return {
            "flags": [f.value for f in self.flags],
            "confidence": self.confidence,
            "detected_faces": self.detected_faces,
            "face_consistency_score": self.face_consistency_score,
            "celebrity_risk_score": self.celebrity_risk_score,
            "real_person_risk_score": self.real_person_risk_score,
            "deepfake_risk_score": self.deepfake_risk_score,
            "minor_risk_score": self.minor_risk_score,
        }


class VisionClient(Protocol):
    async def analyze(self, image_url: str, anchor_urls: Sequence[str] = ()) -> VisionResult: ...


def _clamp_score(value) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return int(max(0.0, min(100.0, number)))


def parse_vision_response(text: str, model: str = "") -> VisionResult:
    """Turns the model's reply into a :class:`VisionResult`.

    Raises ``ExternalServiceError`` when no JSON object can be recovered.
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ExternalServiceError("Vision response contained no JSON object")
    try:
        raw = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ExternalServiceError(f"Vision response was not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ExternalServiceError("Vision response JSON was not an object")

    flags: List[ModerationFlag] = []
    for value in raw.get("flags") or []:
        if value in _VALID_FLAGS and ModerationFlag(value) not in flags:
            flags.append(ModerationFlag(value))

    try:
        faces = max(0, int(raw.get("face_count", 0)))
    except (TypeError, ValueError):
        faces = 0

    return VisionResult(
        flags=flags,
        confidence=_clamp_score(raw.get("confidence", 50)) / 100.0,
        detected_faces=faces,
        face_consistency_score=_clamp_score(raw.get("face_consistency_score")),
        celebrity_risk_score=_clamp_score(raw.get("celebrity_risk_score")),
        real_person_risk_score=_clamp_score(raw.get("real_person_risk_score")),
        deepfake_risk_score=_clamp_score(raw.get("deepfake_risk_score")),
        minor_risk_score=_clamp_score(raw.get("minor_risk_score")),
        staff_summary=str(raw.get("staff_summary") or "Analysis complete."),
        model=model,
    )


class VisionScanClient:
    """Anthropic-backed implementation of :class:`VisionClient`.

    Parameters
    ----------
    settings : Settings
        Supplies the API key, model name, request timeout and anchor cap.
    client : anthropic.AsyncAnthropic | None
        Injected SDK client; built from settings when *None*.
    """

    def __init__(self, settings: Settings, client: Optional[anthropic.AsyncAnthropic] = None) -> None:
        self.model = settings.VISION_MODEL
        self.max_anchor_images = settings.VISION_MAX_ANCHOR_IMAGES
        self._client = client
        if self._client is None and settings.ANTHROPIC_API_KEY:
            self._client = anthropic.AsyncAnthropic(
                api_key=settings.ANTHROPIC_API_KEY,
                timeout=settings.VISION_TIMEOUT_SECONDS,
                max_retries=1,
            )

    @property
    def configured(self) -> bool:
        return self._client is not None

    def build_content(self, image_url: str, anchor_urls: Sequence[str]) -> list:
        content: list = [{"type": "text", "text": VISION_PROMPT}]
        anchors = list(anchor_urls)[: self.max_anchor_images]
        if anchors:
            content.append({
                "type": "text",
                "text": f"ANCHOR IMAGES ({len(anchors)} approved references for this character):",
            })
            for url in anchors:
                content.append({"type": "image", "source": {"type": "url", "url": url}})
            content.append({"type": "text", "text": "NEW IMAGE TO ANALYZE:"})
        content.append({"type": "image", "source": {"type": "url", "url": image_url}})
        return content

    async def analyze(self, image_url: str, anchor_urls: Sequence[str] = ()) -> VisionResult:
        if not self.configured:
            raise ExternalServiceError("Vision client not configured. Set ANTHROPIC_API_KEY.")

        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=1024,
                messages=[{"role": "user", "content": self.build_content(image_url, anchor_urls)}],
            )
        except anthropic.APITimeoutError as exc:
            raise ExternalServiceError(f"Vision request timed out: {exc}") from exc
        except anthropic.APIError as exc:
            logger.error(f"[Vision] API error for {image_url}: {exc}")
            raise ExternalServiceError(f"Vision request failed: {exc}") from exc

        text = "".join(
            block.text for block in (response.content or []) if getattr(block, "type", None) == "text"
        )
        return parse_vision_response(text, model=self.model)
