"""Vision response parsing and the Anthropic-backed client."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import anthropic
import pytest

from modqueue.core.config import Settings
from modqueue.core.errors import ExternalServiceError
from modqueue.modules.moderation.models import ModerationFlag
from modqueue.modules.moderation.vision import VisionScanClient, parse_vision_response


def _reply(payload) -> str:
    return f"Here is my analysis:\n```json\n{json.dumps(payload)}\n```"


class TestParseVisionResponse:
    def test_extracts_json_from_surrounding_text(self):
        result = parse_vision_response(_reply({
            "flags": ["celeb_risk"],
            "confidence": 85,
            "face_count": 1,
            "face_consistency_score": 77,
            "celebrity_risk_score": 55,
            "real_person_risk_score": 12,
            "deepfake_risk_score": 3,
            "minor_risk_score": 0,
            "staff_summary": "Resembles a public figure.",
        }), model="vision-x")

        assert result.flags == [ModerationFlag.CELEB_RISK]
        assert result.confidence == pytest.approx(0.85)
        assert result.detected_faces == 1
        assert result.celebrity_risk_score == 55
        assert result.model == "vision-x"

    def test_unknown_flags_are_dropped(self):
        result = parse_vision_response(_reply({"flags": ["celeb_risk", "made_up", "celeb_risk"]}))
        assert result.flags == [ModerationFlag.CELEB_RISK]

    def test_scores_are_clamped(self):
        result = parse_vision_response(_reply({"celebrity_risk_score": 140, "deepfake_risk_score": -5, "confidence": "abc"}))

        assert result.celebrity_risk_score == 100
        assert result.deepfake_risk_score == 0
        assert result.confidence == 0.0

    @pytest.mark.parametrize("text", ["", "no json here", "{not: valid json}", "[1, 2, 3]"])
    def test_unparseable_reply_is_an_error_not_a_clean_result(self, text):
        with pytest.raises(ExternalServiceError):
            parse_vision_response(text)


def _sdk_response(text: str):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


class TestVisionScanClient:
    def test_unconfigured_without_api_key(self):
        client = VisionScanClient(Settings(_env_file=None, ANTHROPIC_API_KEY=None))
        assert not client.configured

    async def test_unconfigured_client_refuses_to_scan(self):
        client = VisionScanClient(Settings(_env_file=None, ANTHROPIC_API_KEY=None))
        with pytest.raises(ExternalServiceError):
            await client.analyze("https://cdn.example.com/a.jpg")

    async def test_sends_anchors_before_the_new_image(self):
        sdk = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(return_value=_sdk_response(_reply({"face_count": 1})))))
        client = VisionScanClient(Settings(_env_file=None, VISION_MAX_ANCHOR_IMAGES=2), client=sdk)

        await client.analyze("https://cdn.example.com/new.jpg", ["https://a/1.jpg", "https://a/2.jpg", "https://a/3.jpg"])

        content = sdk.messages.create.call_args.kwargs["messages"][0]["content"]
        urls = [block["source"]["url"] for block in content if block["type"] == "image"]
        assert urls == ["https://a/1.jpg", "https://a/2.jpg", "https://cdn.example.com/new.jpg"]

    async def test_api_errors_become_external_service_errors(self):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        sdk = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(side_effect=anthropic.APIConnectionError(request=request))))
        client = VisionScanClient(Settings(_env_file=None), client=sdk)

        with pytest.raises(ExternalServiceError):
            await client.analyze("https://cdn.example.com/new.jpg")
