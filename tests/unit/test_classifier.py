"""Unit tests for the OpenAI profile classifier."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from gatekeeper.detection.classifier import OpenAIProfileClassifier, parse_classifier_payload
from gatekeeper.detection.models import DetectionLabel, UserProfile
from gatekeeper.errors import ClassifierError


def _profile(messages: list[str] | None = None) -> UserProfile:
    return UserProfile(
        username="newbie",
        account_created_at=datetime(2026, 2, 28, tzinfo=UTC),
        joined_server_at=datetime(2026, 3, 1, tzinfo=UTC),
        recent_messages=messages or [],
    )


def _mock_client(content: str | None) -> MagicMock:
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]

    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    client.close = AsyncMock()
    return client


class TestParseClassifierPayload:
    def test_valid_payload(self) -> None:
        result = parse_classifier_payload(
            {"label": "suspicious", "suspicion": 0.9, "reasons": ["Default avatar"]}
        )
        assert result.label == DetectionLabel.SUSPICIOUS
        assert result.confidence == 0.9
        assert result.reasons == ["Default avatar"]

    def test_confidence_is_clamped(self) -> None:
        result = parse_classifier_payload({"label": "OK", "suspicion": 3})
        assert result.confidence == 1.0
        assert result.reasons == []

    def test_scalar_reason_wrapped(self) -> None:
        result = parse_classifier_payload({"label": "OK", "suspicion": 0.1, "reasons": "fine"})
        assert result.reasons == ["fine"]

    @pytest.mark.parametrize(
        "payload",
        [
            {"suspicion": 0.5},
            {"label": "maybe", "suspicion": 0.5},
            {"label": "OK"},
            {"label": "OK", "suspicion": "high"},
        ],
    )
    def test_malformed_payload(self, payload: dict) -> None:
        with pytest.raises(ClassifierError, match="Malformed"):
            parse_classifier_payload(payload)


class TestOpenAIProfileClassifier:
    @pytest.mark.asyncio
    async def test_classify(self) -> None:
        client = _mock_client(
            json.dumps({"label": "SUSPICIOUS", "suspicion": 0.8, "reasons": ["spam links"]})
        )
        classifier = OpenAIProfileClassifier("key", "gpt-4o-mini", client=client)

        result = await classifier.classify(_profile(["hi"]))

        assert result.label == DetectionLabel.SUSPICIOUS
        assert result.confidence == 0.8
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "newbie" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_prompt_limits_recent_messages(self) -> None:
        client = _mock_client(json.dumps({"label": "OK", "suspicion": 0.1}))
        classifier = OpenAIProfileClassifier("key", "gpt-4o-mini", client=client)
        messages = [f"message-{i:02d}" for i in range(15)] + ["x" * 800]

        await classifier.classify(_profile(messages))

        prompt = client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert "message-05" not in prompt
        assert "message-14" in prompt
        assert "x" * 500 in prompt
        assert "x" * 501 not in prompt

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self) -> None:
        classifier = OpenAIProfileClassifier("key", "m", client=_mock_client("not json"))
        with pytest.raises(ClassifierError):
            await classifier.classify(_profile())

    @pytest.mark.asyncio
    async def test_non_object_json_raises(self) -> None:
        classifier = OpenAIProfileClassifier("key", "m", client=_mock_client("[1, 2]"))
        with pytest.raises(ClassifierError, match="Unexpected"):
            await classifier.classify(_profile())

    @pytest.mark.asyncio
    async def test_api_error_raises(self) -> None:
        client = _mock_client(None)
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        client.chat.completions.create = AsyncMock(
            side_effect=openai.APIConnectionError(request=request)
        )
        classifier = OpenAIProfileClassifier("key", "m", client=client)

        with pytest.raises(ClassifierError):
            await classifier.classify(_profile())

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        client = _mock_client(None)
        classifier = OpenAIProfileClassifier("key", "m", client=client)

        await classifier.close()
        await classifier.close()

        client.close.assert_awaited_once()
