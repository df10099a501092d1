"""External profile classification.

The orchestrator only depends on the :class:`ClassifierAdapter` protocol.
:class:`OpenAIProfileClassifier` is the production adapter; it raises
:class:`~gatekeeper.errors.ClassifierError` on any failure and leaves the
fail-open decision to the caller.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import openai

from gatekeeper.detection.models import ClassifierResult, DetectionLabel, UserProfile
from gatekeeper.errors import ClassifierError
from gatekeeper.logging import get_logger

log = get_logger("gatekeeper.detection.classifier")

_PROFILE_ANALYSIS_PROMPT = """\
You review new members of an online chat community for spam and scam accounts.

Profile:
{profile}

Respond with ONLY a JSON object:
{{"label": "OK" or "SUSPICIOUS", "suspicion": 0.0-1.0, "reasons": ["short reason"]}}
"""

_MAX_RECENT_MESSAGES = 10


class ClassifierAdapter(Protocol):
    """Anything that can classify a user profile."""

    async def classify(self, profile: UserProfile) -> ClassifierResult:
        """Classify ``profile``. May raise or hang; callers bound the call."""
        ...


def parse_classifier_payload(payload: dict[str, Any]) -> ClassifierResult:
    """Build a :class:`ClassifierResult` from the model's JSON answer.

    Raises:
        ClassifierError: If the label or score is missing or malformed.
    """
    try:
        label = DetectionLabel(str(payload["label"]).upper())
        confidence = float(payload["suspicion"])
    except (KeyError, TypeError, ValueError) as e:
        raise ClassifierError(f"Malformed classifier response: {payload!r}") from e

    reasons = payload.get("reasons") or []
    if not isinstance(reasons, list):
        reasons = [str(reasons)]
    return ClassifierResult(
        label=label,
        confidence=min(1.0, max(0.0, confidence)),
        reasons=[str(r) for r in reasons],
    )


class OpenAIProfileClassifier:
    """OpenAI-backed profile classifier."""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        client: openai.AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def classify(self, profile: UserProfile) -> ClassifierResult:
        profile_data = profile.to_dict()
        profile_data["recent_messages"] = [
            m[:500] for m in profile.recent_messages[-_MAX_RECENT_MESSAGES:]
        ]
        prompt = _PROFILE_ANALYSIS_PROMPT.format(profile=json.dumps(profile_data, indent=2))

        try:
            response = await self._get_client().chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
                temperature=0.1,
                max_tokens=200,
            )
            content = response.choices[0].message.content or ""
            payload = json.loads(content)
        except (openai.OpenAIError, json.JSONDecodeError, IndexError) as e:
            log.warning("classifier_call_failed", error=str(e))
            raise ClassifierError(str(e)) from e

        if not isinstance(payload, dict):
            raise ClassifierError(f"Unexpected classifier response: {payload!r}")
        return parse_classifier_payload(payload)

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.close()
            self._client = None
