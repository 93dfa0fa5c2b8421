"""
Judgment Service Client

The judgment service is the external language-model scorer used for
free-text and transcribed answers and for the narrative summary. This module
defines its interface, an OpenAI-compatible chat completions client built on
aiohttp, and the parsers that turn its raw text into scores and feedback.
"""

import asyncio
import json
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from competency_backend.common.error_handling import (
    ConfigurationError,
    ExternalServiceError,
    MalformedResponseError,
)
from competency_backend.common.logger import app_logger

# Module logger
logger = app_logger.getChild("competency.judgment")

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

DEFAULT_FEEDBACK = "No feedback provided"


@dataclass
class ScoredJudgment:
    """A parsed scoring response: score already clamped into [0, max_score]."""
    score: float
    feedback: str


class JudgmentService(ABC):
    """Interface of the external judgment service."""

    @abstractmethod
    async def judge(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 500
    ) -> str:
        """
        Send one prompt pair to the judgment service.

        Args:
            system_prompt: Instructions for the model
            user_prompt: The item to judge
            temperature: Sampling temperature
            max_tokens: Upper bound on the response length

        Returns:
            The raw response text

        Raises:
            ExternalServiceError: If the call fails or the payload has an
                unexpected shape
        """
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None


class OpenAIJudgmentClient(JudgmentService):
    """Judgment service backed by an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is not None and not self._session.closed:
            return self._session

        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                )
                self._owns_session = True
        return self._session

    async def judge(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 500
    ) -> str:
        if not self.api_key:
            raise ConfigurationError("Judgment service API key is not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/chat/completions"

        session = await self._get_session()
        try:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status != 200:
                    body = await response.text()
                    raise ExternalServiceError(
                        f"Judgment service returned HTTP {response.status}: {body[:200]}",
                        service="judgment",
                        status_code=response.status,
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExternalServiceError(
                f"Judgment service request failed: {type(e).__name__}",
                service="judgment",
                cause=e,
            ) from e

        return _extract_message_text(data)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


def _extract_message_text(data: Any) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise MalformedResponseError(
            "Judgment service payload has no message content",
            raw_response=json.dumps(data, default=str) if data is not None else None,
            cause=e,
        ) from e
    if not isinstance(content, str):
        raise MalformedResponseError("Judgment service message content is not text")
    return content


def _load_json_object(text: str) -> Optional[Dict[str, Any]]:
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def clamp_score(score: float, max_score: float) -> float:
    """Clamp ``score`` into [0, max_score]; NaN and negatives become 0."""
    if math.isnan(score) or score < 0:
        return 0.0
    if score > max_score:
        return float(max_score)
    return float(score)


def parse_score_response(text: str, max_score: float) -> ScoredJudgment:
    """
    Parse a scoring response.

    The first ``{...}`` block in the text must be a JSON object with a
    numeric ``score``.

    Raises:
        MalformedResponseError: If no usable score is present
    """
    parsed = _load_json_object(text)
    if parsed is None:
        raise MalformedResponseError("No JSON object found in judgment response", raw_response=text)

    raw_score = parsed.get("score")
    if isinstance(raw_score, bool):
        raw_score = None
    try:
        score = float(raw_score)
    except (TypeError, ValueError):
        raise MalformedResponseError("Judgment response has no numeric score", raw_response=text)
    if math.isinf(score):
        raise MalformedResponseError("Judgment response score is not finite", raw_response=text)

    feedback = parsed.get("feedback")
    return ScoredJudgment(
        score=clamp_score(score, max_score),
        feedback=str(feedback) if feedback else DEFAULT_FEEDBACK,
    )


def parse_feedback_response(text: str) -> str:
    """
    Parse a narrative summary response.

    A JSON object's ``feedback`` field is preferred; text without any JSON
    object is taken as the narrative itself.

    Raises:
        MalformedResponseError: If the response is empty or a JSON object
            without feedback
    """
    if not text or not text.strip():
        raise MalformedResponseError("Empty judgment response")

    if _JSON_OBJECT.search(text) is None:
        return text.strip()

    parsed = _load_json_object(text)
    feedback = parsed.get("feedback") if parsed else None
    if not isinstance(feedback, str) or not feedback.strip():
        raise MalformedResponseError("Judgment response has no feedback", raw_response=text)
    return feedback.strip()
