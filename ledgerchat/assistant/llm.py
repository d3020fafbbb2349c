"""
LLM CLIENT - one generation call against the Gemini REST API

Failures are classified so the logs can tell them apart even when the user
sees a similar message:
    TransportError          non-200 status or unreachable backend
    MalformedResponseError  body is not the JSON envelope
    EmptyResultError        envelope without candidate text (safety, quota)
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from ledgerchat.assistant.errors import (
    EmptyResultError,
    MalformedResponseError,
    TransportError,
    redact,
)
from ledgerchat.assistant.types import ModelResponse, Prompt
from ledgerchat.core.schemas import ChatRole

logger = logging.getLogger(__name__)

# Gemini names the assistant side of a conversation "model"
_ROLE_NAMES = {ChatRole.USER: "user", ChatRole.ASSISTANT: "model"}


class LLMClient:
    """
    Base LLM client interface.
    """

    async def generate(self, prompt: Prompt, credential: str) -> ModelResponse:
        """
        Send a prompt and return the raw model text.
        """
        raise NotImplementedError("generate must be implemented by subclasses")


class GeminiClient(LLMClient):
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        temperature: float = 0.1,
        timeout: float = 30.0,
        max_retries: int = 1,
        retry_backoff: float = 1.0,
    ):
        """
        Args:
            http_client: Shared async client (owned by the app lifespan)
            model: Gemini model name
            base_url: API root, without trailing model path
            temperature: Fixed low temperature for deterministic payloads
            timeout: Per-request timeout in seconds
            max_retries: Extra attempts for retriable transport failures
            retry_backoff: First retry delay in seconds, doubled each retry
        """
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")

        self.http_client = http_client
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def build_body(self, prompt: Prompt) -> Dict[str, Any]:
        contents = [
            {"role": _ROLE_NAMES[turn.role], "parts": [{"text": turn.text}]}
            for turn in prompt.prior_turns
        ]
        contents.append({"role": "user", "parts": [{"text": prompt.render()}]})
        return {
            "contents": contents,
            "generationConfig": {"temperature": self.temperature},
        }

    async def generate(self, prompt: Prompt, credential: str) -> ModelResponse:
        body = self.build_body(prompt)
        delay = self.retry_backoff

        for attempt in range(self.max_retries + 1):
            try:
                return await self._post(body, credential)
            except TransportError as error:
                if not error.retriable or attempt == self.max_retries:
                    raise
                logger.warning(
                    f"{error.message}, retrying ({attempt + 1}/{self.max_retries}) in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay *= 2

        raise AssertionError("retry loop exited without a result")

    async def _post(self, body: Dict[str, Any], credential: str) -> ModelResponse:
        # Key travels in a header so it never shows up in URLs, proxies or access logs
        headers = {"x-goog-api-key": credential, "Content-Type": "application/json"}

        try:
            response = await self.http_client.post(
                self.endpoint, json=body, headers=headers, timeout=self.timeout
            )
        except httpx.TransportError as exc:
            reason = redact(f"{type(exc).__name__}: {exc}", credential)
            logger.error(f"Gemini API unreachable: {reason}")
            raise TransportError(None, reason) from exc

        raw_body = redact(response.text, credential)

        if response.status_code != 200:
            logger.error(f"Gemini API Fail - Status: {response.status_code} Body: {raw_body}")
            raise TransportError(response.status_code, raw_body)

        try:
            payload = json.loads(raw_body.strip())
        except ValueError:
            logger.error(f"JSON Parse Error - Body received: {raw_body}")
            raise MalformedResponseError(raw_body)

        if not isinstance(payload, dict):
            logger.error(f"Unexpected Gemini envelope - Body received: {raw_body}")
            raise MalformedResponseError(raw_body)

        try:
            text = _candidate_text(payload)
        except TypeError as exc:
            logger.error(f"Unexpected Gemini envelope ({exc}) - Body received: {raw_body}")
            raise MalformedResponseError(raw_body) from exc

        if text is None:
            reason = _empty_reason(payload)
            logger.warning(f"Gemini returned no candidate content (reason: {reason})")
            raise EmptyResultError(reason)

        return ModelResponse(text=text)


def _candidate_text(payload: Dict[str, Any]) -> Optional[str]:
    """
    Join the text parts of the first candidate.

    Returns None when there is no candidate or it carries no text (safety
    block, token limit). Raises TypeError when the envelope has the wrong shape.
    """
    candidates = payload.get("candidates")
    if candidates is None or candidates == []:
        return None
    if not isinstance(candidates, list):
        raise TypeError(f"candidates is a {type(candidates).__name__}")

    first = candidates[0]
    if not isinstance(first, dict):
        raise TypeError(f"candidate is a {type(first).__name__}")

    content = first.get("content")
    if content is None:
        return None
    if not isinstance(content, dict):
        raise TypeError(f"content is a {type(content).__name__}")

    parts = content.get("parts")
    if parts is None:
        return None
    if not isinstance(parts, list) or not all(isinstance(part, dict) for part in parts):
        raise TypeError("parts is not a list of objects")

    texts: List[str] = [part["text"] for part in parts if isinstance(part.get("text"), str)]
    text = "".join(texts)
    return text if text.strip() else None


def _empty_reason(payload: Dict[str, Any]) -> Optional[str]:
    feedback = payload.get("promptFeedback")
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        return f"blocked: {feedback['blockReason']}"

    candidates = payload.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        finish_reason = candidates[0].get("finishReason")
        if finish_reason:
            return f"finish reason: {finish_reason}"

    return None
