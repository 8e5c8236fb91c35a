"""
Upstream generation logic for continuation segments.

This module defines the ``ContinuationGenerator`` class, which wraps the
OpenAI chat completions API. Given a reference image, the next slice of the
script, a voice profile, the product being advertised and, optionally, the
previous segment, it asks the model for one structured **segment**:

* ``character_description`` – ``voice_matching``, ``visual_details`` and
  ``behavior_notes`` keep the presenter consistent from clip to clip.
* ``action_timeline`` – ``dialogue``, ``action_description`` and
  ``camera_direction`` describe what happens in this clip.

Failures are raised as typed ``UpstreamError`` subclasses (timeout, auth or
other) so the HTTP layer can map them without reading message text.

The generator also owns the background path. ``process_task`` is the
coroutine the continuation endpoint dispatches with ``asyncio.create_task``:
it waits for an admission slot, calls the provider and records the outcome in
the shared ``TaskStorage``. Nothing raised inside it reaches a client; the
task record is the only output.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from config import Settings
from errors import (
    ErrorKind,
    UpstreamAuthError,
    UpstreamError,
    UpstreamTimeoutError,
    classify_error,
)
from task_storage import TaskError, TaskStorage

logger = logging.getLogger(__name__)


class CharacterDescription(BaseModel):
    voice_matching: str
    visual_details: str
    behavior_notes: str


class ActionTimeline(BaseModel):
    dialogue: str
    action_description: str
    camera_direction: str


class Segment(BaseModel):
    """Expected shape of a generated segment.

    Upstream output is passed through as-is; this model documents the
    contract and builds the mock segment.
    """

    character_description: CharacterDescription
    action_timeline: ActionTimeline


MOCK_SEGMENT = Segment(
    character_description=CharacterDescription(
        voice_matching="Warm, conversational tone matching the previous clip; medium pace.",
        visual_details="Same presenter as the reference image, identical outfit and lighting.",
        behavior_notes="Relaxed posture, occasional smile, keeps eye contact with the lens.",
    ),
    action_timeline=ActionTimeline(
        dialogue="This is a mock continuation segment for testing the request flow.",
        action_description="Presenter holds the product up to the camera and turns it slowly.",
        camera_direction="Medium close-up, slow push-in, eye level.",
    ),
)


SYSTEM_PROMPT = (
    "You write continuation segments for short-form product videos. Each segment is "
    "one clip of roughly eight seconds in which the same presenter keeps speaking to camera.\n\n"
    "RULES:\n"
    "1. Return ONLY a JSON object - no markdown, no code fences, no commentary\n"
    "2. The presenter must look and sound exactly like the person in the reference image\n"
    "3. Dialogue is taken from the provided script; do not invent claims about the product\n"
    "4. Camera direction must be concrete (shot size, movement, angle)\n\n"
    "JSON Format Required:\n"
    "{\n"
    "  \"character_description\": {\n"
    "    \"voice_matching\": \"how the voice matches the voice profile\",\n"
    "    \"visual_details\": \"appearance, wardrobe, setting, lighting\",\n"
    "    \"behavior_notes\": \"gestures, posture, expression\"\n"
    "  },\n"
    "  \"action_timeline\": {\n"
    "    \"dialogue\": \"exact words spoken in this clip\",\n"
    "    \"action_description\": \"what the presenter does\",\n"
    "    \"camera_direction\": \"shot framing and movement\"\n"
    "  }\n"
    "}"
)


def build_user_prompt(request: Dict[str, Any]) -> str:
    """Build the text part of the user message for a continuation request."""
    voice_profile = request.get("voiceProfile")
    if not isinstance(voice_profile, str):
        voice_profile = json.dumps(voice_profile, ensure_ascii=False)

    lines = [
        f"Product: {request.get('product')}",
        f"Voice profile: {voice_profile}",
        "",
        "Script for this segment:",
        str(request.get("script")),
    ]
    previous = request.get("previousSegment")
    if previous:
        lines += [
            "",
            "Previous segment (keep the character, wardrobe and setting consistent with it):",
            json.dumps(previous, ensure_ascii=False, indent=2),
        ]
    if request.get("maintainEnergy"):
        lines += [
            "",
            "Maintain the same energy level, pacing and emotional intensity as the previous segment.",
        ]
    return "\n".join(lines)


def parse_segment(text: str) -> Dict[str, Any]:
    """Parse the model's JSON reply, tolerating code fences around it."""
    text = text.strip()
    text = re.sub(r"^```json\s*|```$", "", text, flags=re.IGNORECASE | re.MULTILINE).strip()
    text = re.sub(r"^```\s*|```$", "", text, flags=re.MULTILINE).strip()
    try:
        segment = json.loads(text)
    except json.JSONDecodeError as exc:
        raise UpstreamError(f"OpenAI returned malformed segment JSON: {exc}") from exc
    if not isinstance(segment, dict):
        raise UpstreamError("OpenAI returned a segment that is not a JSON object")
    return segment


class ContinuationGenerator:
    """Client for the generative provider plus the background task body."""

    def __init__(
        self,
        settings: Settings,
        task_storage: TaskStorage,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.task_storage = task_storage
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.openai_base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.upstream_timeout, connect=10.0),
        )
        # Bounds concurrent upstream calls across both request modes.
        self._slots = asyncio.Semaphore(settings.max_concurrent_generations)

    async def __aenter__(self) -> ContinuationGenerator:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def generate_continuation_segment(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Ask the provider for the next segment and return it as a dict.

        Raises ``UpstreamTimeoutError`` when the provider does not answer in
        time, ``UpstreamAuthError`` when the key is missing or rejected, and
        ``UpstreamError`` for everything else.
        """
        api_key = self.settings.openai_api_key
        if not api_key:
            raise UpstreamAuthError("OpenAI API key not configured")

        payload = {
            "model": self.settings.openai_model,
            "response_format": {"type": "json_object"},
            "temperature": 0.7,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_user_prompt(request)},
                        {"type": "image_url", "image_url": {"url": request["imageUrl"]}},
                    ],
                },
            ],
        }
        headers = {"Authorization": f"Bearer {api_key}"}

        logger.info("[Upstream] Requesting segment for product %r", request.get("product"))
        try:
            resp = await self._client.post("/chat/completions", json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(
                f"OpenAI request timed out after {self.settings.upstream_timeout:g}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 401:
                raise UpstreamAuthError("Invalid OpenAI API key", status_code=status) from exc
            raise UpstreamError(
                f"OpenAI API error {status}: {exc.response.text[:200]}", status_code=status
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"OpenAI request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError(f"OpenAI returned a non-JSON response: {exc}") from exc

        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise UpstreamError("OpenAI response contained no message content") from exc
        if not isinstance(text, str):
            raise UpstreamError("OpenAI response contained no message content")
        logger.info("[Upstream] Received %d characters", len(text))
        return parse_segment(text)

    async def _admitted(self, request: Dict[str, Any]) -> Dict[str, Any]:
        async with self._slots:
            return await self.generate_continuation_segment(request)

    async def run_sync(self, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """Generate a segment inline, bounded by ``timeout`` seconds.

        The budget includes time spent waiting for an admission slot.
        """
        try:
            return await asyncio.wait_for(self._admitted(request), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError(f"Generation timed out after {timeout:g}s") from exc

    async def process_task(self, task_id: str, request: Dict[str, Any]) -> None:
        """Run one background generation and record its outcome.

        Upstream failures are classified and stored on the task. A cancelled
        task is marked failed before the cancellation propagates.
        """
        logger.info("[Background] Processing task %s", task_id)
        try:
            segment = await self._admitted(request)
        except asyncio.CancelledError:
            self.task_storage.fail(task_id, TaskError(message="Task cancelled", kind=ErrorKind.unknown))
            logger.info("[Background] Task %s cancelled", task_id)
            raise
        except Exception as exc:
            kind = classify_error(exc)
            self.task_storage.fail(task_id, TaskError(message=str(exc), kind=kind))
            logger.error("[Background] Task %s failed (%s): %s", task_id, kind.value, exc)
            return

        self.task_storage.complete(task_id, segment)
        logger.info("[Background] Task %s completed successfully", task_id)
