"""Shared base class for OpenAI-compatible completion providers.

Handles parameter building, attachment encoding, response parsing and
streaming. OpenAIProvider and OpenRouterProvider are thin subclasses that
differ only in client configuration.
"""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from openai import APIError, AsyncOpenAI

from lumina.providers.base import (
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    StreamChunk,
    provider_role,
)

logger = logging.getLogger(__name__)


class OpenAICompatibleProvider(LLMProvider):
    """Base provider for any API that speaks the OpenAI chat completions protocol."""

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        params = self._build_params(request)
        start = time.monotonic()
        response = await self._client.chat.completions.create(**params)
        latency_ms = int((time.monotonic() - start) * 1000)

        choice = response.choices[0]
        return GenerationResult(
            content=choice.message.content or "",
            model=response.model,
            finish_reason=choice.finish_reason,
            usage={
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens,
            },
            latency_ms=latency_ms,
            raw_response=response.model_dump(),
        )

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        params = self._build_params(request)
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}

        start = time.monotonic()
        accumulated_text = ""
        finish_reason: str | None = None
        model = request.model
        input_tokens = 0
        output_tokens = 0

        try:
            stream = await self._client.chat.completions.create(**params)
            async for chunk in stream:
                if chunk.model:
                    model = chunk.model

                if chunk.choices:
                    choice = chunk.choices[0]
                    text = choice.delta.content
                    if text:
                        accumulated_text += text
                        yield StreamChunk(type="text_delta", text=text)
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason

                # Usage comes in final chunk (no choices)
                if chunk.usage:
                    input_tokens = chunk.usage.prompt_tokens
                    output_tokens = chunk.usage.completion_tokens
        except APIError as e:
            logger.warning("%s stream failed: %s", self.name, e)
            finish_reason = "error"
            yield StreamChunk(type="error", error=str(e))

        latency_ms = int((time.monotonic() - start) * 1000)
        yield StreamChunk(
            type="message_stop",
            is_final=True,
            result=GenerationResult(
                content=accumulated_text,
                model=model,
                finish_reason=finish_reason,
                usage={"input_tokens": input_tokens, "output_tokens": output_tokens},
                latency_ms=latency_ms,
            ),
        )

    def _build_params(self, request: GenerationRequest) -> dict[str, Any]:
        """Build kwargs dict for client.chat.completions.create()."""
        sp = request.sampling_params
        messages: list[dict[str, Any]] = []

        if request.system_prompt is not None:
            messages.append({"role": "system", "content": request.system_prompt})

        messages.extend(
            {"role": provider_role(m.role), "content": m.content} for m in request.history
        )
        messages.append({"role": "user", "content": self._user_content(request)})

        params: dict[str, Any] = {
            "model": request.model,
            "max_tokens": sp.max_tokens,
            "messages": messages,
        }
        if sp.temperature is not None:
            params["temperature"] = sp.temperature
        if sp.top_p is not None:
            params["top_p"] = sp.top_p
        return params

    def _user_content(self, request: GenerationRequest) -> str | list[dict[str, Any]]:
        """Plain text, or content parts when images are attached."""
        if not request.attachments:
            return request.prompt

        parts: list[dict[str, Any]] = []
        if request.prompt.strip():
            parts.append({"type": "text", "text": request.prompt})
        for attachment in request.attachments:
            if not attachment.is_image:
                logger.warning(
                    "%s: skipping attachment %s (%s), only images are supported",
                    self.name, attachment.filename, attachment.mime_type,
                )
                continue
            parts.append({"type": "image_url", "image_url": {"url": attachment.data_url()}})
        return parts
