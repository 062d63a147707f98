"""Abstract completion provider interface and shared data types."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, Literal

from pydantic import BaseModel, Field

from lumina.models import Attachment, Role, SamplingParams


class TranscriptEntry(BaseModel):
    """One role-tagged turn of generation history."""

    role: Role
    content: str


class GenerationRequest(BaseModel):
    """Everything a provider needs to make an API call.

    ``history`` excludes the new prompt; providers append ``prompt`` (and any
    attachments) as the final user turn in their own dialect.
    """

    model: str
    prompt: str
    history: list[TranscriptEntry] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    system_prompt: str | None = None
    sampling_params: SamplingParams = Field(default_factory=SamplingParams)


class GenerationResult(BaseModel):
    """Full response from a provider after generation completes."""

    content: str
    model: str
    finish_reason: str | None = None
    usage: dict[str, int] | None = None
    latency_ms: int | None = None
    raw_response: dict[str, Any] | None = None


class StreamChunk(BaseModel):
    """A single item of a streaming response.

    ``error`` chunks report a provider-side failure without ending the
    iteration; the final ``message_stop`` chunk still follows.
    """

    type: Literal["text_delta", "error", "message_stop"]
    text: str = ""
    error: str | None = None
    is_final: bool = False
    result: GenerationResult | None = None


class LLMProvider(ABC):
    """Abstract interface for completion providers."""

    suggested_models: list[str] = []
    default_model: str = ""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., 'openrouter')."""
        ...

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Send a non-streaming generation request. Returns the full result."""
        ...

    @abstractmethod
    def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        """Send a streaming generation request. Yields chunks."""
        ...


def provider_role(role: Role) -> str:
    """Map a core role onto the chat-completions dialect."""
    return "assistant" if role == "model" else "user"
