"""Short titles for new nodes, summarized from their first exchange."""

import re

from lumina.models import TITLE_SENTINEL, SamplingParams
from lumina.providers.base import GenerationRequest, LLMProvider

FALLBACK_TITLE = "New Conversation"
MIN_TITLE_LENGTH = 3
MAX_TITLE_LENGTH = 60
RESPONSE_EXCERPT_CHARS = 150

_STRIP_CHARS = re.compile(r"[\"'#*\n]")

TITLE_PROMPT = (
    "Generate a short, descriptive title (2-6 words) for this conversation. "
    "Do not use quotes or special characters.\n\n"
    'User: "{prompt}"\n'
    'AI: "{response}..."\n\n'
    "Title:"
)


class TitleSummarizer:
    """Asks a provider for a 2-6 word title. Provider errors propagate."""

    def __init__(self, provider: LLMProvider, *, model: str | None = None) -> None:
        self._provider = provider
        self._model = model

    async def summarize(self, prompt: str, response: str, model: str | None = None) -> str:
        request = GenerationRequest(
            model=self._model or model or self._provider.default_model,
            prompt=TITLE_PROMPT.format(
                prompt=prompt, response=response[:RESPONSE_EXCERPT_CHARS]
            ),
            sampling_params=SamplingParams(temperature=0.7, max_tokens=20),
        )
        result = await self._provider.generate(request)
        return clean_title(result.content, prompt)


def clean_title(raw: str, prompt: str) -> str:
    """Strip decoration; fall back when the title is unusable."""
    title = _STRIP_CHARS.sub("", raw or "").strip()
    if title == TITLE_SENTINEL or not (MIN_TITLE_LENGTH <= len(title) <= MAX_TITLE_LENGTH):
        return FALLBACK_TITLE
    if title.lower() == prompt.lower()[: len(title)]:
        return FALLBACK_TITLE
    return title
