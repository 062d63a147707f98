"""OpenRouter completion provider: a thin subclass of OpenAICompatibleProvider.

OpenRouter is an OpenAI-compatible API that routes to many model families
(Gemini, GPT, Claude, Llama, ...) via a single API key, which is how Lumina
reaches every model in its picker.
"""

from openai import AsyncOpenAI

from lumina.providers.openai_compat import OpenAICompatibleProvider

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class OpenRouterProvider(OpenAICompatibleProvider):
    """Completion provider backed by OpenRouter's API."""

    suggested_models = [
        "google/gemini-3-pro-preview",
        "google/gemini-3-flash-preview",
        "openai/gpt-5",
        "openai/gpt-4o",
        "anthropic/claude-sonnet-4-5",
        "google/gemini-flash-1.5-8b",
    ]
    default_model = "openai/gpt-4o"

    def __init__(self, *, client: AsyncOpenAI | None = None, api_key: str | None = None) -> None:
        if client is not None:
            super().__init__(client)
        else:
            super().__init__(
                AsyncOpenAI(
                    api_key=api_key,
                    base_url=OPENROUTER_BASE_URL,
                    default_headers={
                        "HTTP-Referer": "https://github.com/lumina",
                        "X-Title": "LLM-Brancher",
                    },
                )
            )

    @property
    def name(self) -> str:
        return "openrouter"
