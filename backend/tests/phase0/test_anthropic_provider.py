"""Contract tests for AnthropicProvider with mocked AsyncAnthropic client."""

from unittest.mock import AsyncMock, MagicMock

import httpx
from anthropic import APIError

from lumina.models import Attachment, SamplingParams
from lumina.providers.anthropic import AnthropicProvider
from lumina.providers.base import GenerationRequest, TranscriptEntry


def _make_mock_message(
    content_text: str = "Hello!",
    model: str = "claude-sonnet-4-5-20250929",
    stop_reason: str = "end_turn",
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> MagicMock:
    """Create a mock Anthropic Message response."""
    text_block = MagicMock()
    text_block.type = "text"
    text_block.text = content_text

    usage = MagicMock()
    usage.input_tokens = input_tokens
    usage.output_tokens = output_tokens

    message = MagicMock()
    message.content = [text_block]
    message.model = model
    message.stop_reason = stop_reason
    message.usage = usage
    message.model_dump.return_value = {
        "id": "msg_test",
        "content": [{"type": "text", "text": content_text}],
    }
    return message


def _make_request(
    prompt: str = "Hello",
    history: list[TranscriptEntry] | None = None,
    attachments: list[Attachment] | None = None,
    system_prompt: str | None = None,
    model: str = "claude-sonnet-4-5-20250929",
    sampling_params: SamplingParams | None = None,
) -> GenerationRequest:
    return GenerationRequest(
        model=model,
        prompt=prompt,
        history=history or [],
        attachments=attachments or [],
        system_prompt=system_prompt,
        sampling_params=sampling_params or SamplingParams(temperature=0.7, max_tokens=1024),
    )


def _make_mock_client(message: MagicMock | None = None) -> AsyncMock:
    """Create a mock AsyncAnthropic client."""
    client = AsyncMock()
    client.messages.create = AsyncMock(return_value=message or _make_mock_message())
    return client


class TestAnthropicProviderName:
    async def test_name_returns_anthropic(self):
        provider = AnthropicProvider(_make_mock_client())
        assert provider.name == "anthropic"


class TestAnthropicGenerate:
    async def test_returns_correct_content(self):
        provider = AnthropicProvider(_make_mock_client(_make_mock_message("Hi there!")))
        result = await provider.generate(_make_request())
        assert result.content == "Hi there!"

    async def test_returns_usage(self):
        provider = AnthropicProvider(
            _make_mock_client(_make_mock_message(input_tokens=25, output_tokens=10))
        )
        result = await provider.generate(_make_request())
        assert result.usage == {"input_tokens": 25, "output_tokens": 10}

    async def test_returns_finish_reason(self):
        provider = AnthropicProvider(
            _make_mock_client(_make_mock_message(stop_reason="max_tokens"))
        )
        result = await provider.generate(_make_request())
        assert result.finish_reason == "max_tokens"

    async def test_passes_system_prompt(self):
        client = _make_mock_client()
        provider = AnthropicProvider(client)
        await provider.generate(_make_request(system_prompt="Be helpful."))
        call_kwargs = client.messages.create.call_args.kwargs
        assert call_kwargs["system"] == "Be helpful."

    async def test_omits_system_when_none(self):
        client = _make_mock_client()
        provider = AnthropicProvider(client)
        await provider.generate(_make_request(system_prompt=None))
        call_kwargs = client.messages.create.call_args.kwargs
        assert "system" not in call_kwargs

    async def test_history_roles_mapped(self):
        client = _make_mock_client()
        provider = AnthropicProvider(client)
        history = [
            TranscriptEntry(role="user", content="Hi"),
            TranscriptEntry(role="model", content="Hello!"),
        ]
        await provider.generate(_make_request(prompt="Next", history=history))
        messages = client.messages.create.call_args.kwargs["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "Next"

    async def test_omits_none_temperature(self):
        client = _make_mock_client()
        provider = AnthropicProvider(client)
        await provider.generate(
            _make_request(sampling_params=SamplingParams(temperature=None, max_tokens=512))
        )
        call_kwargs = client.messages.create.call_args.kwargs
        assert "temperature" not in call_kwargs
        assert call_kwargs["max_tokens"] == 512

    async def test_image_attachment_sent_as_base64_block(self):
        client = _make_mock_client()
        provider = AnthropicProvider(client)
        image = Attachment(filename="cat.png", mime_type="image/png", data="aGVsbG8=")
        await provider.generate(_make_request(prompt="What is this?", attachments=[image]))
        content = client.messages.create.call_args.kwargs["messages"][-1]["content"]
        assert content == [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": "image/png", "data": "aGVsbG8="},
            },
            {"type": "text", "text": "What is this?"},
        ]


class TestAnthropicGenerateStream:
    async def test_yields_text_deltas(self):
        """generate_stream yields StreamChunks with text content."""
        events = _make_mock_stream_events("Hello world!")
        client = AsyncMock()
        client.messages.create = AsyncMock(return_value=_async_iter(events))

        provider = AnthropicProvider(client)
        chunks = [c async for c in provider.generate_stream(_make_request())]

        text_chunks = [c for c in chunks if c.type == "text_delta"]
        assert [c.text for c in text_chunks] == ["Hello world!"]

    async def test_final_chunk_has_accumulated_content_and_usage(self):
        events = _make_mock_stream_events("Hi", input_tokens=20, output_tokens=8)
        client = AsyncMock()
        client.messages.create = AsyncMock(return_value=_async_iter(events))

        provider = AnthropicProvider(client)
        chunks = [c async for c in provider.generate_stream(_make_request())]

        final = [c for c in chunks if c.is_final]
        assert len(final) == 1
        assert final[0].result is not None
        assert final[0].result.content == "Hi"
        assert final[0].result.usage == {"input_tokens": 20, "output_tokens": 8}

    async def test_api_error_becomes_error_chunk(self):
        client = AsyncMock()
        client.messages.create = AsyncMock(
            side_effect=APIError(
                "overloaded", httpx.Request("POST", "https://api.test/v1"), body=None
            )
        )
        provider = AnthropicProvider(client)

        chunks = [c async for c in provider.generate_stream(_make_request())]
        assert [c.type for c in chunks] == ["error", "message_stop"]
        assert "overloaded" in chunks[0].error


# -- Helpers for streaming mocks --


def _make_mock_stream_events(
    text: str,
    model: str = "claude-sonnet-4-5-20250929",
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> list[MagicMock]:
    """Create a sequence of mock RawMessageStreamEvent objects."""
    events = []

    msg_start = MagicMock()
    msg_start.type = "message_start"
    msg_start.message = MagicMock()
    msg_start.message.model = model
    msg_start.message.usage = MagicMock()
    msg_start.message.usage.input_tokens = input_tokens
    events.append(msg_start)

    block_start = MagicMock()
    block_start.type = "content_block_start"
    events.append(block_start)

    delta = MagicMock()
    delta.type = "content_block_delta"
    delta.delta = MagicMock()
    delta.delta.text = text
    events.append(delta)

    block_stop = MagicMock()
    block_stop.type = "content_block_stop"
    events.append(block_stop)

    msg_delta = MagicMock()
    msg_delta.type = "message_delta"
    msg_delta.delta = MagicMock()
    msg_delta.delta.stop_reason = "end_turn"
    msg_delta.usage = MagicMock()
    msg_delta.usage.output_tokens = output_tokens
    events.append(msg_delta)

    return events


async def _async_iter(items: list):
    """Create an async iterator from a list. Used as mock stream."""
    for item in items:
        yield item
