"""Shared test helpers."""

import asyncio
from collections.abc import AsyncIterator, Iterable
from datetime import UTC, datetime
from uuid import uuid4

from lumina.models import ChatNode, Message
from lumina.persistence.base import MessageCreate, NodeCreate
from lumina.persistence.sqlite import SQLiteGateway
from lumina.providers.base import (
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    StreamChunk,
)


class FakeProvider(LLMProvider):
    """Scripted provider.

    Streams ``fragments`` one by one. ``error`` is reported as an error chunk
    once ``error_after`` fragments have been sent; ``raise_exc`` is raised
    instead of streaming anything. When ``hold`` is set, the stream pauses
    after its first fragment until the event is set. ``generate`` answers
    title requests with ``title``.
    """

    default_model = "fake-model"
    suggested_models = ["fake-model"]

    def __init__(
        self,
        fragments: Iterable[str] = ("Fake ", "response"),
        *,
        error: str | None = None,
        error_after: int = 0,
        raise_exc: Exception | None = None,
        hold: asyncio.Event | None = None,
        title: str = "Fake Title",
        title_error: Exception | None = None,
        name: str = "fake",
    ) -> None:
        self._name = name
        self.fragments = list(fragments)
        self.error = error
        self.error_after = error_after
        self.raise_exc = raise_exc
        self.hold = hold
        self.title = title
        self.title_error = title_error
        self.stream_requests: list[GenerationRequest] = []
        self.title_requests: list[GenerationRequest] = []

    @property
    def name(self) -> str:
        return self._name

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.title_requests.append(request)
        if self.title_error is not None:
            raise self.title_error
        return GenerationResult(content=self.title, model=request.model)

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        self.stream_requests.append(request)
        if self.raise_exc is not None:
            raise self.raise_exc
        for index, fragment in enumerate(self.fragments):
            if self.error is not None and index == self.error_after:
                yield StreamChunk(type="error", error=self.error)
            yield StreamChunk(type="text_delta", text=fragment)
            if index == 0 and self.hold is not None:
                await self.hold.wait()
        if self.error is not None and self.error_after >= len(self.fragments):
            yield StreamChunk(type="error", error=self.error)
        yield StreamChunk(
            type="message_stop",
            is_final=True,
            result=GenerationResult(content="".join(self.fragments), model=request.model),
        )


class FailingGateway(SQLiteGateway):
    """SQLite gateway whose named operations raise RuntimeError on demand.

    Operations in ``fail_on`` always fail; ``fail_nth`` makes one upcoming
    call of an operation fail once.
    """

    def __init__(self, db) -> None:
        super().__init__(db)
        self.fail_on: set[str] = set()
        self.calls: list[str] = []
        self._fail_at: dict[str, int] = {}

    def fail_nth(self, operation: str, n: int) -> None:
        """Fail the ``n``-th call of ``operation`` from now on (1-based)."""
        self._fail_at[operation] = self.calls.count(operation) + n

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise RuntimeError(f"{operation} unavailable")
        if self._fail_at.get(operation) == self.calls.count(operation):
            del self._fail_at[operation]
            raise RuntimeError(f"{operation} unavailable")

    async def fetch_conversation_detail(self, conversation_id):
        self._check("fetch_conversation_detail")
        return await super().fetch_conversation_detail(conversation_id)

    async def create_conversation(self, title):
        self._check("create_conversation")
        return await super().create_conversation(title)

    async def create_node(self, node):
        self._check("create_node")
        return await super().create_node(node)

    async def create_message(self, message):
        self._check("create_message")
        return await super().create_message(message)

    async def update_conversation_pointers(self, conversation_id, **kwargs):
        self._check("update_conversation_pointers")
        return await super().update_conversation_pointers(conversation_id, **kwargs)

    async def update_node_title(self, node_id, title):
        self._check("update_node_title")
        return await super().update_node_title(node_id, title)

    async def delete_conversation(self, conversation_id):
        self._check("delete_conversation")
        return await super().delete_conversation(conversation_id)


def make_message(role: str = "user", content: str = "Hello", ordinal: int = 0) -> Message:
    return Message(role=role, content=content, timestamp=datetime.now(UTC), ordinal=ordinal)


def make_node(
    node_id: str | None = None,
    hierarchical_id: str = "1",
    parent_id: str | None = None,
    children_ids: list[str] | None = None,
    exchanges: Iterable[tuple[str, str]] = (("Hello", "Hi there"),),
    title: str = "...",
    is_branch: bool = False,
) -> ChatNode:
    """ChatNode holding one user/model message pair per exchange."""
    messages: list[Message] = []
    for prompt, reply in exchanges:
        messages.append(make_message("user", prompt, len(messages)))
        messages.append(make_message("model", reply, len(messages)))
    return ChatNode(
        id=node_id or str(uuid4()),
        hierarchical_id=hierarchical_id,
        parent_id=parent_id,
        children_ids=list(children_ids or []),
        messages=messages,
        title=title,
        timestamp=datetime.now(UTC),
        is_branch=is_branch,
    )


def make_small_tree() -> dict[str, ChatNode]:
    """root(1) with children a(1.a) and b(1.b); a has child c(1.a.1)."""
    return {
        "root": make_node("root", "1", None, ["a", "b"], [("Q1", "A1")]),
        "a": make_node("a", "1.a", "root", ["c"], [("Q2", "A2")], is_branch=True),
        "b": make_node("b", "1.b", "root", [], [("Q3", "A3")], is_branch=True),
        "c": make_node("c", "1.a.1", "a", [], [("Q4", "A4")], is_branch=True),
    }


def load_tree(store, nodes: dict[str, ChatNode] | None = None, current: str | None = "root") -> None:
    """Put a tree into ``store`` as an opened conversation would."""
    nodes = nodes or make_small_tree()
    root = next(n.id for n in nodes.values() if n.parent_id is None)
    store.replace_all(nodes, root, current)


async def persist_tree(gateway, nodes: dict[str, ChatNode], current: str | None = None) -> str:
    """Write ``nodes`` through the gateway, parents first. Returns the conversation id."""
    conversation_id = await gateway.create_conversation("Saved")
    root = next(n.id for n in nodes.values() if n.parent_id is None)
    order = [root]
    for node_id in order:
        order.extend(nodes[node_id].children_ids)
    for node_id in order:
        node = nodes[node_id]
        await gateway.create_node(
            NodeCreate(
                id=node.id,
                conversation_id=conversation_id,
                parent_id=node.parent_id,
                hierarchical_id=node.hierarchical_id,
                is_branch=node.is_branch,
                title=node.title,
            )
        )
        for message in node.messages:
            await gateway.create_message(
                MessageCreate(
                    node_id=node.id,
                    role=message.role,
                    content=message.content,
                    ordinal=message.ordinal,
                )
            )
    await gateway.update_conversation_pointers(
        conversation_id, root_node_id=root, current_node_id=current or root
    )
    return conversation_id


async def wait_until(predicate, attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def open_saved(conv_service, gateway, nodes: dict[str, ChatNode] | None = None, current: str | None = None) -> str:
    """Persist ``nodes`` and open them in the workspace. Returns the conversation id."""
    conversation_id = await persist_tree(gateway, nodes or make_small_tree(), current)
    await conv_service.open_conversation(conversation_id)
    return conversation_id
