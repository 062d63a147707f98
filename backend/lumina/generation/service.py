"""Generation service: optimistic sends into the conversation tree.

A send is staged in the local tree before any network call, streamed into
a pending model message fragment by fragment, written through the
persistence gateway once the stream completes, and finally reconciled with
the server copy. Title enrichment for newly created nodes runs in the
background afterwards. Any failure before the write completes rolls the
staged node or message pair back.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from functools import partial
from datetime import UTC, datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel

from lumina.generation.context import ContextBuilder
from lumina.generation.titles import TitleSummarizer
from lumina.models import TITLE_SENTINEL, Attachment, ChatNode, Message, SamplingParams
from lumina.persistence.base import MessageCreate, NodeCreate, PersistenceGateway
from lumina.providers.base import GenerationRequest, LLMProvider
from lumina.providers.registry import ProviderNotFoundError, get_all_providers, get_provider
from lumina.sync.reconciler import Reconciler
from lumina.tree.labels import hierarchical_label
from lumina.tree.store import ConversationTreeStore

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_TITLE = "New Discussion"

SendKind = Literal["continue", "new_conversation", "branch"]


class SendEvent(BaseModel):
    """Progress of one send, in order: staged, text_delta*, message_stop."""

    type: Literal["staged", "text_delta", "message_stop"]
    node_id: str
    kind: SendKind
    hierarchical_id: str
    text: str = ""
    content: str | None = None
    conversation_id: str | None = None


class SendResult(BaseModel):
    node_id: str
    kind: SendKind
    hierarchical_id: str
    content: str
    conversation_id: str


class SendStream:
    """Events of one staged send.

    The send holds the generation gate from the moment it is staged.
    Closing or dropping the stream before reading from it rolls the staged
    state back and releases the gate; once iteration has started, the send
    cleans up after itself however it ends.
    """

    def __init__(self, events: AsyncGenerator[SendEvent, None], abandon: Callable[[], None]) -> None:
        self._events = events
        self._abandon = abandon
        self._started = False
        self._closed = False

    def __aiter__(self) -> "SendStream":
        return self

    async def __anext__(self) -> SendEvent:
        if self._closed:
            raise StopAsyncIteration
        self._started = True
        return await self._events.__anext__()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._started:
            self._abandon()
        await self._events.aclose()

    def __del__(self) -> None:
        if not self._started and not self._closed:
            self._closed = True
            self._abandon()


@dataclass
class _SendPlan:
    kind: SendKind
    target_node_id: str
    label: str
    parent_id: str | None
    user_ordinal: int
    session: int
    conversation_id: str | None
    previous_current_id: str | None
    prompt: str
    side_chat: bool = False
    persisted: bool = False
    rolled_back: bool = False

    @property
    def creates_node(self) -> bool:
        return self.kind != "continue"


class GenerationService:
    """Turns user sends into tree mutations plus one persistence transaction.

    Main-path sends are serialized: a second one is rejected while one is
    outstanding. Side-chat sends into other nodes may run alongside, but
    never two sends into the same node.
    """

    def __init__(
        self,
        store: ConversationTreeStore,
        gateway: PersistenceGateway,
        provider: LLMProvider | None = None,
        *,
        reconciler: Reconciler | None = None,
        summarizer: TitleSummarizer | None = None,
        default_model: str | None = None,
        system_prompt: str | None = None,
        sampling_params: SamplingParams | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._provider = provider
        self._reconciler = reconciler or Reconciler(store)
        self._summarizer = summarizer
        self._default_model = default_model
        self._system_prompt = system_prompt
        self._sampling_params = sampling_params or SamplingParams()
        self._context_builder = ContextBuilder()
        self._main_busy = False
        self._generating: set[str] = set()
        self._background: set[asyncio.Task] = set()

    @property
    def is_generating(self) -> bool:
        """True while a main-path send is outstanding."""
        return self._main_busy

    @property
    def generating_node_ids(self) -> frozenset[str]:
        return frozenset(self._generating)

    def ensure_can_send(self, node_id: str | None = None) -> None:
        """Raise GenerationInProgressError if a send would be rejected now."""
        if node_id is None:
            if self._main_busy:
                raise GenerationInProgressError(None)
            if self._store.branching_from_id is not None:
                return
            node_id = self._store.current_node_id
        if node_id is not None and node_id in self._generating:
            raise GenerationInProgressError(node_id)

    # -- Entry points --

    async def send(
        self,
        text: str,
        attachments: Sequence[Attachment] = (),
        *,
        model: str | None = None,
        provider: str | None = None,
        follow_focus: bool = False,
    ) -> SendResult:
        """Main-path send: continue the current node, branch, or start a conversation."""
        return await self._collect(
            self.send_stream(
                text, attachments, model=model, provider=provider, follow_focus=follow_focus
            )
        )

    async def send_to_node(
        self,
        node_id: str,
        text: str,
        attachments: Sequence[Attachment] = (),
        *,
        model: str | None = None,
        provider: str | None = None,
    ) -> SendResult:
        """Side-chat send into ``node_id`` without touching the current node."""
        return await self._collect(
            self.send_to_node_stream(node_id, text, attachments, model=model, provider=provider)
        )

    def send_stream(
        self,
        text: str,
        attachments: Sequence[Attachment] = (),
        *,
        model: str | None = None,
        provider: str | None = None,
        follow_focus: bool = False,
    ) -> SendStream:
        """Stage a main-path send now and return its event stream.

        Validation, the generation gate and the optimistic insert happen
        before this returns; the caller must consume the returned stream to
        drive the send to completion, or close it to abandon the send.
        """
        _validate(text, attachments)
        self.ensure_can_send()
        llm = self._resolve_provider(provider)
        plan = self._plan_main_send(text, follow_focus)
        self._acquire(plan)
        return SendStream(
            self._execute(plan, text, list(attachments), llm, model), partial(self._abandon, plan)
        )

    def send_to_node_stream(
        self,
        node_id: str,
        text: str,
        attachments: Sequence[Attachment] = (),
        *,
        model: str | None = None,
        provider: str | None = None,
    ) -> SendStream:
        """Stage a side-chat send now and return its event stream."""
        _validate(text, attachments)
        node = self._store.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        self.ensure_can_send(node_id)
        llm = self._resolve_provider(provider)
        plan = self._stage_continue(node, text, side_chat=True)
        self._acquire(plan)
        return SendStream(
            self._execute(plan, text, list(attachments), llm, model), partial(self._abandon, plan)
        )

    async def wait_for_background(self) -> None:
        """Wait for pending title enrichment tasks."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- Staging --

    def _plan_main_send(self, text: str, follow_focus: bool) -> _SendPlan:
        branching_from = self._store.branching_from_id
        if branching_from is not None:
            parent = self._store.get(branching_from)
            if parent is None:
                raise NodeNotFoundError(branching_from)
            return self._stage_branch(parent, text, follow_focus)

        current = self._store.get(self._store.current_node_id)
        if current is not None:
            return self._stage_continue(current, text, side_chat=False)
        if self._store.root_node_id is None:
            return self._stage_new_conversation(text)
        raise NoTargetNodeError()

    def _stage_new_conversation(self, text: str) -> _SendPlan:
        plan = _SendPlan(
            kind="new_conversation",
            target_node_id=str(uuid4()),
            label=hierarchical_label(None, 0),
            parent_id=None,
            user_ordinal=0,
            session=self._store.session,
            conversation_id=self._store.conversation_id,
            previous_current_id=self._store.current_node_id,
            prompt=text,
        )
        self._store.insert_node(self._new_node(plan), None)
        self._store.set_current(plan.target_node_id)
        logger.info("Staged new conversation root %s", plan.target_node_id)
        return plan

    def _stage_branch(self, parent: ChatNode, text: str, follow_focus: bool) -> _SendPlan:
        # Sibling count is read before the child is registered.
        label = hierarchical_label(parent.hierarchical_id, len(parent.children_ids))
        plan = _SendPlan(
            kind="branch",
            target_node_id=str(uuid4()),
            label=label,
            parent_id=parent.id,
            user_ordinal=0,
            session=self._store.session,
            conversation_id=self._store.conversation_id,
            previous_current_id=self._store.current_node_id,
            prompt=text,
        )
        self._store.insert_node(self._new_node(plan), parent.id)
        self._store.cancel_branch()
        if follow_focus:
            self._store.set_current(plan.target_node_id)
        logger.info("Staged branch %s (%s) from %s", plan.target_node_id, label, parent.id)
        return plan

    def _stage_continue(self, node: ChatNode, text: str, *, side_chat: bool) -> _SendPlan:
        ordinal = max((m.ordinal for m in node.messages), default=-1) + 1
        plan = _SendPlan(
            kind="continue",
            target_node_id=node.id,
            label=node.hierarchical_id,
            parent_id=node.parent_id,
            user_ordinal=ordinal,
            session=self._store.session,
            conversation_id=self._store.conversation_id,
            previous_current_id=self._store.current_node_id,
            prompt=text,
            side_chat=side_chat,
        )
        self._store.append_message(node.id, _message("user", text, ordinal))
        return plan

    def _new_node(self, plan: _SendPlan) -> ChatNode:
        return ChatNode(
            id=plan.target_node_id,
            hierarchical_id=plan.label,
            parent_id=plan.parent_id,
            messages=[_message("user", plan.prompt, plan.user_ordinal)],
            title=TITLE_SENTINEL,
            timestamp=datetime.now(UTC),
            is_branch=plan.kind == "branch",
        )

    # -- Execution --

    async def _execute(
        self,
        plan: _SendPlan,
        text: str,
        attachments: list[Attachment],
        llm: LLMProvider,
        model: str | None,
    ) -> AsyncGenerator[SendEvent, None]:
        target = plan.target_node_id
        resolved_model = model or self._default_model or llm.default_model
        try:
            yield SendEvent(
                type="staged", node_id=target, kind=plan.kind, hierarchical_id=plan.label
            )

            content = ""
            try:
                path = self._store.path_to(target)
                history = self._context_builder.build(path, before_ordinal=plan.user_ordinal)
                request = GenerationRequest(
                    model=resolved_model,
                    prompt=text,
                    history=history,
                    attachments=attachments,
                    system_prompt=self._system_prompt,
                    sampling_params=self._sampling_params,
                )
                stream = llm.generate_stream(request)
                self._store.append_message(target, _message("model", "", plan.user_ordinal + 1))
                async for chunk in stream:
                    if chunk.type == "error":
                        if not content:
                            raise CompletionStreamError(chunk.error or "unknown error")
                        logger.warning(
                            "Completion for %s reported an error mid-stream: %s",
                            target, chunk.error,
                        )
                    elif chunk.type == "text_delta" and chunk.text:
                        content += chunk.text
                        self._store.patch_last_message_content(target, content)
                        yield SendEvent(
                            type="text_delta",
                            node_id=target,
                            kind=plan.kind,
                            hierarchical_id=plan.label,
                            text=chunk.text,
                        )
                if not content:
                    raise CompletionStreamError("empty response")
            except Exception as e:
                logger.exception("Generation failed for node %s", target)
                raise GenerationFailedError(target, str(e)) from e

            try:
                conversation_id = await self._persist(plan, text, content)
            except Exception as e:
                logger.exception("Persisting send into node %s failed", target)
                raise PersistenceFailedError(target, content, str(e)) from e
            plan.persisted = True
            logger.info("Persisted %s send into node %s", plan.kind, target)

            await self._rehydrate(plan, conversation_id)
            if plan.creates_node:
                self._schedule_title(plan, conversation_id, text, content, resolved_model)

            yield SendEvent(
                type="message_stop",
                node_id=target,
                kind=plan.kind,
                hierarchical_id=plan.label,
                content=content,
                conversation_id=conversation_id,
            )
        finally:
            if not plan.persisted:
                self._rollback(plan)
            self._release(plan)

    async def _persist(self, plan: _SendPlan, text: str, content: str) -> str:
        """Write the send as one unit: conversation, node, both messages, pointers."""
        async with self._gateway.transaction():
            conversation_id = plan.conversation_id
            if plan.kind == "new_conversation":
                conversation_id = await self._gateway.create_conversation(DEFAULT_CONVERSATION_TITLE)
            if conversation_id is None:
                raise RuntimeError(f"No conversation to persist node {plan.target_node_id} into")

            if plan.creates_node:
                await self._gateway.create_node(
                    NodeCreate(
                        id=plan.target_node_id,
                        conversation_id=conversation_id,
                        parent_id=plan.parent_id,
                        hierarchical_id=plan.label,
                        is_branch=plan.kind == "branch",
                        title=TITLE_SENTINEL,
                    )
                )
            await self._gateway.create_message(
                MessageCreate(
                    node_id=plan.target_node_id, role="user", content=text,
                    ordinal=plan.user_ordinal,
                )
            )
            await self._gateway.create_message(
                MessageCreate(
                    node_id=plan.target_node_id, role="model", content=content,
                    ordinal=plan.user_ordinal + 1,
                )
            )
            if plan.kind == "new_conversation":
                await self._gateway.update_conversation_pointers(
                    conversation_id,
                    root_node_id=plan.target_node_id,
                    current_node_id=plan.target_node_id,
                )
            elif not plan.side_chat and self._store.session == plan.session:
                current = self._store.current_node_id
                if current is not None:
                    await self._gateway.update_conversation_pointers(
                        conversation_id, current_node_id=current
                    )
        return conversation_id

    async def _rehydrate(self, plan: _SendPlan, conversation_id: str) -> None:
        """Replace the local tree with the server copy, keeping the viewport."""
        if self._store.session != plan.session:
            logger.info("Workspace switched during send into %s; skipping rehydration", plan.target_node_id)
            return
        if self._store.conversation_id is None:
            self._store.set_conversation_id(conversation_id)

        try:
            fresh = await self._gateway.fetch_conversation_detail(conversation_id)
        except Exception as e:
            logger.warning("Rehydration of conversation %s failed: %s", conversation_id, e)
            return

        if self._store.session != plan.session:
            return
        self._reconciler.reconcile(
            fresh,
            self._store.current_node_id,
            root_node_id=plan.target_node_id if plan.kind == "new_conversation" else None,
            in_flight=self._generating - {plan.target_node_id},
        )
        logger.info("Rehydrated conversation %s after send into %s", conversation_id, plan.target_node_id)

    def _schedule_title(
        self, plan: _SendPlan, conversation_id: str, prompt: str, response: str, model: str
    ) -> None:
        if self._summarizer is None:
            return
        task = asyncio.create_task(
            self._enrich_title(self._summarizer, plan, conversation_id, prompt, response, model)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _enrich_title(
        self,
        summarizer: TitleSummarizer,
        plan: _SendPlan,
        conversation_id: str,
        prompt: str,
        response: str,
        model: str,
    ) -> None:
        try:
            title = await summarizer.summarize(prompt, response, model)
            await self._gateway.update_node_title(plan.target_node_id, title)
            if plan.kind == "new_conversation":
                await self._gateway.update_conversation_pointers(conversation_id, title=title)
        except Exception as e:
            logger.warning("Title enrichment for node %s failed: %s", plan.target_node_id, e)
            return
        # Patch only this node; a full rehydration here could clobber newer edits.
        if self._store.session == plan.session:
            self._store.patch_title(plan.target_node_id, title)

    # -- Gate and rollback --

    def _acquire(self, plan: _SendPlan) -> None:
        if not plan.side_chat:
            self._main_busy = True
        self._generating.add(plan.target_node_id)

    def _release(self, plan: _SendPlan) -> None:
        self._generating.discard(plan.target_node_id)
        if not plan.side_chat:
            self._main_busy = False

    def _abandon(self, plan: _SendPlan) -> None:
        logger.info("Send into node %s closed before it started", plan.target_node_id)
        self._rollback(plan)
        self._release(plan)

    def _rollback(self, plan: _SendPlan) -> None:
        if plan.rolled_back:
            return
        plan.rolled_back = True
        if self._store.session != plan.session:
            return
        target = plan.target_node_id
        if plan.kind == "continue":
            self._store.truncate_messages(target, plan.user_ordinal)
        else:
            self._store.remove_node(target)
            previous = plan.previous_current_id
            if self._store.current_node_id is None and previous is not None and previous in self._store:
                self._store.set_current(previous)
            if (
                plan.kind == "branch"
                and self._store.branching_from_id is None
                and plan.parent_id in self._store
            ):
                self._store.begin_branch(plan.parent_id)
        logger.info("Rolled back %s send into node %s", plan.kind, target)

    def _resolve_provider(self, name: str | None) -> LLMProvider:
        if name:
            return get_provider(name)
        if self._provider is not None:
            return self._provider
        providers = get_all_providers()
        if not providers:
            raise ProviderNotFoundError("No completion provider configured")
        return providers[0]

    @staticmethod
    async def _collect(events: AsyncIterator[SendEvent]) -> SendResult:
        result: SendResult | None = None
        async for event in events:
            if event.type == "message_stop":
                if event.content is None or event.conversation_id is None:
                    raise IncompleteStreamError(event.node_id)
                result = SendResult(
                    node_id=event.node_id,
                    kind=event.kind,
                    hierarchical_id=event.hierarchical_id,
                    content=event.content,
                    conversation_id=event.conversation_id,
                )
        if result is None:
            raise IncompleteStreamError(None)
        return result


def _validate(text: str, attachments: Sequence[Attachment]) -> None:
    if not text.strip() and not attachments:
        raise EmptyMessageError()


def _message(role: Literal["user", "model"], content: str, ordinal: int) -> Message:
    return Message(role=role, content=content, timestamp=datetime.now(UTC), ordinal=ordinal)


class GenerationInProgressError(Exception):
    def __init__(self, node_id: str | None) -> None:
        self.node_id = node_id
        if node_id is None:
            super().__init__("A message is already being generated")
        else:
            super().__init__(f"A message is already being generated for node: {node_id}")


class EmptyMessageError(Exception):
    def __init__(self) -> None:
        super().__init__("Message is empty")


class NodeNotFoundError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class NoTargetNodeError(Exception):
    def __init__(self) -> None:
        super().__init__("No current node to continue; select or branch from a node first")


class CompletionStreamError(Exception):
    pass


class IncompleteStreamError(Exception):
    def __init__(self, node_id: str | None) -> None:
        self.node_id = node_id
        super().__init__(f"Send stream ended without a result (node: {node_id})")


class SendFailedError(Exception):
    def __init__(self, node_id: str, reason: str) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Send into node {node_id} failed: {reason}")


class GenerationFailedError(SendFailedError):
    pass


class PersistenceFailedError(SendFailedError):
    def __init__(self, node_id: str, content: str, reason: str) -> None:
        self.content = content
        super().__init__(node_id, reason)
