"""Workspace operations: open, create, delete and navigate conversations."""

import logging

from lumina.generation.service import NodeNotFoundError
from lumina.models import TITLE_SENTINEL, ChatNode, ConversationSummary
from lumina.persistence.base import ConversationNotFoundError, PersistenceGateway
from lumina.tree.layout import LayoutConfig, TreeLayout, compute_layout
from lumina.tree.store import ConversationTreeStore

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TITLE = "Lumina Session"


class ConversationService:
    """Owns which conversation the workspace tree shows and where its cursor is."""

    def __init__(self, store: ConversationTreeStore, gateway: PersistenceGateway) -> None:
        self._store = store
        self._gateway = gateway

    async def list_conversations(self) -> list[ConversationSummary]:
        return await self._gateway.list_conversations()

    async def open_conversation(self, conversation_id: str) -> None:
        """Load a conversation into the workspace, replacing whatever is shown.

        Opening the conversation that is already active does nothing.
        """
        if conversation_id == self._store.conversation_id:
            return

        header = await self._gateway.get_conversation(conversation_id)
        if header is None:
            raise ConversationNotFoundError(conversation_id)
        nodes = await self._gateway.fetch_conversation_detail(conversation_id)

        root = header.root_node_id
        if root not in nodes or nodes[root].parent_id is not None:
            root = next((n.id for n in nodes.values() if n.parent_id is None), None)
        current = header.current_node_id if header.current_node_id in nodes else root

        self._store.reset(conversation_id)
        self._store.replace_all(nodes, root, current)
        logger.info("Opened conversation %s (%d nodes)", conversation_id, len(nodes))

    def new_conversation(self) -> None:
        """Clear the workspace; the next send starts a new conversation."""
        self._store.reset()

    async def delete_conversation(self, conversation_id: str) -> None:
        if await self._gateway.get_conversation(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)
        await self._gateway.delete_conversation(conversation_id)
        if conversation_id == self._store.conversation_id:
            self._store.reset()
        logger.info("Deleted conversation %s", conversation_id)

    async def select_node(self, node_id: str) -> None:
        """Move the current node and drop any pending branch.

        The new position is saved to the conversation header so reopening
        restores it; a failed save is only logged.
        """
        if not self._store.set_current(node_id):
            raise NodeNotFoundError(node_id)
        self._store.cancel_branch()

        conversation_id = self._store.conversation_id
        if conversation_id is None:
            return
        try:
            await self._gateway.update_conversation_pointers(
                conversation_id, current_node_id=node_id
            )
        except Exception as e:
            logger.warning("Could not save current node for %s: %s", conversation_id, e)

    def begin_branch(self, node_id: str) -> None:
        if not self._store.begin_branch(node_id):
            raise NodeNotFoundError(node_id)

    def cancel_branch(self) -> None:
        self._store.cancel_branch()

    def current_path(self) -> list[ChatNode]:
        """Root-to-current nodes with messages in ordinal order."""
        return [
            node.model_copy(update={"messages": node.sorted_messages()})
            for node in self._store.path_to(self._store.current_node_id)
        ]

    def current_title(self) -> str:
        node = self._store.get(self._store.current_node_id)
        if node is None or node.title == TITLE_SENTINEL:
            return DEFAULT_SESSION_TITLE
        return node.title

    def layout(self, config: LayoutConfig | None = None) -> TreeLayout:
        return compute_layout(
            self._store.nodes,
            self._store.root_node_id,
            self._store.current_node_id,
            config,
        )
