"""Persistence gateway contract: the durable copy of every conversation.

The gateway is the arbiter of truth after any successful write. Node
creation accepts a client-supplied id and is idempotent on it, so an
optimistic node keeps the same id from staging through rehydration.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager

from pydantic import BaseModel

from lumina.models import TITLE_SENTINEL, ChatNode, ConversationSummary, Role


class NodeCreate(BaseModel):
    id: str | None = None
    conversation_id: str
    parent_id: str | None = None
    hierarchical_id: str
    is_branch: bool = False
    title: str = TITLE_SENTINEL


class MessageCreate(BaseModel):
    node_id: str
    role: Role
    content: str
    ordinal: int


class PersistenceGateway(ABC):
    """Async store for conversations, nodes and messages."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Group writes: everything inside the block is stored, or nothing is."""
        ...

    @abstractmethod
    async def list_conversations(self) -> list[ConversationSummary]:
        """All conversations, most recently updated first."""
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> ConversationSummary | None:
        ...

    @abstractmethod
    async def fetch_conversation_detail(self, conversation_id: str) -> dict[str, ChatNode]:
        """Full node map with messages in ordinal order.

        Raises ConversationNotFoundError for an unknown id.
        """
        ...

    @abstractmethod
    async def create_conversation(self, title: str) -> str:
        ...

    @abstractmethod
    async def create_node(self, node: NodeCreate) -> str:
        """Create a node, reusing ``node.id`` when given. Idempotent by id."""
        ...

    @abstractmethod
    async def create_message(self, message: MessageCreate) -> None:
        """Create a message. Idempotent by (node_id, ordinal)."""
        ...

    @abstractmethod
    async def update_conversation_pointers(
        self,
        conversation_id: str,
        *,
        root_node_id: str | None = None,
        current_node_id: str | None = None,
        title: str | None = None,
    ) -> None:
        """Update only the fields that are given."""
        ...

    @abstractmethod
    async def update_node_title(self, node_id: str, title: str) -> None:
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation with all of its nodes and messages."""
        ...


class ConversationNotFoundError(Exception):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")
