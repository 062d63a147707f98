"""Canonical data structures for Lumina.

Defined once here, referenced everywhere else. A conversation is a tree of
ChatNodes; each node holds an ordered run of Messages. The in-memory tree
store, the persistence gateway and the HTTP layer all exchange these models.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

# Title carried by a node until background enrichment replaces it.
TITLE_SENTINEL = "..."

Role = Literal["user", "model"]

# ---------------------------------------------------------------------------
# Canonical data structures
# ---------------------------------------------------------------------------


class SamplingParams(BaseModel):
    temperature: float | None = 0.8
    top_p: float | None = None
    max_tokens: int = 4096


class Message(BaseModel):
    """One turn inside a node. Ordinal is unique per node, zero-based."""

    role: Role
    content: str
    timestamp: datetime
    ordinal: int


class ChatNode(BaseModel):
    """One branch segment of a conversation tree."""

    id: str
    hierarchical_id: str
    parent_id: str | None = None
    children_ids: list[str] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    title: str = TITLE_SENTINEL
    timestamp: datetime
    is_branch: bool = False

    def sorted_messages(self) -> list[Message]:
        return sorted(self.messages, key=lambda m: m.ordinal)


class ConversationSummary(BaseModel):
    """Conversation header as listed in the sidebar."""

    id: str
    title: str
    root_node_id: str | None = None
    current_node_id: str | None = None
    created_at: datetime
    updated_at: datetime


class Attachment(BaseModel):
    """A file sent alongside a prompt. Passed to the completion service only."""

    filename: str
    mime_type: str = "application/octet-stream"
    data: str  # base64, no data-URL prefix

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"
