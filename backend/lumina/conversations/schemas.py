"""Request and response schemas for conversation and workspace endpoints."""

from pydantic import BaseModel, Field

from lumina.models import Attachment, ChatNode

# -- Requests --


class SendMessageRequest(BaseModel):
    """Request body for POST /api/workspace/messages and side-chat sends."""

    text: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    provider: str | None = None
    model: str | None = None
    stream: bool = False
    follow_focus: bool = False


# -- Responses --


class WorkspaceResponse(BaseModel):
    conversation_id: str | None
    root_node_id: str | None
    current_node_id: str | None
    branching_from_id: str | None
    is_generating: bool
    generating_node_ids: list[str]
    title: str
    nodes: dict[str, ChatNode]


class PathResponse(BaseModel):
    title: str
    nodes: list[ChatNode]


class SendMessageResponse(BaseModel):
    node_id: str
    conversation_id: str
    kind: str
    hierarchical_id: str
    content: str
