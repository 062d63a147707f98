"""FastAPI routes for conversations, the workspace tree, and sends."""

import json as json_module
from collections.abc import AsyncIterator

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from lumina.conversations.schemas import (
    PathResponse,
    SendMessageRequest,
    SendMessageResponse,
    WorkspaceResponse,
)
from lumina.conversations.service import ConversationService
from lumina.generation.service import (
    EmptyMessageError,
    GenerationInProgressError,
    GenerationService,
    NodeNotFoundError,
    NoTargetNodeError,
    PersistenceFailedError,
    SendEvent,
    SendFailedError,
    SendResult,
    SendStream,
)
from lumina.models import ConversationSummary
from lumina.persistence.base import ConversationNotFoundError
from lumina.providers.registry import ProviderNotFoundError
from lumina.tree.layout import TreeLayout
from lumina.tree.store import ConversationTreeStore

router = APIRouter(prefix="/api", tags=["conversations"])


def get_conversation_service() -> ConversationService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("ConversationService not initialized")


def get_generation_service() -> GenerationService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("GenerationService not initialized")


def get_tree_store() -> ConversationTreeStore:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("ConversationTreeStore not initialized")


# -- Conversations --


@router.get("/conversations")
async def list_conversations(
    service: ConversationService = Depends(get_conversation_service),
) -> list[ConversationSummary]:
    return await service.list_conversations()


@router.post("/conversations/new")
async def new_conversation(
    service: ConversationService = Depends(get_conversation_service),
    store: ConversationTreeStore = Depends(get_tree_store),
    gen_service: GenerationService = Depends(get_generation_service),
) -> WorkspaceResponse:
    service.new_conversation()
    return _workspace(service, store, gen_service)


@router.post("/conversations/{conversation_id}/open")
async def open_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
    store: ConversationTreeStore = Depends(get_tree_store),
    gen_service: GenerationService = Depends(get_generation_service),
) -> WorkspaceResponse:
    try:
        await service.open_conversation(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return _workspace(service, store, gen_service)


@router.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> None:
    try:
        await service.delete_conversation(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")


# -- Workspace --


@router.get("/workspace")
async def get_workspace(
    service: ConversationService = Depends(get_conversation_service),
    store: ConversationTreeStore = Depends(get_tree_store),
    gen_service: GenerationService = Depends(get_generation_service),
) -> WorkspaceResponse:
    return _workspace(service, store, gen_service)


@router.get("/workspace/path")
async def get_current_path(
    service: ConversationService = Depends(get_conversation_service),
) -> PathResponse:
    return PathResponse(title=service.current_title(), nodes=service.current_path())


@router.get("/workspace/layout")
async def get_layout(
    service: ConversationService = Depends(get_conversation_service),
) -> TreeLayout:
    return service.layout()


@router.post("/workspace/nodes/{node_id}/select")
async def select_node(
    node_id: str,
    service: ConversationService = Depends(get_conversation_service),
    store: ConversationTreeStore = Depends(get_tree_store),
    gen_service: GenerationService = Depends(get_generation_service),
) -> WorkspaceResponse:
    try:
        await service.select_node(node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    return _workspace(service, store, gen_service)


@router.post("/workspace/nodes/{node_id}/branch")
async def begin_branch(
    node_id: str,
    service: ConversationService = Depends(get_conversation_service),
    store: ConversationTreeStore = Depends(get_tree_store),
    gen_service: GenerationService = Depends(get_generation_service),
) -> WorkspaceResponse:
    try:
        service.begin_branch(node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    return _workspace(service, store, gen_service)


@router.delete("/workspace/branch")
async def cancel_branch(
    service: ConversationService = Depends(get_conversation_service),
    store: ConversationTreeStore = Depends(get_tree_store),
    gen_service: GenerationService = Depends(get_generation_service),
) -> WorkspaceResponse:
    service.cancel_branch()
    return _workspace(service, store, gen_service)


# -- Sends --


@router.post(
    "/workspace/messages",
    status_code=status.HTTP_201_CREATED,
    response_model=None,
)
async def send_message(
    request: SendMessageRequest,
    gen_service: GenerationService = Depends(get_generation_service),
) -> SendMessageResponse | StreamingResponse:
    if request.stream:
        try:
            events = gen_service.send_stream(
                request.text,
                request.attachments,
                model=request.model,
                provider=request.provider,
                follow_focus=request.follow_focus,
            )
        except Exception as e:
            raise _http_error(e)
        return _sse_response(events)

    try:
        result = await gen_service.send(
            request.text,
            request.attachments,
            model=request.model,
            provider=request.provider,
            follow_focus=request.follow_focus,
        )
    except Exception as e:
        raise _http_error(e)
    return _send_response(result)


@router.post(
    "/workspace/nodes/{node_id}/messages",
    status_code=status.HTTP_201_CREATED,
    response_model=None,
)
async def send_to_node(
    node_id: str,
    request: SendMessageRequest,
    gen_service: GenerationService = Depends(get_generation_service),
) -> SendMessageResponse | StreamingResponse:
    if request.stream:
        try:
            events = gen_service.send_to_node_stream(
                node_id,
                request.text,
                request.attachments,
                model=request.model,
                provider=request.provider,
            )
        except Exception as e:
            raise _http_error(e)
        return _sse_response(events)

    try:
        result = await gen_service.send_to_node(
            node_id,
            request.text,
            request.attachments,
            model=request.model,
            provider=request.provider,
        )
    except Exception as e:
        raise _http_error(e)
    return _send_response(result)


def _workspace(
    service: ConversationService,
    store: ConversationTreeStore,
    gen_service: GenerationService,
) -> WorkspaceResponse:
    return WorkspaceResponse(
        conversation_id=store.conversation_id,
        root_node_id=store.root_node_id,
        current_node_id=store.current_node_id,
        branching_from_id=store.branching_from_id,
        is_generating=gen_service.is_generating,
        generating_node_ids=sorted(gen_service.generating_node_ids),
        title=service.current_title(),
        nodes=dict(store.nodes),
    )


def _send_response(result: SendResult) -> SendMessageResponse:
    return SendMessageResponse(
        node_id=result.node_id,
        conversation_id=result.conversation_id,
        kind=result.kind,
        hierarchical_id=result.hierarchical_id,
        content=result.content,
    )


def _http_error(e: Exception) -> Exception:
    """Map a send failure onto an HTTPException; unknown errors pass through."""
    if isinstance(e, (EmptyMessageError, ProviderNotFoundError, NoTargetNodeError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NodeNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, GenerationInProgressError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PersistenceFailedError):
        return HTTPException(
            status_code=502,
            detail={"error": str(e), "node_id": e.node_id, "content": e.content},
        )
    if isinstance(e, SendFailedError):
        return HTTPException(status_code=502, detail=str(e))
    return e


def _sse_response(events: SendStream) -> StreamingResponse:
    # Closes the send even when the client left before the first frame.
    cleanup = BackgroundTasks()
    cleanup.add_task(events.aclose)
    return StreamingResponse(
        _stream_sse(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=cleanup,
    )


async def _stream_sse(events: AsyncIterator[SendEvent]) -> AsyncIterator[str]:
    try:
        async for event in events:
            data = event.model_dump(exclude_none=True)
            yield f"event: {event.type}\ndata: {json_module.dumps(data)}\n\n"
    except PersistenceFailedError as e:
        error = {"error": str(e), "node_id": e.node_id, "content": e.content}
        yield f"event: error\ndata: {json_module.dumps(error)}\n\n"
    except SendFailedError as e:
        error = {"error": str(e), "node_id": e.node_id}
        yield f"event: error\ndata: {json_module.dumps(error)}\n\n"
    except Exception as e:
        error = {"error": str(e)}
        yield f"event: error\ndata: {json_module.dumps(error)}\n\n"
