"""Chat endpoint routes for the botany assistant.

Provides:
- POST   /api/{user_id}/session - Sign in and bootstrap the browser session
- DELETE /api/{user_id}/session - Sign out
- GET    /api/{user_id}/conversations - List user's conversations
- POST   /api/{user_id}/conversations - Start a new conversation
- POST   /api/{user_id}/conversations/{id}/select - Switch conversation
- GET    /api/{user_id}/messages - Messages of the active conversation
- POST   /api/{user_id}/chat - Send message to the assistant
- POST   /api/chat - Guest chat, kept in memory only
- GET    /api/chat/reveal - Typing animation frames for the latest reply
"""
from datetime import datetime
from typing import AsyncIterator, Optional
import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from app.config import settings
from app.core.deps import get_controller, get_current_user, get_registry, get_session_id
from app.core.exceptions import (
    ConversationBusyError,
    ConversationNotFoundError,
    StoreError,
)
from app.models.conversation import Conversation
from app.services.chat_service import (
    ChatSessionRegistry,
    ConversationLifecycle,
    LifecycleState,
    LocalMessage,
)
from app.services.formatter import format_message, reveal_frames, to_plain_text

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


class ChatRequest(BaseModel):
    """Request model for sending chat message."""
    message: str


class MessageResponse(BaseModel):
    """Response model for a single message."""
    id: Optional[int] = None
    role: str
    content: str
    html: str
    plain: str
    status: str
    timestamp: Optional[datetime] = None


class ConversationSummary(BaseModel):
    """Response model for conversation list."""
    id: int
    title: str
    created_at: datetime


class ChatResponse(BaseModel):
    """Response model for chat message."""
    conversation_id: Optional[int]
    title: Optional[str]
    user_message: MessageResponse
    assistant_message: MessageResponse


class SessionResponse(BaseModel):
    """Response model for the browser session view."""
    state: str
    user_id: Optional[str]
    active_conversation: Optional[ConversationSummary]
    conversations: list[ConversationSummary]
    messages: list[MessageResponse]


def _message_response(message: LocalMessage) -> MessageResponse:
    markup = format_message(message.content)
    return MessageResponse(
        id=message.id,
        role=message.role,
        content=message.content,
        html=markup,
        plain=to_plain_text(markup),
        status=message.status,
        timestamp=message.created_at,
    )


def _conversation_summary(conversation: Optional[Conversation]) -> Optional[ConversationSummary]:
    if conversation is None:
        return None
    return ConversationSummary(
        id=conversation.id,
        title=conversation.title,
        created_at=conversation.created_at,
    )


def _session_response(controller: ConversationLifecycle) -> SessionResponse:
    return SessionResponse(
        state=controller.state.value,
        user_id=controller.user_id,
        active_conversation=_conversation_summary(controller.active_conversation),
        conversations=[_conversation_summary(c) for c in controller.conversations],
        messages=[_message_response(m) for m in controller.messages],
    )


def _verify_user(user_id: str, current_user_id: str) -> None:
    """Reject requests whose path user differs from the token subject."""
    if str(current_user_id) != user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User ID mismatch",
        )


def _ensure_signed_in(controller: ConversationLifecycle, user_id: str) -> None:
    if controller.state is not LifecycleState.READY or controller.user_id != user_id:
        controller.sign_in(user_id)


def _send(controller: ConversationLifecycle, request: ChatRequest) -> ChatResponse:
    try:
        turn = controller.send_message(request.message)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    except ConversationBusyError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A message is already being sent in this conversation",
        )

    # Reply belongs to the conversation the send started in.
    conversation = turn.conversation
    return ChatResponse(
        conversation_id=conversation.id if conversation else None,
        title=conversation.title if conversation else None,
        user_message=_message_response(turn.user_message),
        assistant_message=_message_response(turn.assistant_message),
    )


@router.post("/{user_id}/session", response_model=SessionResponse)
def sign_in(
    user_id: str,
    current_user_id: str = Depends(get_current_user),
    controller: ConversationLifecycle = Depends(get_controller),
) -> SessionResponse:
    """
    Sign in and run the session bootstrap.

    The first sign-in of a browser session reuses the latest conversation
    when it is empty and starts a new one when it already has messages.
    """
    _verify_user(user_id, current_user_id)
    controller.sign_in(user_id)
    return _session_response(controller)


@router.delete("/{user_id}/session", status_code=status.HTTP_204_NO_CONTENT)
def sign_out(
    user_id: str,
    current_user_id: str = Depends(get_current_user),
    session_id: str = Depends(get_session_id),
    registry: ChatSessionRegistry = Depends(get_registry),
    controller: ConversationLifecycle = Depends(get_controller),
) -> None:
    """Sign out, clear the session bootstrap flag and forget the session."""
    _verify_user(user_id, current_user_id)
    controller.sign_out()
    registry.discard(session_id)


@router.get("/{user_id}/conversations", response_model=list[ConversationSummary])
def list_conversations(
    user_id: str,
    current_user_id: str = Depends(get_current_user),
    controller: ConversationLifecycle = Depends(get_controller),
) -> list[ConversationSummary]:
    """List all conversations for the user, newest first."""
    _verify_user(user_id, current_user_id)
    _ensure_signed_in(controller, user_id)
    return [_conversation_summary(c) for c in controller.refresh_conversations()]


@router.post(
    "/{user_id}/conversations",
    response_model=ConversationSummary,
    status_code=status.HTTP_201_CREATED,
)
def new_conversation(
    user_id: str,
    current_user_id: str = Depends(get_current_user),
    controller: ConversationLifecycle = Depends(get_controller),
) -> ConversationSummary:
    """
    Start a new conversation.

    Raises:
        HTTPException: 503 if the conversation could not be created
    """
    _verify_user(user_id, current_user_id)
    _ensure_signed_in(controller, user_id)
    try:
        conversation = controller.new_conversation()
    except StoreError as e:
        logger.error(f"New conversation failed for user {user_id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Conversation store temporarily unavailable",
        )
    return _conversation_summary(conversation)


@router.post("/{user_id}/conversations/{conversation_id}/select", response_model=SessionResponse)
def select_conversation(
    user_id: str,
    conversation_id: int,
    current_user_id: str = Depends(get_current_user),
    controller: ConversationLifecycle = Depends(get_controller),
) -> SessionResponse:
    """
    Make a conversation active and load its messages.

    Raises:
        HTTPException: 404 if conversation not found or not owned
    """
    _verify_user(user_id, current_user_id)
    _ensure_signed_in(controller, user_id)
    try:
        controller.select_conversation(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    except StoreError as e:
        logger.error(f"Select conversation failed for user {user_id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Conversation store temporarily unavailable",
        )
    return _session_response(controller)


@router.get("/{user_id}/messages", response_model=list[MessageResponse])
def get_messages(
    user_id: str,
    current_user_id: str = Depends(get_current_user),
    controller: ConversationLifecycle = Depends(get_controller),
) -> list[MessageResponse]:
    """Messages of the active conversation, reloaded from the store."""
    _verify_user(user_id, current_user_id)
    _ensure_signed_in(controller, user_id)
    return [_message_response(m) for m in controller.reload()]


@router.post("/{user_id}/chat", response_model=ChatResponse)
def send_chat_message(
    user_id: str,
    request: ChatRequest,
    current_user_id: str = Depends(get_current_user),
    controller: ConversationLifecycle = Depends(get_controller),
) -> ChatResponse:
    """
    Send message to the assistant.

    Flow:
    1. Verify JWT user matches path user
    2. Store user message (and derive the title on the first one)
    3. Generate the reply
    4. Store assistant reply, or return an apology on generation failure

    Raises:
        HTTPException: 401 if JWT user doesn't match path user
        HTTPException: 400 if the message is blank
        HTTPException: 409 if a message is already in flight
    """
    _verify_user(user_id, current_user_id)
    _ensure_signed_in(controller, user_id)
    return _send(controller, request)


@router.post("/chat", response_model=ChatResponse)
def send_guest_message(
    request: ChatRequest,
    controller: ConversationLifecycle = Depends(get_controller),
) -> ChatResponse:
    """Chat without signing in. Nothing is persisted."""
    if controller.state is not LifecycleState.UNAUTHENTICATED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Session is signed in; use the user chat endpoint",
        )
    return _send(controller, request)


async def _typing_events(text: str, http_request: Request) -> AsyncIterator[str]:
    delay = settings.TYPING_DELAY_MS / 1000
    for frame in reveal_frames(text, settings.TYPING_STEP):
        if await http_request.is_disconnected():
            return
        yield f"data: {json.dumps({'html': format_message(frame)})}\n\n"
        await asyncio.sleep(delay)
    yield "event: done\ndata: {}\n\n"


@router.get("/chat/reveal")
async def reveal_latest_reply(
    http_request: Request,
    controller: ConversationLifecycle = Depends(get_controller),
) -> StreamingResponse:
    """
    Stream the latest assistant reply as typing-animation frames.

    Raises:
        HTTPException: 404 if the session has no assistant reply yet
    """
    reply = controller.latest_reply()
    if reply is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No reply to reveal",
        )
    return StreamingResponse(
        _typing_events(reply.content, http_request),
        media_type="text/event-stream",
    )
