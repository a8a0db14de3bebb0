import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth.dependencies import get_current_user
from app.auth.models.user import User
from app.core import redis as redis_module
from app.core.config import settings
from app.core.constants import CONVERSATION_MESSAGES_PAGE_SIZE, MAX_MESSAGES_PAGE_SIZE
from app.core.exceptions import TransientStoreError
from app.db.session import get_db
from app.messaging.schemas.conversation import (
    ConversationListResponse,
    ConversationResponse,
    DirectConversationCreate,
    GroupConversationCreate,
    MarkReadResponse,
    UnreadCountResponse,
)
from app.messaging.schemas.message import (
    ConversationDetail,
    MessageCreate,
    MessagePage,
    MessageResponse,
)
from app.messaging.services.event_publisher import EventPublisher
from app.messaging.services.message_service import MessageService

router = APIRouter()


def _service(db: Session, background_tasks: BackgroundTasks) -> MessageService:
    publisher = EventPublisher()
    background_tasks.add_task(publisher.flush)
    return MessageService(db, publisher=publisher)


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(
    background_tasks: BackgroundTasks,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: str | None = Query(None, max_length=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationListResponse:
    service = _service(db, background_tasks)
    return service.list_conversations(current_user.id, search=search, page=page, limit=limit)


@router.post("/conversations/direct", response_model=ConversationResponse)
def start_direct_conversation(
    data: DirectConversationCreate,
    response: Response,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationResponse:
    service = _service(db, background_tasks)
    conversation, created = service.start_direct_conversation(current_user, data.user_id)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return conversation


@router.post("/conversations/group", response_model=ConversationResponse, status_code=201)
def create_group_conversation(
    data: GroupConversationCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationResponse:
    service = _service(db, background_tasks)
    return service.create_group_conversation(current_user, data)


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail)
def open_conversation(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    limit: int = Query(CONVERSATION_MESSAGES_PAGE_SIZE, ge=1, le=MAX_MESSAGES_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationDetail:
    service = _service(db, background_tasks)
    return service.open_conversation(conversation_id, current_user.id, limit=limit)


@router.get("/conversations/{conversation_id}/messages", response_model=MessagePage)
def list_messages(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    cursor: str | None = None,
    before: str | None = None,
    limit: int = Query(CONVERSATION_MESSAGES_PAGE_SIZE, ge=1, le=MAX_MESSAGES_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MessagePage:
    service = _service(db, background_tasks)
    return service.get_messages(
        conversation_id, current_user.id, cursor=cursor, before=before, limit=limit
    )


@router.post("/conversations/{conversation_id}/messages", response_model=MessageResponse)
def send_message(
    conversation_id: str,
    data: MessageCreate,
    response: Response,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MessageResponse:
    service = _service(db, background_tasks)
    message, created = service.send_message(conversation_id, current_user, data)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return message


@router.put("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
def mark_as_read(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    up_to: str | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MarkReadResponse:
    service = _service(db, background_tasks)
    return MarkReadResponse(
        marked_read=service.mark_as_read(conversation_id, current_user.id, up_to=up_to)
    )


@router.get(
    "/conversations/{conversation_id}/unread-count", response_model=UnreadCountResponse
)
def get_conversation_unread_count(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UnreadCountResponse:
    service = _service(db, background_tasks)
    return UnreadCountResponse(
        unread_count=service.get_unread_count(conversation_id, current_user.id)
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
def get_unread_count(
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UnreadCountResponse:
    service = _service(db, background_tasks)
    return UnreadCountResponse(unread_count=service.get_total_unread_badge(current_user.id))


@router.get("/events")
async def stream_events(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> StreamingResponse:
    """Server-sent events carrying the caller's message and read notifications."""
    if redis_module.redis_client is None:
        raise TransientStoreError("Event stream unavailable", operation="stream_events")

    user_id = current_user.id

    async def event_source() -> AsyncIterator[str]:
        yield ": connected\n\n"
        async for event in redis_module.listen_user_events(
            user_id, idle_timeout=settings.EVENTS_HEARTBEAT_SECONDS
        ):
            if await request.is_disconnected():
                break
            if event is None:
                yield ": keep-alive\n\n"
                continue
            yield f"event: {event.get('type', 'message')}\ndata: {json.dumps(event)}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
