"""Operations exposed to the UI shell, built on the store, tracker and resolver."""

import logging

from sqlalchemy.orm import Session

from app.auth.models.user import User
from app.auth.services.user_service import is_present
from app.core.constants import (
    CONVERSATION_MESSAGES_PAGE_SIZE,
    DEFAULT_GROUP_NAME,
    DEFAULT_USER_NAME,
    MESSAGE_PREVIEW_MAX_LENGTH,
)
from app.messaging.models.conversation import Conversation
from app.messaging.models.conversation_participant import ConversationParticipant
from app.messaging.models.message import Message
from app.messaging.schemas.conversation import (
    ConversationListResponse,
    ConversationResponse,
    ConversationSummary,
    GroupConversationCreate,
    ParticipantInfo,
)
from app.messaging.schemas.message import (
    ConversationDetail,
    MessageCreate,
    MessagePage,
    MessageResponse,
)
from app.messaging.services.conversation_resolver import ConversationResolver
from app.messaging.services.event_publisher import (
    CONVERSATION_CREATED,
    CONVERSATION_READ,
    MESSAGE_CREATED,
    EventPublisher,
)
from app.messaging.services.message_store import (
    ConversationEntry,
    MessagePageResult,
    MessageStore,
)
from app.messaging.services.read_receipt_service import ReadReceiptTracker

logger = logging.getLogger(__name__)


class MessageService:
    def __init__(self, db: Session, publisher: EventPublisher | None = None) -> None:
        self.db = db
        self.store = MessageStore(db)
        self.receipts = self.store.receipts
        self.resolver = ConversationResolver(db)
        self.publisher = publisher or EventPublisher()

    def list_conversations(
        self,
        user_id: str,
        search: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> ConversationListResponse:
        offset = (page - 1) * limit if limit else 0
        entries, total = self.store.list_conversations_for_user(
            user_id, search=search, offset=offset, limit=limit
        )
        return ConversationListResponse(
            conversations=[self._build_summary(entry, user_id) for entry in entries],
            total=total,
        )

    def open_conversation(
        self,
        conversation_id: str,
        user_id: str,
        limit: int = CONVERSATION_MESSAGES_PAGE_SIZE,
    ) -> ConversationDetail:
        """Return the latest page of messages and mark read up to its newest message.

        Only messages up to the newest one on the page are marked, so anything
        that lands while the page is being read stays unread for the next poll.
        """
        conversation = self.store.conversations.get_or_404(conversation_id)
        self.store.conversations.require_member(conversation_id, user_id)
        page = self.store.list_messages_before(conversation_id, limit=limit)

        marked = 0
        if page.messages:
            marked = self.mark_as_read(conversation_id, user_id, up_to=page.next_cursor)

        return ConversationDetail(
            conversation=self._build_conversation(conversation),
            page=self._build_page(page),
            marked_read=marked,
        )

    def get_messages(
        self,
        conversation_id: str,
        user_id: str,
        cursor: str | None = None,
        before: str | None = None,
        limit: int = CONVERSATION_MESSAGES_PAGE_SIZE,
    ) -> MessagePage:
        self.store.conversations.require_member(conversation_id, user_id)
        if before:
            result = self.store.list_messages_before(conversation_id, before=before, limit=limit)
        else:
            result = self.store.list_messages(conversation_id, cursor=cursor, limit=limit)
        return self._build_page(result)

    def send_message(
        self, conversation_id: str, sender: User, data: MessageCreate
    ) -> tuple[MessageResponse, bool]:
        """Store a message; the flag is False when client_key matched an earlier send."""
        message, created = self.store.create_or_get_message(
            conversation_id,
            sender.id,
            data.content,
            image_url=data.image_url,
            client_key=data.client_key,
        )
        readers = self.receipts.get_readers([message.id])
        response = self._build_message(message, readers.get(message.id, []))
        if not created:
            return response, False

        recipients = (
            self.db.query(ConversationParticipant.user_id)
            .filter(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id != sender.id,
            )
            .all()
        )
        for (recipient_id,) in recipients:
            self.publisher.queue(
                recipient_id,
                MESSAGE_CREATED,
                conversation_id=conversation_id,
                message_id=message.id,
                sender_id=sender.id,
            )
        return response, True

    def mark_as_read(self, conversation_id: str, user_id: str, up_to: str | None = None) -> int:
        marked = self.receipts.mark_conversation_read(conversation_id, user_id, up_to=up_to)
        if marked:
            self.publisher.queue(
                user_id, CONVERSATION_READ, conversation_id=conversation_id, marked_read=marked
            )
        return marked

    def get_unread_count(self, conversation_id: str, user_id: str) -> int:
        return self.receipts.get_unread_count(conversation_id, user_id)

    def get_total_unread_badge(self, user_id: str) -> int:
        return self.receipts.get_total_unread_count(user_id)

    def start_direct_conversation(
        self, current_user: User, other_user_id: str
    ) -> tuple[ConversationResponse, bool]:
        conversation, created = self.resolver.resolve_direct_conversation(
            current_user.id, other_user_id
        )
        if created:
            self.publisher.queue(other_user_id, CONVERSATION_CREATED, conversation_id=conversation.id)
        return self._build_conversation(conversation), created

    def create_group_conversation(
        self, current_user: User, data: GroupConversationCreate
    ) -> ConversationResponse:
        conversation = self.resolver.create_group_conversation(
            current_user.id, data.member_ids, name=data.name
        )
        for participant in conversation.participants:
            if participant.user_id != current_user.id:
                self.publisher.queue(
                    participant.user_id, CONVERSATION_CREATED, conversation_id=conversation.id
                )
        return self._build_conversation(conversation)

    def _build_page(self, result: MessagePageResult) -> MessagePage:
        readers = self.receipts.get_readers([m.id for m in result.messages])
        return MessagePage(
            messages=[self._build_message(m, readers.get(m.id, [])) for m in result.messages],
            next_cursor=result.next_cursor,
            has_more=result.has_more,
            earlier_cursor=result.earlier_cursor,
            has_earlier=result.has_earlier,
        )

    def _build_conversation(self, conversation: Conversation) -> ConversationResponse:
        participants = self.store.conversations.list_participants([conversation.id]).get(
            conversation.id, []
        )
        return ConversationResponse(
            id=conversation.id,
            is_group=conversation.is_group,
            name=conversation.name,
            participants=[self._build_participant_info(p) for p in participants],
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )

    def _build_summary(self, entry: ConversationEntry, current_user_id: str) -> ConversationSummary:
        conversation = entry.conversation
        others = [p for p in entry.participants if p.user_id != current_user_id]

        if conversation.is_group:
            display_name = conversation.name or DEFAULT_GROUP_NAME
            avatar_url = None
        elif others:
            display_name = others[0].user.name
            avatar_url = others[0].user.avatar_url
        else:
            display_name = DEFAULT_USER_NAME
            avatar_url = None

        last = entry.last_message
        return ConversationSummary(
            id=conversation.id,
            display_name=display_name,
            avatar_url=avatar_url,
            last_message_preview=self._preview(last) if last else None,
            last_message_at=last.created_at if last else None,
            unread_count=entry.unread_count,
            is_group=conversation.is_group,
            member_count=len(entry.participants),
            updated_at=conversation.updated_at,
        )

    @staticmethod
    def _preview(message: Message) -> str:
        if message.content:
            return message.content[:MESSAGE_PREVIEW_MAX_LENGTH]
        return "[image]"

    @staticmethod
    def _build_message(message: Message, read_by: list[str]) -> MessageResponse:
        return MessageResponse(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            content=message.content,
            image_url=message.image_url,
            client_key=message.client_key,
            created_at=message.created_at,
            read_by=read_by,
        )

    @staticmethod
    def _build_participant_info(participant: ConversationParticipant) -> ParticipantInfo:
        user = participant.user
        return ParticipantInfo(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            avatar_url=user.avatar_url,
            is_online=is_present(user),
            is_admin=participant.is_admin,
        )
