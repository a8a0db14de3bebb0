import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core import redis as redis_module
from app.core.exceptions import ValidationError
from app.messaging.schemas.conversation import GroupConversationCreate
from app.messaging.schemas.message import MessageCreate
from app.messaging.services.event_publisher import (
    CONVERSATION_CREATED,
    CONVERSATION_READ,
    MESSAGE_CREATED,
    EventPublisher,
)
from app.messaging.services.message_service import MessageService
from tests.utils.factories import create_direct_conversation, create_message_factory


@pytest.fixture
def publisher():
    return EventPublisher()


@pytest.fixture
def service(db_session, publisher):
    return MessageService(db_session, publisher=publisher)


@pytest.fixture
def conversation(db_session, test_user, other_user):
    return create_direct_conversation(db_session, test_user, other_user)


class TestUnreadScenarios:
    def test_should_count_unopened_messages_for_recipient_only(
        self, service, conversation, test_user, other_user
    ):
        for text in ["one", "two", "three"]:
            service.send_message(conversation.id, test_user, MessageCreate(content=text))

        assert service.get_unread_count(conversation.id, other_user.id) == 3
        assert service.get_unread_count(conversation.id, test_user.id) == 0

    def test_should_count_message_arriving_after_open(
        self, service, conversation, test_user, other_user
    ):
        for text in ["one", "two", "three"]:
            service.send_message(conversation.id, test_user, MessageCreate(content=text))

        detail = service.open_conversation(conversation.id, other_user.id)
        assert detail.marked_read == 3
        assert service.get_unread_count(conversation.id, other_user.id) == 0

        service.send_message(conversation.id, test_user, MessageCreate(content="four"))

        assert service.get_unread_count(conversation.id, other_user.id) == 1
        assert service.get_total_unread_badge(other_user.id) == 1

    def test_should_reject_empty_message(self, service, conversation, test_user):
        with pytest.raises(ValidationError):
            service.send_message(conversation.id, test_user, MessageCreate(content=""))

    def test_should_return_same_conversation_on_double_start(
        self, service, test_user, other_user
    ):
        first, created_first = service.start_direct_conversation(test_user, other_user.id)
        second, created_second = service.start_direct_conversation(test_user, other_user.id)

        assert first.id == second.id
        assert created_first is True
        assert created_second is False

    def test_should_leave_message_arriving_during_open_unread(
        self, db_session, service, conversation, test_user, other_user, monkeypatch
    ):
        service.send_message(conversation.id, test_user, MessageCreate(content="one"))
        read_page = service.store.list_messages_before

        def page_then_new_message(*args, **kwargs):
            page = read_page(*args, **kwargs)
            create_message_factory(db_session, conversation, test_user, content="two")
            return page

        monkeypatch.setattr(service.store, "list_messages_before", page_then_new_message)

        detail = service.open_conversation(conversation.id, other_user.id)

        assert [m.content for m in detail.page.messages] == ["one"]
        assert detail.marked_read == 1
        assert service.get_unread_count(conversation.id, other_user.id) == 1

    def test_should_not_mark_anything_when_conversation_is_empty(
        self, service, conversation, other_user
    ):
        detail = service.open_conversation(conversation.id, other_user.id)

        assert detail.marked_read == 0
        assert detail.page.messages == []


class TestConversationList:
    def test_should_show_other_member_and_preview(
        self, service, conversation, test_user, other_user
    ):
        service.send_message(
            conversation.id,
            other_user,
            MessageCreate(content="", image_url="https://cdn.example.com/p.png"),
        )

        listing = service.list_conversations(test_user.id)

        summary = listing.conversations[0]
        assert listing.total == 1
        assert summary.display_name == "Bob Brown"
        assert summary.last_message_preview == "[image]"
        assert summary.unread_count == 1
        assert summary.member_count == 2

    def test_should_fall_back_to_default_group_name(
        self, service, test_user, other_user, third_user
    ):
        service.create_group_conversation(
            test_user, GroupConversationCreate(member_ids=[other_user.id, third_user.id])
        )

        listing = service.list_conversations(test_user.id)

        assert listing.conversations[0].display_name == "Group"
        assert listing.conversations[0].is_group is True

    def test_should_page_conversations(self, db_session, service, test_user, other_user, third_user):
        create_direct_conversation(db_session, test_user, other_user)
        create_direct_conversation(db_session, test_user, third_user)

        page_two = service.list_conversations(test_user.id, page=2, limit=1)

        assert page_two.total == 2
        assert len(page_two.conversations) == 1


class TestEventQueueing:
    def test_should_queue_message_event_for_recipients(
        self, service, publisher, conversation, test_user, other_user
    ):
        message, created = service.send_message(
            conversation.id, test_user, MessageCreate(content="hi")
        )

        assert created is True
        assert publisher.pending == [
            (
                other_user.id,
                {
                    "type": MESSAGE_CREATED,
                    "conversation_id": conversation.id,
                    "message_id": message.id,
                    "sender_id": test_user.id,
                },
            )
        ]

    def test_should_queue_read_event_only_when_something_was_marked(
        self, service, publisher, conversation, test_user, other_user
    ):
        service.mark_as_read(conversation.id, other_user.id)
        assert publisher.pending == []

        service.send_message(conversation.id, test_user, MessageCreate(content="hi"))
        publisher.pending.clear()
        service.mark_as_read(conversation.id, other_user.id)

        assert [event["type"] for _, event in publisher.pending] == [CONVERSATION_READ]

    def test_should_queue_creation_event_for_invitees(
        self, service, publisher, test_user, other_user, third_user
    ):
        service.create_group_conversation(
            test_user, GroupConversationCreate(member_ids=[other_user.id, third_user.id])
        )

        recipients = {user_id for user_id, event in publisher.pending}
        assert recipients == {other_user.id, third_user.id}
        assert {event["type"] for _, event in publisher.pending} == {CONVERSATION_CREATED}


class TestEventPublisherFlush:
    @pytest.mark.asyncio
    async def test_should_skip_publishing_without_redis(self, monkeypatch):
        monkeypatch.setattr(redis_module, "redis_client", None)
        publisher = EventPublisher()
        publisher.queue("user-1", MESSAGE_CREATED, conversation_id="c-1")

        assert await publisher.flush() == 0
        assert publisher.pending == []

    @pytest.mark.asyncio
    async def test_should_publish_json_on_user_channel(self, monkeypatch):
        fake_redis = AsyncMock()
        fake_redis.publish.return_value = 1
        monkeypatch.setattr(redis_module, "redis_client", fake_redis)
        publisher = EventPublisher()
        publisher.queue("user-1", MESSAGE_CREATED, conversation_id="c-1")

        published = await publisher.flush()

        channel, payload = fake_redis.publish.await_args.args
        assert published == 1
        assert channel == "dm:events:user-1"
        assert json.loads(payload) == {"type": MESSAGE_CREATED, "conversation_id": "c-1"}

    @pytest.mark.asyncio
    async def test_should_keep_going_when_redis_fails(self, monkeypatch):
        fake_redis = AsyncMock()
        fake_redis.publish.side_effect = [RedisConnectionError("down"), 1]
        monkeypatch.setattr(redis_module, "redis_client", fake_redis)
        publisher = EventPublisher()
        publisher.queue("user-1", MESSAGE_CREATED, conversation_id="c-1")
        publisher.queue("user-2", MESSAGE_CREATED, conversation_id="c-1")

        assert await publisher.flush() == 1
        assert fake_redis.publish.await_count == 2


class TestRepeatedSend:
    def test_should_not_announce_resent_message_again(
        self, service, publisher, conversation, test_user
    ):
        data = MessageCreate(content="hi", client_key="resend-1")

        first, first_created = service.send_message(conversation.id, test_user, data)
        publisher.pending.clear()
        second, second_created = service.send_message(conversation.id, test_user, data)

        assert first_created is True
        assert second_created is False
        assert second.id == first.id
        assert publisher.pending == []
