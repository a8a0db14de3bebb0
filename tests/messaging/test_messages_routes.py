import pytest

from app.core.ids import new_id
from app.core.security import create_access_token
from app.messaging.models.conversation import Conversation
from app.messaging.models.message import Message
from app.messaging.services.message_store import message_cursor
from tests.utils.factories import create_direct_conversation, create_message_factory
from tests.utils.helpers import assert_error_response, set_access_token_cookie

BASE = "/api/v1/messages"


@pytest.fixture
def conversation(db_session, test_user, other_user):
    return create_direct_conversation(db_session, test_user, other_user)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_should_return_401_without_token(self, test_client):
        response = await test_client.get(f"{BASE}/conversations")

        assert_error_response(response, 401, "UNAUTHORIZED")

    @pytest.mark.asyncio
    async def test_should_accept_bearer_header(self, test_client, test_user_token):
        response = await test_client.get(
            f"{BASE}/conversations", headers={"Authorization": f"Bearer {test_user_token}"}
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_should_return_401_for_garbage_token(self, test_client):
        set_access_token_cookie(test_client, "not-a-jwt")

        response = await test_client.get(f"{BASE}/unread-count")

        assert_error_response(response, 401, "UNAUTHORIZED")


class TestStartDirectConversation:
    @pytest.mark.asyncio
    async def test_should_return_201_then_200_for_same_pair(
        self, test_client, test_user_token, other_user_token, test_user, other_user, db_session
    ):
        set_access_token_cookie(test_client, test_user_token)
        created = await test_client.post(
            f"{BASE}/conversations/direct", json={"user_id": other_user.id}
        )

        set_access_token_cookie(test_client, other_user_token)
        existing = await test_client.post(
            f"{BASE}/conversations/direct", json={"user_id": test_user.id}
        )

        assert created.status_code == 201
        assert existing.status_code == 200
        assert created.json()["id"] == existing.json()["id"]
        assert db_session.query(Conversation).count() == 1

    @pytest.mark.asyncio
    async def test_should_return_400_for_self(self, test_client, test_user_token, test_user):
        set_access_token_cookie(test_client, test_user_token)

        response = await test_client.post(
            f"{BASE}/conversations/direct", json={"user_id": test_user.id}
        )

        assert_error_response(response, 400, "VALIDATION_ERROR")

    @pytest.mark.asyncio
    async def test_should_return_404_for_unknown_user(self, test_client, test_user_token):
        set_access_token_cookie(test_client, test_user_token)

        response = await test_client.post(f"{BASE}/conversations/direct", json={"user_id": new_id()})

        assert_error_response(response, 404, "NOT_FOUND")


class TestGroupConversation:
    @pytest.mark.asyncio
    async def test_should_create_group(
        self, test_client, test_user_token, test_user, other_user, third_user
    ):
        set_access_token_cookie(test_client, test_user_token)

        response = await test_client.post(
            f"{BASE}/conversations/group",
            json={"name": "Trip", "member_ids": [other_user.id, third_user.id]},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["is_group"] is True
        assert data["name"] == "Trip"
        assert {p["id"] for p in data["participants"]} == {
            test_user.id,
            other_user.id,
            third_user.id,
        }


class TestConversationFlow:
    @pytest.mark.asyncio
    async def test_should_track_unread_through_send_list_and_open(
        self, test_client, test_user_token, other_user_token, conversation
    ):
        set_access_token_cookie(test_client, test_user_token)
        sent = await test_client.post(
            f"{BASE}/conversations/{conversation.id}/messages", json={"content": "hey bob"}
        )
        assert sent.status_code == 201

        set_access_token_cookie(test_client, other_user_token)
        listing = await test_client.get(f"{BASE}/conversations")
        summary = listing.json()["conversations"][0]
        assert summary["unread_count"] == 1
        assert summary["last_message_preview"] == "hey bob"
        assert summary["display_name"] == "Alice Anderson"

        badge = await test_client.get(f"{BASE}/unread-count")
        assert badge.json() == {"unread_count": 1}

        opened = await test_client.get(f"{BASE}/conversations/{conversation.id}")
        assert opened.status_code == 200
        detail = opened.json()
        assert detail["marked_read"] == 1
        assert [m["content"] for m in detail["page"]["messages"]] == ["hey bob"]

        after = await test_client.get(f"{BASE}/conversations/{conversation.id}/unread-count")
        assert after.json() == {"unread_count": 0}

        badge_after = await test_client.get(f"{BASE}/unread-count")
        assert badge_after.json() == {"unread_count": 0}

    @pytest.mark.asyncio
    async def test_should_report_readers_to_sender(
        self, test_client, test_user_token, other_user_token, conversation, other_user
    ):
        set_access_token_cookie(test_client, test_user_token)
        await test_client.post(
            f"{BASE}/conversations/{conversation.id}/messages", json={"content": "seen?"}
        )

        set_access_token_cookie(test_client, other_user_token)
        marked = await test_client.put(f"{BASE}/conversations/{conversation.id}/read")
        again = await test_client.put(f"{BASE}/conversations/{conversation.id}/read")

        set_access_token_cookie(test_client, test_user_token)
        page = await test_client.get(f"{BASE}/conversations/{conversation.id}/messages")

        assert marked.json() == {"marked_read": 1}
        assert again.json() == {"marked_read": 0}
        assert page.json()["messages"][0]["read_by"] == [other_user.id]

    @pytest.mark.asyncio
    async def test_should_mark_read_only_up_to_given_cursor(
        self, test_client, test_user_token, conversation, db_session, other_user
    ):
        shown = create_message_factory(db_session, conversation, other_user, content="shown")
        create_message_factory(db_session, conversation, other_user, content="newer")
        set_access_token_cookie(test_client, test_user_token)

        marked = await test_client.put(
            f"{BASE}/conversations/{conversation.id}/read",
            params={"up_to": message_cursor(shown)},
        )
        unread = await test_client.get(f"{BASE}/conversations/{conversation.id}/unread-count")

        assert marked.json() == {"marked_read": 1}
        assert unread.json() == {"unread_count": 1}

    @pytest.mark.asyncio
    async def test_should_deduplicate_send_by_client_key(
        self, test_client, test_user_token, conversation, db_session
    ):
        set_access_token_cookie(test_client, test_user_token)
        payload = {"content": "once", "client_key": "3f2a9c"}

        first = await test_client.post(
            f"{BASE}/conversations/{conversation.id}/messages", json=payload
        )
        second = await test_client.post(
            f"{BASE}/conversations/{conversation.id}/messages", json=payload
        )

        assert first.status_code == 201
        assert second.status_code == 200
        assert first.json()["id"] == second.json()["id"]
        assert second.json()["client_key"] == "3f2a9c"
        assert db_session.query(Message).count() == 1

    @pytest.mark.asyncio
    async def test_should_poll_with_cursor(
        self, test_client, test_user_token, conversation, db_session, other_user
    ):
        create_message_factory(db_session, conversation, other_user, content="first")
        set_access_token_cookie(test_client, test_user_token)

        page = (await test_client.get(f"{BASE}/conversations/{conversation.id}/messages")).json()
        create_message_factory(db_session, conversation, other_user, content="second")
        update = (
            await test_client.get(
                f"{BASE}/conversations/{conversation.id}/messages",
                params={"cursor": page["next_cursor"]},
            )
        ).json()

        assert [m["content"] for m in update["messages"]] == ["second"]

    @pytest.mark.asyncio
    async def test_should_return_400_for_invalid_cursor(
        self, test_client, test_user_token, conversation
    ):
        set_access_token_cookie(test_client, test_user_token)

        response = await test_client.get(
            f"{BASE}/conversations/{conversation.id}/messages", params={"cursor": "%%%"}
        )

        error = assert_error_response(response, 400, "VALIDATION_ERROR")
        assert error["details"] == {"field": "cursor"}

    @pytest.mark.asyncio
    async def test_should_return_400_for_empty_message(
        self, test_client, test_user_token, conversation
    ):
        set_access_token_cookie(test_client, test_user_token)

        response = await test_client.post(
            f"{BASE}/conversations/{conversation.id}/messages", json={"content": "   "}
        )

        assert_error_response(response, 400, "VALIDATION_ERROR")


class TestMembership:
    @pytest.mark.asyncio
    async def test_should_hide_conversation_from_non_member(
        self, test_client, conversation, third_user
    ):
        set_access_token_cookie(test_client, create_access_token({"sub": third_user.id}))

        read = await test_client.get(f"{BASE}/conversations/{conversation.id}/messages")
        send = await test_client.post(
            f"{BASE}/conversations/{conversation.id}/messages", json={"content": "hi"}
        )
        unread = await test_client.get(f"{BASE}/conversations/{conversation.id}/unread-count")

        assert_error_response(read, 404, "NOT_FOUND")
        assert_error_response(send, 404, "NOT_FOUND")
        assert unread.json() == {"unread_count": 0}

    @pytest.mark.asyncio
    async def test_should_return_404_for_unknown_conversation(self, test_client, test_user_token):
        set_access_token_cookie(test_client, test_user_token)

        response = await test_client.get(f"{BASE}/conversations/{new_id()}")

        assert_error_response(response, 404, "NOT_FOUND")


class TestEventStream:
    @pytest.mark.asyncio
    async def test_should_return_503_without_redis(self, test_client, test_user_token):
        set_access_token_cookie(test_client, test_user_token)

        response = await test_client.get(f"{BASE}/events")

        assert_error_response(response, 503, "TRANSIENT_STORE_ERROR")
