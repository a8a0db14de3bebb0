import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.core.ids import new_id
from app.messaging.models.conversation import Conversation
from app.messaging.models.conversation_participant import ConversationParticipant
from app.messaging.services.conversation_resolver import ConversationResolver
from tests.utils.factories import create_user_factory


@pytest.fixture
def resolver(db_session):
    return ConversationResolver(db_session)


class TestResolveDirectConversation:
    def test_should_create_conversation_with_both_members(self, resolver, test_user, other_user):
        conversation, created = resolver.resolve_direct_conversation(test_user.id, other_user.id)

        assert created is True
        assert conversation.is_group is False
        assert {p.user_id for p in conversation.participants} == {test_user.id, other_user.id}

    def test_should_return_existing_conversation_in_either_order(
        self, db_session, resolver, test_user, other_user
    ):
        first, _ = resolver.resolve_direct_conversation(test_user.id, other_user.id)
        again, created_again = resolver.resolve_direct_conversation(test_user.id, other_user.id)
        reverse, created_reverse = resolver.resolve_direct_conversation(other_user.id, test_user.id)

        assert again.id == first.id == reverse.id
        assert created_again is False
        assert created_reverse is False
        assert db_session.query(Conversation).count() == 1

    def test_should_reject_conversation_with_self(self, resolver, test_user):
        with pytest.raises(ValidationError):
            resolver.resolve_direct_conversation(test_user.id, test_user.id)

    def test_should_raise_not_found_for_unknown_user(self, resolver, test_user):
        with pytest.raises(NotFoundError):
            resolver.resolve_direct_conversation(test_user.id, new_id())

    def test_should_raise_not_found_for_inactive_user(self, db_session, resolver, test_user):
        inactive = create_user_factory(db_session, is_active=False)

        with pytest.raises(NotFoundError):
            resolver.resolve_direct_conversation(test_user.id, inactive.id)

    def test_should_read_winner_after_losing_creation_race(
        self, db_session, test_user, other_user, monkeypatch
    ):
        winner, _ = ConversationResolver(db_session).resolve_direct_conversation(
            test_user.id, other_user.id
        )
        winner_id = winner.id

        loser = ConversationResolver(db_session)
        real_lookup = loser.conversations.find_by_direct_key
        lookups = []

        def lookup_before_winner_committed(direct_key):
            lookups.append(direct_key)
            if len(lookups) == 1:
                return None
            return real_lookup(direct_key)

        monkeypatch.setattr(
            loser.conversations, "find_by_direct_key", lookup_before_winner_committed
        )

        conversation, created = loser.resolve_direct_conversation(other_user.id, test_user.id)

        assert created is False
        assert conversation.id == winner_id
        assert len(lookups) == 2
        assert db_session.query(Conversation).count() == 1
        assert db_session.query(ConversationParticipant).count() == 2

    def test_should_keep_pairs_independent(self, resolver, test_user, other_user, third_user):
        with_bob, _ = resolver.resolve_direct_conversation(test_user.id, other_user.id)
        with_carol, _ = resolver.resolve_direct_conversation(test_user.id, third_user.id)

        assert with_bob.id != with_carol.id


class TestCreateGroupConversation:
    def test_should_make_creator_admin(self, resolver, test_user, other_user, third_user):
        group = resolver.create_group_conversation(
            test_user.id, [other_user.id, third_user.id], name="  Weekend  "
        )

        admins = {p.user_id for p in group.participants if p.is_admin}
        assert group.is_group is True
        assert group.name == "Weekend"
        assert group.direct_key is None
        assert admins == {test_user.id}
        assert len(group.participants) == 3

    def test_should_ignore_duplicate_member_ids(self, resolver, test_user, other_user):
        group = resolver.create_group_conversation(
            test_user.id, [other_user.id, other_user.id, test_user.id]
        )

        assert len(group.participants) == 2

    def test_should_require_another_member(self, resolver, test_user):
        with pytest.raises(ValidationError):
            resolver.create_group_conversation(test_user.id, [test_user.id])

    def test_should_raise_not_found_for_unknown_member(self, resolver, test_user):
        with pytest.raises(NotFoundError):
            resolver.create_group_conversation(test_user.id, [new_id()])

    def test_should_never_deduplicate_groups(
        self, db_session, resolver, test_user, other_user, third_user
    ):
        resolver.create_group_conversation(test_user.id, [other_user.id, third_user.id])
        resolver.create_group_conversation(test_user.id, [other_user.id, third_user.id])

        assert db_session.query(Conversation).count() == 2
