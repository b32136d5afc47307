"""Tests for the conversation state machine and merge redirection."""

import pytest
from sqlalchemy import select

from helpdesk.db.models import (
    ConversationEvent,
    ConversationMessage,
    ConversationStatus,
    MessageRole,
)
from helpdesk.errors import MergeCycleError, NotFoundError
from helpdesk.services import job_dispatcher
from helpdesk.services.conversation_service import (
    MAX_MERGE_DEPTH,
    create_conversation,
    get_conversation_by_slug,
    get_mailbox,
    resolve_root_conversation_id,
    serialize_conversation,
    update_conversation,
    update_original_conversation,
)


def _events(db, conversation_id):
    return list(
        db.scalars(
            select(ConversationEvent).where(ConversationEvent.conversation_id == conversation_id)
        )
    )


class TestCreateConversation:
    def test_defaults(self, db_session):
        conversation = create_conversation(db_session)

        assert conversation.id is not None
        assert conversation.status == "open"
        assert conversation.subject == "Chat"
        assert conversation.assigned_to_ai is False
        assert len(conversation.slug) == 32

    def test_lookup_by_slug(self, db_session):
        conversation = create_conversation(db_session, email_from="jane@example.com")

        assert get_conversation_by_slug(db_session, conversation.slug).id == conversation.id

    def test_unknown_slug_raises_not_found(self, db_session):
        with pytest.raises(NotFoundError, match="Conversation 'nope' not found"):
            get_conversation_by_slug(db_session, "nope")

    def test_missing_mailbox_raises_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            get_mailbox(db_session)


class TestUpdateConversationRules:
    def test_assigning_to_ai_closes_and_clears_owner(self, db_session, make_conversation):
        conversation = make_conversation(assigned_to_ai=False, assigned_to_id="staff_1")

        update_conversation(db_session, conversation.id, {"assigned_to_ai": True})

        assert conversation.assigned_to_ai is True
        assert conversation.status == ConversationStatus.closed.value
        assert conversation.assigned_to_id is None
        assert conversation.closed_at is not None

    def test_assigning_to_human_turns_off_ai(self, db_session, make_conversation):
        conversation = make_conversation(assigned_to_ai=True)

        update_conversation(db_session, conversation.id, {"assigned_to_id": "staff_2"})

        assert conversation.assigned_to_ai is False
        assert conversation.assigned_to_id == "staff_2"

    def test_event_records_only_changed_fields(self, db_session, make_conversation):
        conversation = make_conversation(assigned_to_ai=False, status="open")

        update_conversation(
            db_session, conversation.id, {"status": "open", "subject": "Refund"}
        )
        assert _events(db_session, conversation.id) == []

        update_conversation(
            db_session, conversation.id, {"status": "spam"}, by_user_id="staff_1", message="junk"
        )
        events = _events(db_session, conversation.id)
        assert len(events) == 1
        assert events[0].changes == {"status": "spam"}
        assert events[0].by_user_id == "staff_1"
        assert events[0].reason == "junk"

    def test_closing_enqueues_embedding_job(self, db_session, make_conversation):
        conversation = make_conversation(assigned_to_ai=False)

        update_conversation(db_session, conversation.id, {"status": "closed"})

        jobs = job_dispatcher.get_pending_jobs(db_session, job_dispatcher.EMBEDDING_CREATE)
        assert [job.payload for job in jobs] == [{"conversationSlug": conversation.slug}]

    def test_ai_assignment_with_pending_customer_message_enqueues_auto_response(
        self, db_session, make_conversation
    ):
        conversation = make_conversation(assigned_to_ai=False)
        message = ConversationMessage(
            conversation_id=conversation.id, role=MessageRole.user.value, body="Hello?"
        )
        db_session.add(message)
        db_session.commit()

        update_conversation(db_session, conversation.id, {"assigned_to_ai": True})

        jobs = job_dispatcher.get_pending_jobs(db_session, job_dispatcher.AUTO_RESPONSE_CREATE)
        assert [job.payload for job in jobs] == [{"messageId": message.id}]

    def test_unknown_field_rejected(self, db_session, make_conversation):
        conversation = make_conversation()

        with pytest.raises(ValueError, match="Unknown conversation field"):
            update_conversation(db_session, conversation.id, {"colour": "red"})


class TestMergeRedirection:
    def test_update_lands_on_root(self, db_session, make_conversation):
        root = make_conversation(assigned_to_ai=False)
        middle = make_conversation(merged_into_id=root.id, assigned_to_ai=False)
        leaf = make_conversation(merged_into_id=middle.id, assigned_to_ai=False)

        updated = update_original_conversation(
            db_session, leaf.id, updates={"status": "spam"}
        )

        assert updated.id == root.id
        assert root.status == "spam"
        assert leaf.status == "open"

    def test_unmerged_conversation_is_its_own_root(self, db_session, make_conversation):
        conversation = make_conversation()

        assert resolve_root_conversation_id(db_session, conversation.id) == conversation.id

    def test_cycle_raises(self, db_session, make_conversation):
        first = make_conversation()
        second = make_conversation(merged_into_id=first.id)
        first.merged_into_id = second.id
        db_session.commit()

        with pytest.raises(MergeCycleError) as exc_info:
            resolve_root_conversation_id(db_session, first.id)

        assert exc_info.value.chain == [first.id, second.id, first.id]

    def test_overlong_chain_raises(self, db_session, make_conversation):
        current = make_conversation()
        for _ in range(MAX_MERGE_DEPTH + 1):
            current = make_conversation(merged_into_id=current.id)

        with pytest.raises(MergeCycleError):
            resolve_root_conversation_id(db_session, current.id)

    def test_missing_conversation_raises_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            resolve_root_conversation_id(db_session, 999)


def test_serialize_conversation_flags_vip(db_session, mailbox, make_conversation):
    from helpdesk.db.models import PlatformCustomer

    mailbox.vip_threshold = 500
    conversation = make_conversation(email_from="vip@example.com")
    customer = PlatformCustomer(email="vip@example.com", name="Vera", value=60000)

    data = serialize_conversation(mailbox, conversation, customer)

    assert data["slug"] == conversation.slug
    assert data["platformCustomer"]["isVip"] is True
    assert data["closedAt"] is None
