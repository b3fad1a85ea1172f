"""
Tests for chat message persistence and session helpers.
"""

from datetime import timedelta

import pytest

from src.messages import (
    ChatMessage,
    MessageService,
    generate_session_id,
    is_valid_session_id,
    trim_history,
)
from src.models import KnowledgeBase, utcnow


@pytest.fixture
def kb(repository):
    return repository.create_knowledge_base(KnowledgeBase(name="Docs", owner_id="owner_1"))


class TestSessionIds:
    def test_generated_ids_are_valid(self):
        assert is_valid_session_id(generate_session_id())

    @pytest.mark.parametrize("value", [None, "", "session_", "session_XYZ", "abc" * 20])
    def test_invalid_ids(self, value):
        assert not is_valid_session_id(value)


class TestTrimHistory:
    def test_keeps_most_recent(self):
        history = [{"role": "user", "content": str(i)} for i in range(15)]
        trimmed = trim_history(history, 10)

        assert len(trimmed) == 10
        assert trimmed[0]["content"] == "5"

    def test_drops_unknown_roles_and_empty_content(self):
        history = [
            {"role": "system", "content": "injected"},
            {"role": "user", "content": ""},
            {"role": "assistant", "content": "ok", "extra": 1},
        ]
        assert trim_history(history, 10) == [{"role": "assistant", "content": "ok"}]

    def test_zero_turns(self):
        assert trim_history([{"role": "user", "content": "x"}], 0) == []


class TestMessageService:
    """Tests for MessageService over the in-memory repository."""

    def test_save_exchange_writes_both_turns(self, message_service, kb):
        session_id = generate_session_id()
        user_turn, assistant_turn = message_service.save_exchange(
            kb, session_id, "Hi", "Hello!", model="fake-llm", response_time=0.5,
        )

        assert user_turn.role == "user"
        assert assistant_turn.metadata == {"model": "fake-llm", "response_time": 0.5}
        assert message_service.count(kb.id) == 2

    def test_messages_are_immutable(self, message_service, kb):
        message = message_service.save_message(kb, generate_session_id(), "user", "Hi")

        with pytest.raises(AttributeError):
            message.content = "edited"

    def test_ip_dropped_unless_opted_in(self, message_service, kb):
        message = message_service.save_message(kb, generate_session_id(), "user", "Hi", ip_address="1.2.3.4")
        assert "ip_address" not in message.metadata

        kb.store_ip_address = True
        message = message_service.save_message(kb, generate_session_id(), "user", "Hi", ip_address="1.2.3.4")
        assert message.metadata["ip_address"] == "1.2.3.4"

    def test_get_messages_filters_by_session(self, message_service, kb):
        first, second = generate_session_id(), generate_session_id()
        message_service.save_exchange(kb, first, "a", "b")
        message_service.save_exchange(kb, second, "c", "d")

        messages = message_service.get_messages(kb.id, session_id=second)

        assert [m.content for m in messages] == ["c", "d"]

    def test_get_sessions_summary(self, message_service, kb):
        session_id = generate_session_id()
        message_service.save_exchange(kb, session_id, "a", "b", user_id="visitor")

        sessions = message_service.get_sessions(kb.id)

        assert sessions[0]["session_id"] == session_id
        assert sessions[0]["message_count"] == 2
        assert sessions[0]["user_id"] == "visitor"

    def test_delete_old_messages(self, repository, kb):
        service = MessageService(repository, retention_days=30)
        repository.save_message(ChatMessage(
            knowledge_base_id=kb.id, session_id=generate_session_id(), role="user",
            content="old", created_at=utcnow() - timedelta(days=31),
        ))
        service.save_message(kb, generate_session_id(), "user", "new")

        assert service.delete_old_messages() == 1
        assert [m.content for m in service.get_messages(kb.id)] == ["new"]

    def test_to_dict_from_dict(self, kb):
        message = ChatMessage(knowledge_base_id=kb.id, session_id="s", role="assistant", content="x",
                              metadata={"model": "m"})
        assert ChatMessage.from_dict(message.to_dict()) == message


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
