"""
Tests for the chat orchestrator.

Covers validation, authorization, the RAG and plain-context paths,
persistence of embedded traffic and error mapping.
"""

import pytest
from unittest.mock import Mock

from config.settings import ChatConfig, LLMConfig
from src.chat import (
    CANCELLED_MESSAGE,
    SAFE_ERROR_MESSAGE,
    ChatErrorResponse,
    ChatOrchestrator,
    ChatRequest,
    ChatResponse,
    Identity,
    error_response,
)
from src.chunker import Chunk
from src.errors import CancellationToken, GenerationFailed, InvalidInput, NotFound
from src.messages import SESSION_ID_PATTERN
from src.models import KnowledgeBase
from src.rag_agent import NO_CONTEXT_NOTE, RAGStream, WebpageContext


PAGE = WebpageContext(url="https://example.com/pricing", title="Pricing", content="Plans start at $10.")


@pytest.fixture
def orchestrator(repository, message_service, rag_agent, llm_service, chat_config):
    return ChatOrchestrator(
        repository,
        message_service,
        rag_agent,
        llm_service,
        config=chat_config,
        llm_config=LLMConfig(),
        max_chunks=5,
        similarity_threshold=0.0,
    )


@pytest.fixture
def public_kb(repository, vector_store):
    kb = repository.create_knowledge_base(
        KnowledgeBase(name="Docs", owner_id="owner_1", is_public=True, instructions="Be brief.")
    )
    vector_store.upsert_chunks(kb.id, [
        Chunk(text="Refunds take five days.", knowledge_base_id=kb.id, source="faq.md"),
    ])
    return kb


@pytest.fixture
def private_kb(repository):
    return repository.create_knowledge_base(KnowledgeBase(name="Internal", owner_id="owner_1"))


class TestValidation:
    """Request validation happens before any model call or write."""

    @pytest.mark.parametrize("message", [None, "", "   ", 42, ["hi"]])
    def test_invalid_message(self, orchestrator, llm_provider, message):
        response = orchestrator.handle_chat(ChatRequest(message=message))

        assert isinstance(response, ChatErrorResponse)
        assert response.error == "invalid_input"
        assert response.status == 400
        assert llm_provider.calls == []

    def test_message_too_long_has_no_side_effects(self, orchestrator, public_kb, llm_provider, message_service):
        request = ChatRequest(
            message="x" * 10001,
            knowledge_base_id=public_kb.id,
            webpage_context=PAGE,
            is_embedded=True,
        )

        response = orchestrator.handle_chat(request)

        assert response.error == "invalid_input"
        assert "10000" in response.message
        assert llm_provider.calls == []
        assert message_service.count(public_kb.id) == 0

    def test_message_at_limit_is_accepted(self, orchestrator):
        response = orchestrator.handle_chat(ChatRequest(message="x" * 10000, webpage_context=PAGE))
        assert isinstance(response, ChatResponse)

    def test_history_must_be_list(self, orchestrator):
        response = orchestrator.handle_chat(ChatRequest(message="Hi", history="nope", webpage_context=PAGE))
        assert response.error == "invalid_input"

    @pytest.mark.parametrize("history", [
        ["hi"],
        [None],
        [{"role": "user"}],
        [{"role": "user", "content": 5}],
        [{"role": "user", "content": "ok"}, {"content": "missing role"}],
    ])
    def test_malformed_history_entries(self, orchestrator, llm_provider, history):
        response = orchestrator.handle_chat(ChatRequest(message="Hi", history=history, webpage_context=PAGE))

        assert response.error == "invalid_input"
        assert response.status == 400
        assert llm_provider.calls == []


class TestSessions:
    """Tests for session id handling."""

    def test_new_session_ids_are_unique_and_well_formed(self):
        ids = {ChatOrchestrator.resolve_session_id(None) for _ in range(10000)}

        assert len(ids) == 10000
        assert all(SESSION_ID_PATTERN.match(session_id) for session_id in ids)

    def test_valid_session_id_is_reused(self, orchestrator):
        session_id = "session_" + "b" * 32
        response = orchestrator.handle_chat(ChatRequest(message="Hi", session_id=session_id, webpage_context=PAGE))
        assert response.session_id == session_id

    def test_malformed_session_id_is_replaced(self, orchestrator):
        response = orchestrator.handle_chat(ChatRequest(message="Hi", session_id="abc", webpage_context=PAGE))
        assert response.session_id != "abc"
        assert SESSION_ID_PATTERN.match(response.session_id)


class TestAuthorization:
    """Tests for knowledge base access checks."""

    def test_anonymous_on_private_kb_is_rejected(self, orchestrator, private_kb, llm_provider):
        response = orchestrator.handle_chat(
            ChatRequest(message="Hi", knowledge_base_id=private_kb.id, webpage_context=PAGE),
            Identity.anonymous(),
        )

        assert response.error == "unauthorized"
        assert response.status == 401
        assert llm_provider.calls == []

    def test_other_user_on_private_kb_is_rejected(self, orchestrator, private_kb):
        response = orchestrator.handle_chat(
            ChatRequest(message="Hi", knowledge_base_id=private_kb.id, webpage_context=PAGE),
            Identity(user_id="someone_else"),
        )
        assert response.error == "unauthorized"

    def test_owner_on_private_kb_is_allowed(self, orchestrator, private_kb):
        response = orchestrator.handle_chat(
            ChatRequest(message="Hi", knowledge_base_id=private_kb.id),
            Identity(user_id="owner_1"),
        )
        assert isinstance(response, ChatResponse)

    def test_unknown_kb_is_not_found(self, orchestrator):
        response = orchestrator.handle_chat(ChatRequest(message="Hi", knowledge_base_id="missing"))
        assert response.error == "not_found"
        assert response.status == 404


class TestAnswering:
    """Tests for the RAG and plain paths."""

    def test_rag_path_returns_sources(self, orchestrator, public_kb, llm_provider):
        response = orchestrator.handle_chat(
            ChatRequest(message="How long do refunds take?", knowledge_base_id=public_kb.id)
        )

        assert response.answer == "This is a test answer [1]."
        assert response.sources[0]["text"] == "Refunds take five days."
        system_prompt = llm_provider.calls[0]["messages"][0]["content"]
        assert "Be brief." in system_prompt
        assert response.to_dict()["sources"] == response.sources

    def test_plain_path_without_kb(self, orchestrator, llm_provider):
        response = orchestrator.handle_chat(ChatRequest(message="What is this page?", webpage_context=PAGE))

        assert response.sources is None
        assert "sources" not in response.to_dict()
        system_prompt = llm_provider.calls[0]["messages"][0]["content"]
        assert 'embedded on the webpage "Pricing" (https://example.com/pricing)' in system_prompt
        assert "Plans start at $10." in system_prompt

    def test_plain_path_requires_page(self, orchestrator):
        response = orchestrator.handle_chat(ChatRequest(message="Hi"))
        assert response.error == "invalid_input"

    def test_rag_failure_falls_back_to_page(self, repository, message_service, llm_service, public_kb, llm_provider):
        failing_agent = Mock()
        failing_agent.generate_answer.side_effect = RuntimeError("vector store exploded")
        orchestrator = ChatOrchestrator(
            repository, message_service, failing_agent, llm_service,
            config=ChatConfig(), llm_config=LLMConfig(),
        )

        response = orchestrator.handle_chat(
            ChatRequest(message="Hi", knowledge_base_id=public_kb.id, webpage_context=PAGE)
        )

        assert isinstance(response, ChatResponse)
        assert response.sources is None
        assert "Pricing" in llm_provider.calls[0]["messages"][0]["content"]

    def test_retrieval_failure_still_answers(self, orchestrator, public_kb, embedding_provider, llm_provider):
        embedding_provider.fail = True

        response = orchestrator.handle_chat(ChatRequest(message="Hi", knowledge_base_id=public_kb.id))

        assert response.answer == "This is a test answer [1]."
        assert NO_CONTEXT_NOTE in llm_provider.calls[0]["messages"][0]["content"]

    def test_history_is_trimmed(self, orchestrator, llm_provider):
        history = [{"role": "user", "content": f"m{i}"} for i in range(30)]

        orchestrator.handle_chat(ChatRequest(message="Now", history=history, webpage_context=PAGE))

        messages = llm_provider.calls[0]["messages"]
        assert len(messages) == 1 + 10 + 1
        assert messages[1]["content"] == "m20"

    def test_generation_failure_uses_safe_message(self, orchestrator, llm_provider):
        llm_provider.fail = RuntimeError("secret upstream details")

        response = orchestrator.handle_chat(ChatRequest(message="Hi", webpage_context=PAGE))

        assert response.error == "generation_failed"
        assert response.status == 502
        assert response.message == SAFE_ERROR_MESSAGE

    def test_cancelled_request(self, orchestrator, llm_provider):
        token = CancellationToken()
        token.cancel()

        response = orchestrator.handle_chat(ChatRequest(message="Hi", webpage_context=PAGE), cancel_token=token)

        assert response.error == "cancelled"
        assert response.message == CANCELLED_MESSAGE
        assert llm_provider.calls == []


class TestPersistence:
    """Both turns are stored only for embedded traffic."""

    def test_embedded_traffic_is_persisted(self, orchestrator, public_kb, message_service):
        response = orchestrator.handle_chat(ChatRequest(
            message="Refunds?",
            knowledge_base_id=public_kb.id,
            is_embedded=True,
            user_agent="pytest",
            ip_address="10.0.0.1",
        ))

        messages = message_service.get_messages(public_kb.id, session_id=response.session_id)
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[0].content == "Refunds?"
        assert messages[1].content == response.answer
        assert messages[1].metadata["model"] == "fake-llm"
        assert "ip_address" not in messages[0].metadata

    def test_non_embedded_traffic_is_not_persisted(self, orchestrator, public_kb, message_service):
        orchestrator.handle_chat(ChatRequest(message="Refunds?", knowledge_base_id=public_kb.id))
        assert message_service.count(public_kb.id) == 0

    def test_ip_stored_when_kb_opts_in(self, orchestrator, repository, public_kb, message_service):
        repository.update_knowledge_base(public_kb.id, store_ip_address=True)

        orchestrator.handle_chat(ChatRequest(
            message="Hi", knowledge_base_id=public_kb.id, is_embedded=True, ip_address="10.0.0.1",
        ))

        messages = message_service.get_messages(public_kb.id)
        assert messages[0].metadata["ip_address"] == "10.0.0.1"

    def test_persistence_failure_does_not_fail_turn(self, orchestrator, public_kb, repository):
        repository.save_message = Mock(side_effect=RuntimeError("disk full"))

        response = orchestrator.handle_chat(ChatRequest(
            message="Hi", knowledge_base_id=public_kb.id, is_embedded=True,
        ))

        assert isinstance(response, ChatResponse)


class TestStreamChat:
    """Tests for the streaming variant."""

    def test_event_sequence(self, orchestrator, public_kb, message_service):
        events = list(orchestrator.stream_chat(ChatRequest(
            message="Refunds?", knowledge_base_id=public_kb.id, is_embedded=True,
        )))

        assert events[0]["type"] == "start"
        assert events[0]["sources"][0]["text"] == "Refunds take five days."
        assert events[-1]["type"] == "done"
        answer = "".join(e["content"] for e in events if e["type"] == "token")
        assert answer.strip() == "This is a test answer [1]."

        stored = message_service.get_messages(public_kb.id, session_id=events[0]["sessionId"])
        assert stored[1].content == answer

    def test_lazy_generation_failure_falls_back_to_page(self, repository, message_service, llm_service,
                                                         public_kb, llm_provider):
        def failing_tokens():
            raise GenerationFailed("model down")
            yield

        agent = Mock()
        agent.stream_answer.return_value = RAGStream(
            tokens=failing_tokens(), sources=[{"text": "unused"}], model="fake-llm",
        )
        orchestrator = ChatOrchestrator(
            repository, message_service, agent, llm_service,
            config=ChatConfig(), llm_config=LLMConfig(),
        )

        events = list(orchestrator.stream_chat(
            ChatRequest(message="Hi", knowledge_base_id=public_kb.id, webpage_context=PAGE)
        ))

        assert [e["type"] for e in events[:2]] == ["start", "token"]
        assert events[0]["sources"] is None
        assert events[-1]["type"] == "done"
        answer = "".join(e["content"] for e in events if e["type"] == "token")
        assert answer.strip() == "This is a test answer [1]."
        assert "Pricing" in llm_provider.calls[0]["messages"][0]["content"]

    def test_lazy_generation_failure_without_page_is_an_error(self, repository, message_service,
                                                              llm_service, public_kb):
        def failing_tokens():
            raise GenerationFailed("model down")
            yield

        agent = Mock()
        agent.stream_answer.return_value = RAGStream(tokens=failing_tokens(), sources=None, model="fake-llm")
        orchestrator = ChatOrchestrator(
            repository, message_service, agent, llm_service,
            config=ChatConfig(), llm_config=LLMConfig(),
        )

        events = list(orchestrator.stream_chat(ChatRequest(message="Hi", knowledge_base_id=public_kb.id)))

        assert [e["type"] for e in events] == ["error"]
        assert events[0]["status"] == 400

    def test_error_event(self, orchestrator, private_kb):
        events = list(orchestrator.stream_chat(ChatRequest(message="Hi", knowledge_base_id=private_kb.id)))

        assert len(events) == 1
        assert events[0]["type"] == "error"
        assert events[0]["status"] == 401
        assert events[0]["error"] == "unauthorized"
        assert SESSION_ID_PATTERN.match(events[0]["sessionId"])


class TestErrorResponse:
    """Tests for error mapping."""

    def test_known_codes(self):
        assert error_response(InvalidInput("bad")).status == 400
        assert error_response(NotFound("gone")).message == "gone"

    def test_generation_failed_hides_details(self):
        payload = error_response(GenerationFailed("openai said: key sk-123 invalid"))
        assert payload.message == SAFE_ERROR_MESSAGE

    def test_unknown_error_is_internal(self):
        payload = error_response(KeyError("boom"), session_id="session_x")
        assert payload.error == "internal_error"
        assert payload.status == 500
        assert payload.to_dict()["sessionId"] == "session_x"

    def test_request_from_dict(self):
        request = ChatRequest.from_dict({
            "message": "Hi",
            "knowledgeBaseId": "kb_1",
            "sessionId": "session_1",
            "isEmbedded": True,
            "webpageContext": {"url": "https://example.com", "title": "Home", "content": "Welcome"},
        })

        assert request.knowledge_base_id == "kb_1"
        assert request.is_embedded is True
        assert request.webpage_context.title == "Home"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
