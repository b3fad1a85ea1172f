"""
Tests for RAG Agent Module

Tests retrieval, prompt assembly and answer generation of RAGAgent.
"""

import pytest

from config.settings import ChatConfig, LLMConfig
from src.chunker import Chunk
from src.errors import CancellationToken, Cancelled, GenerationFailed
from src.rag_agent import (
    CITATION_RULES,
    NO_CONTEXT_NOTE,
    RAGAgent,
    RAGAnswer,
    WebpageContext,
)
from src.vector_store import SearchResult


def add_chunks(vector_store, kb_id, texts):
    chunks = [
        Chunk(text=text, knowledge_base_id=kb_id, chunk_index=i, source="faq.md")
        for i, text in enumerate(texts)
    ]
    vector_store.upsert_chunks(kb_id, chunks)
    return chunks


class TestWebpageContext:
    """Tests for WebpageContext."""

    def test_from_dict(self):
        page = WebpageContext.from_dict({"url": "https://example.com", "title": "Home", "content": "Hi"})
        assert page.url == "https://example.com"
        assert page.has_content

    def test_from_empty_dict(self):
        assert WebpageContext.from_dict(None) is None
        assert WebpageContext.from_dict({}) is None

    def test_whitespace_content_is_empty(self):
        assert not WebpageContext(url="u", title="t", content="   \n").has_content


class TestSystemPrompt:
    """Tests for system prompt assembly."""

    @pytest.fixture
    def agent(self, vector_store, llm_service):
        return RAGAgent(vector_store, llm_service, llm_config=LLMConfig(),
                        chat_config=ChatConfig(rag_page_content_limit=20))

    @pytest.fixture
    def results(self):
        return [
            SearchResult(Chunk(text="Refunds take five days.", knowledge_base_id="kb_1"), 0.9, 1),
            SearchResult(Chunk(text="Support is open weekdays.", knowledge_base_id="kb_1"), 0.8, 2),
        ]

    def test_sources_are_numbered_in_order(self, agent, results):
        prompt = agent.build_system_prompt(results)

        assert "## Retrieved Knowledge Base Context:" in prompt
        assert "### Source [1]:\nRefunds take five days." in prompt
        assert "### Source [2]:\nSupport is open weekdays." in prompt
        assert prompt.index("Source [1]") < prompt.index("Source [2]")
        assert NO_CONTEXT_NOTE not in prompt

    def test_section_order(self, agent, results):
        page = WebpageContext(url="https://example.com/pricing", title="Pricing", content="Plans")
        prompt = agent.build_system_prompt(results, page, instructions="Answer in French.")

        positions = [
            prompt.index("## Additional Instructions:"),
            prompt.index("## Citation Rules:"),
            prompt.index("## Retrieved Knowledge Base Context:"),
            prompt.index("## Current Webpage Context:"),
        ]
        assert positions == sorted(positions)
        assert "Answer in French." in prompt

    def test_citation_rules_always_present(self, agent):
        assert CITATION_RULES in agent.build_system_prompt([])
        assert "[1,2]" in CITATION_RULES

    def test_no_context_note_when_nothing_to_ground(self, agent):
        prompt = agent.build_system_prompt([])

        assert NO_CONTEXT_NOTE in prompt
        assert "## Retrieved Knowledge Base Context:" not in prompt

    def test_page_alone_suppresses_note(self, agent):
        page = WebpageContext(url="https://example.com", title="Home", content="Welcome")
        prompt = agent.build_system_prompt([], page)

        assert NO_CONTEXT_NOTE not in prompt
        assert "URL: https://example.com" in prompt
        assert "Title: Home" in prompt

    def test_page_content_is_truncated(self, agent):
        page = WebpageContext(url="u", title="t", content="x" * 100)
        prompt = agent.build_system_prompt([], page)

        assert "Content: " + "x" * 20 in prompt
        assert "x" * 21 not in prompt

    def test_blank_instructions_are_skipped(self, agent):
        assert "## Additional Instructions:" not in agent.build_system_prompt([], instructions="  ")

    def test_build_messages_keeps_history_order(self):
        history = [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
        ]
        messages = RAGAgent.build_messages("system", "Question?", history)

        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[-1]["content"] == "Question?"


class TestGenerateAnswer:
    """Tests for generate_answer and stream_answer."""

    def test_grounded_answer(self, rag_agent, vector_store, llm_provider):
        add_chunks(vector_store, "kb_1", ["Refunds take five days."])

        result = rag_agent.generate_answer("How long do refunds take?", knowledge_base_id="kb_1")

        assert isinstance(result, RAGAnswer)
        assert result.answer == "This is a test answer [1]."
        assert result.model == "fake-llm"
        assert len(result.sources) == 1
        assert result.sources[0]["text"] == "Refunds take five days."
        assert result.metadata["chunks_used"] == 1
        assert result.metadata["retrieval_degraded"] is False
        assert 0.0 <= result.metadata["confidence"] <= 1.0

        call = llm_provider.calls[0]
        assert call["temperature"] == 0.2
        assert call["max_tokens"] == 5000
        assert "Refunds take five days." in call["messages"][0]["content"]

    def test_zero_chunks_gives_note_and_no_sources(self, rag_agent, llm_provider):
        result = rag_agent.generate_answer("Anything?", knowledge_base_id="kb_empty")

        assert result.sources is None
        assert "sources" not in result.to_dict()
        assert NO_CONTEXT_NOTE in llm_provider.calls[0]["messages"][0]["content"]

    def test_threshold_excludes_weak_chunks(self, rag_agent, vector_store):
        add_chunks(vector_store, "kb_1", ["Refunds take five days."])

        result = rag_agent.generate_answer("q", knowledge_base_id="kb_1", similarity_threshold=1.5)

        assert result.sources is None

    def test_retrieval_failure_still_answers(self, rag_agent, vector_store, embedding_provider, llm_provider):
        """A failing vector search degrades to an ungrounded answer."""
        add_chunks(vector_store, "kb_1", ["Refunds take five days."])
        embedding_provider.fail = True

        result = rag_agent.generate_answer("How long?", knowledge_base_id="kb_1")

        assert result.answer == "This is a test answer [1]."
        assert result.sources is None
        assert result.metadata["retrieval_degraded"] is True
        assert NO_CONTEXT_NOTE in llm_provider.calls[0]["messages"][0]["content"]

    def test_misconfigured_embedding_still_answers(self, rag_agent, vector_store, embedding_provider):
        add_chunks(vector_store, "kb_1", ["Refunds take five days."])

        def missing_key(text):
            raise ValueError("OpenAI API key not found")

        embedding_provider.embed_text = missing_key

        result = rag_agent.generate_answer("How long?", knowledge_base_id="kb_1")

        assert result.answer == "This is a test answer [1]."
        assert result.sources is None
        assert result.metadata["retrieval_degraded"] is True

    def test_generation_failure_propagates(self, rag_agent, llm_provider):
        llm_provider.fail = RuntimeError("model down")

        with pytest.raises(GenerationFailed):
            rag_agent.generate_answer("Hi", knowledge_base_id="kb_1")

    def test_cancelled_before_generation(self, rag_agent, llm_provider):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(Cancelled):
            rag_agent.generate_answer("Hi", knowledge_base_id="kb_1", cancel_token=token)
        assert llm_provider.calls == []

    def test_history_is_forwarded(self, rag_agent, llm_provider):
        history = [{"role": "user", "content": "Earlier"}, {"role": "assistant", "content": "Reply"}]

        rag_agent.generate_answer("Now?", history=history)

        roles = [m["role"] for m in llm_provider.calls[0]["messages"]]
        assert roles == ["system", "user", "assistant", "user"]

    def test_stream_answer_exposes_sources_first(self, rag_agent, vector_store):
        add_chunks(vector_store, "kb_1", ["Refunds take five days."])

        stream = rag_agent.stream_answer("Refunds?", knowledge_base_id="kb_1")

        assert stream.sources[0]["text"] == "Refunds take five days."
        assert "".join(stream).strip() == "This is a test answer [1]."


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
