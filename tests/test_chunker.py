"""
Tests for DocumentChunker module.

Run with: pytest tests/test_chunker.py -v
"""

import pytest

from config.settings import ChunkingConfig
from src.chunker import DocumentChunker, Chunk, count_words


class TestChunk:
    """Tests for Chunk dataclass."""

    def test_chunk_creation(self):
        """Test basic chunk creation."""
        chunk = Chunk(
            text="This is a test chunk.",
            knowledge_base_id="kb_1",
            chunk_id="test_0_abc123",
            source="test.pdf",
            chunk_index=0,
            total_chunks=5,
        )

        assert chunk.text == "This is a test chunk."
        assert chunk.knowledge_base_id == "kb_1"
        assert chunk.source == "test.pdf"
        assert chunk.chunk_index == 0
        assert chunk.total_chunks == 5
        assert chunk.source_type == "text_content"
        assert chunk.document_id is None

    def test_chunk_auto_id(self):
        """Test automatic chunk ID generation."""
        chunk = Chunk(
            text="Test content for ID generation.",
            knowledge_base_id="kb_1",
            source="document.pdf",
            chunk_index=3,
        )

        assert chunk.chunk_id.startswith("kb_1_3_")

    def test_chunk_id_is_deterministic(self):
        """Same owner, source, index and text give the same ID."""
        a = Chunk(text="Same text", knowledge_base_id="kb_1", document_id="d1", chunk_index=0)
        b = Chunk(text="Same text", knowledge_base_id="kb_1", document_id="d1", chunk_index=0)
        c = Chunk(text="Same text", knowledge_base_id="kb_2", document_id="d1", chunk_index=0)

        assert a.chunk_id == b.chunk_id
        assert a.chunk_id != c.chunk_id

    def test_chunk_from_dict(self):
        """Test chunk deserialization."""
        data = {
            "text": "Restored text",
            "knowledge_base_id": "kb_1",
            "chunk_id": "restored_id",
            "document_id": "doc_1",
            "source_type": "file",
            "source": "restored.pdf",
            "chunk_index": 2,
            "total_chunks": 10,
            "metadata": {"page_number": 3},
        }

        chunk = Chunk.from_dict(data)

        assert chunk.text == "Restored text"
        assert chunk.chunk_id == "restored_id"
        assert chunk.source_type == "file"
        assert chunk.metadata["page_number"] == 3
        assert chunk.to_dict()["document_id"] == "doc_1"


class TestDocumentChunker:
    """Tests for DocumentChunker class."""

    @pytest.fixture
    def chunker(self):
        """Create a chunker with small chunk size for testing."""
        return DocumentChunker(chunk_size=20, chunk_overlap=5, config=ChunkingConfig())

    def test_chunker_initialization(self, chunker):
        """Test chunker initialization."""
        assert chunker.chunk_size == 20
        assert chunker.chunk_overlap == 5

    def test_overlap_must_be_smaller_than_size(self):
        """Test invalid overlap is rejected."""
        with pytest.raises(ValueError):
            DocumentChunker(chunk_size=10, chunk_overlap=10, config=ChunkingConfig())

    def test_empty_text_yields_no_chunks(self, chunker):
        """Empty and whitespace-only input produce zero chunks."""
        assert chunker.process_text("kb_1", "") == []
        assert chunker.process_text("kb_1", "   \n\t  ") == []

    def test_short_text_single_chunk(self, chunker):
        """Text under the word limit stays in one chunk."""
        chunks = chunker.process_text("kb_1", "Refunds are processed within five days.")

        assert len(chunks) == 1
        assert chunks[0].total_chunks == 1
        assert chunks[0].source_type == "text_content"
        assert "processed_at" in chunks[0].metadata

    def test_long_text_respects_word_limit(self, chunker):
        """Every chunk stays within the configured word count."""
        text = " ".join(f"word{i}" for i in range(200))
        chunks = chunker.process_text("kb_1", text)

        assert len(chunks) > 1
        assert all(count_words(c.text) <= 20 for c in chunks)
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert all(c.total_chunks == len(chunks) for c in chunks)

    def test_chunks_overlap(self, chunker):
        """Consecutive chunks share words."""
        text = " ".join(f"word{i}" for i in range(60))
        chunks = chunker.process_text("kb_1", text)

        first_words = set(chunks[0].text.split())
        second_words = set(chunks[1].text.split())
        assert first_words & second_words

    def test_long_unbroken_tokens_use_character_split(self):
        """Text with very long words is split by characters under the token ceiling."""
        config = ChunkingConfig(max_tokens_per_chunk=100)
        chunker = DocumentChunker(chunk_size=1000, chunk_overlap=100, config=config)
        text = " ".join(["x" * 50] * 40)

        chunks = chunker.process_text("kb_1", text)

        assert len(chunks) > 1
        assert all(chunker.estimate_tokens(c.text) <= 100 for c in chunks)

    def test_process_pages_tags_page_numbers(self, chunker):
        """OCR pages produce file chunks tagged with their page."""
        pages = [
            {"page_number": 1, "markdown": "# Intro\n\nWelcome to the guide."},
            {"page_number": 2, "markdown": "## Setup\n\nInstall the package."},
        ]

        chunks = chunker.process_pages("kb_1", "doc_1", pages, source="guide.pdf")

        assert [c.metadata["page_number"] for c in chunks] == [1, 2]
        assert chunks[1].metadata["source"] == "page_2"
        assert all(c.source_type == "file" for c in chunks)
        assert all(c.document_id == "doc_1" for c in chunks)
        assert [c.chunk_index for c in chunks] == [0, 1]

    def test_process_crawl_page_metadata(self, chunker):
        """Crawl chunks carry URL, title and outbound links."""
        chunks = chunker.process_crawl_page(
            "kb_1",
            "doc_1",
            url="https://example.com/pricing",
            text="Plans start at ten dollars a month.",
            title="Pricing",
            links=["https://example.com/contact"],
            crawled_from="https://example.com",
        )

        assert len(chunks) == 1
        chunk = chunks[0]
        assert chunk.source_type == "crawl"
        assert chunk.metadata["url"] == "https://example.com/pricing"
        assert chunk.metadata["title"] == "Pricing"
        assert chunk.metadata["links"] == ["https://example.com/contact"]
        assert chunk.metadata["crawled_from"] == "https://example.com"

    def test_estimate_tokens(self, chunker):
        """Token estimate is characters / 3.5 rounded up."""
        assert chunker.estimate_tokens("a" * 7) == 2
        assert chunker.estimate_tokens("a" * 8) == 3


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
