"""
Document Chunker Module

Normalizes any accepted input (pasted text, decoded file content, OCR pages,
crawled pages) into overlapping text chunks ready for embedding.

Chunking Strategy:
- Recursive splitting on natural boundaries (paragraphs, sentences, words)
- Chunk length measured in words: 1000 words with a 100-word overlap
- Token ceiling: any chunk whose estimated token count (chars / 3.5) exceeds
  the limit is re-split by characters, so a run of very long "words"
  (minified JSON, base64, URLs) can never produce an oversized chunk
- Metadata: knowledge base, source document, source type, page number or URL
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Literal

from langchain_text_splitters import RecursiveCharacterTextSplitter

from config.settings import get_settings, ChunkingConfig

# Configure logging
logger = logging.getLogger(__name__)


SourceType = Literal["text_content", "file", "crawl"]

SEPARATORS = [
    "\n\n",  # Paragraph breaks (highest priority)
    "\n",    # Line breaks
    ". ",    # Sentences
    "? ",    # Questions
    "! ",    # Exclamations
    "; ",    # Semicolons
    ", ",    # Commas
    " ",     # Words
    "",      # Characters (last resort)
]


def count_words(text: str) -> int:
    return len(text.split())


@dataclass
class Chunk:
    """
    Represents a single chunk of text with metadata.

    Attributes:
        text: The actual text content of the chunk
        knowledge_base_id: Owning knowledge base
        chunk_id: Unique identifier for this chunk
        document_id: Owning source document (None for pasted text)
        source_type: One of text_content, file, crawl
        source: Human readable origin (filename, URL or "text_content")
        chunk_index: Position of this chunk in its source (0-indexed)
        total_chunks: Total number of chunks from this source
        metadata: Additional metadata (page number, url, links, ...)
        embedding: Vector embedding (populated later by EmbeddingService)
    """

    text: str
    knowledge_base_id: str
    chunk_id: str = ""
    document_id: Optional[str] = None
    source_type: SourceType = "text_content"
    source: str = "text_content"
    chunk_index: int = 0
    total_chunks: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None

    def __post_init__(self):
        """Generate chunk_id if not provided."""
        if not self.chunk_id:
            # Deterministic ID from owner + source + index + content
            content_hash = hashlib.md5(
                f"{self.knowledge_base_id}:{self.document_id}:{self.source}:"
                f"{self.chunk_index}:{self.text[:100]}".encode()
            ).hexdigest()[:16]
            self.chunk_id = f"{self.knowledge_base_id}_{self.chunk_index}_{content_hash}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert chunk to dictionary for storage."""
        return {
            "text": self.text,
            "chunk_id": self.chunk_id,
            "knowledge_base_id": self.knowledge_base_id,
            "document_id": self.document_id,
            "source_type": self.source_type,
            "source": self.source,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "metadata": self.metadata,
            "embedding": self.embedding,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        """Create Chunk from dictionary."""
        return cls(
            text=data["text"],
            knowledge_base_id=data["knowledge_base_id"],
            chunk_id=data["chunk_id"],
            document_id=data.get("document_id"),
            source_type=data.get("source_type", "text_content"),
            source=data.get("source", "text_content"),
            chunk_index=data.get("chunk_index", 0),
            total_chunks=data.get("total_chunks", 0),
            metadata=data.get("metadata", {}),
            embedding=data.get("embedding"),
        )


class DocumentChunker:
    """
    Splits text into overlapping word windows with a token ceiling.

    Example:
        chunker = DocumentChunker()
        chunks = chunker.process_text("kb_1", long_text)
        for chunk in chunks:
            print(f"Chunk {chunk.chunk_index}: {chunk.text[:100]}...")
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        config: Optional[ChunkingConfig] = None,
    ):
        """
        Initialize the DocumentChunker.

        Args:
            chunk_size: Target words per chunk (default from config)
            chunk_overlap: Words of overlap between chunks (default from config)
            config: Optional ChunkingConfig instance
        """
        self.config = config or get_settings().chunking

        self.chunk_size = chunk_size or self.config.chunk_size
        self.chunk_overlap = chunk_overlap if chunk_overlap is not None else self.config.chunk_overlap
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")

        self.max_tokens = self.config.max_tokens_per_chunk
        self.token_divisor = self.config.token_estimate_divisor

        self._word_splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            length_function=count_words,
            separators=SEPARATORS,
            keep_separator=True,
        )

        # Character fallback: 90% of the token ceiling, 10% overlap
        max_chars = int(self.max_tokens * self.token_divisor * 0.9)
        self._char_splitter = RecursiveCharacterTextSplitter(
            chunk_size=max_chars,
            chunk_overlap=max_chars // 10,
            length_function=len,
            separators=SEPARATORS,
            keep_separator=True,
        )

        logger.info(
            f"DocumentChunker initialized: chunk_size={self.chunk_size} words, "
            f"overlap={self.chunk_overlap}, max_tokens={self.max_tokens}"
        )

    def estimate_tokens(self, text: str) -> int:
        return int(len(text) / self.token_divisor + 0.999)

    def split_text(self, text: str) -> List[str]:
        """
        Split raw text into chunk strings.

        Returns an empty list for empty or whitespace-only input.
        """
        if not text or not text.strip():
            return []

        words = text.split()
        avg_word_length = sum(len(w) for w in words) / len(words)
        if avg_word_length > 20:
            # Mostly unbroken tokens; word windows would be huge
            logger.debug(f"Average word length {avg_word_length:.1f}, using character chunking")
            pieces = self._char_splitter.split_text(text)
        else:
            pieces = []
            for piece in self._word_splitter.split_text(text):
                if self.estimate_tokens(piece) > self.max_tokens:
                    pieces.extend(self._char_splitter.split_text(piece))
                else:
                    pieces.append(piece)

        return [p.strip() for p in pieces if p.strip()]

    def _build_chunks(
        self,
        knowledge_base_id: str,
        texts: List[str],
        source_type: SourceType,
        source: str,
        document_id: Optional[str],
        metadata: Dict[str, Any],
        start_index: int = 0,
    ) -> List[Chunk]:
        return [
            Chunk(
                text=text,
                knowledge_base_id=knowledge_base_id,
                document_id=document_id,
                source_type=source_type,
                source=source,
                chunk_index=start_index + i,
                metadata=metadata.copy(),
            )
            for i, text in enumerate(texts)
        ]

    @staticmethod
    def _finalize(chunks: List[Chunk]) -> List[Chunk]:
        total = len(chunks)
        for chunk in chunks:
            chunk.total_chunks = total
        return chunks

    def process_text(
        self,
        knowledge_base_id: str,
        text: str,
        source_type: SourceType = "text_content",
        source: str = "text_content",
        document_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Chunk]:
        """
        Chunk a block of text.

        Args:
            knowledge_base_id: Owning knowledge base
            text: Raw text to chunk
            source_type: text_content, file or crawl
            source: Name to record as origin
            document_id: Owning source document, if any
            metadata: Extra metadata copied onto every chunk

        Returns:
            List of Chunk objects
        """
        metadata = dict(metadata or {})
        metadata.setdefault("processed_at", datetime.now(timezone.utc).isoformat())

        chunks = self._build_chunks(
            knowledge_base_id,
            self.split_text(text),
            source_type,
            source,
            document_id,
            metadata,
        )
        logger.debug(f"Created {len(chunks)} chunks from {source}")
        return self._finalize(chunks)

    def process_pages(
        self,
        knowledge_base_id: str,
        document_id: str,
        pages: List[Dict[str, Any]],
        source: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Chunk]:
        """
        Chunk OCR pages, tagging every chunk with its page number.

        Args:
            pages: Dicts with ``page_number`` and ``markdown`` keys

        Returns:
            Chunks across all pages, indexed continuously
        """
        all_chunks: List[Chunk] = []
        for page in pages:
            page_number = page["page_number"]
            page_metadata = dict(metadata or {})
            page_metadata.update({
                "page_number": page_number,
                "source": f"page_{page_number}",
                "processed_at": datetime.now(timezone.utc).isoformat(),
            })
            all_chunks.extend(
                self._build_chunks(
                    knowledge_base_id,
                    self.split_text(page.get("markdown", "")),
                    "file",
                    source,
                    document_id,
                    page_metadata,
                    start_index=len(all_chunks),
                )
            )

        logger.info(f"Created {len(all_chunks)} chunks from {len(pages)} pages of {source}")
        return self._finalize(all_chunks)

    def process_crawl_page(
        self,
        knowledge_base_id: str,
        document_id: str,
        url: str,
        text: str,
        title: str = "",
        links: Optional[List[str]] = None,
        crawled_from: Optional[str] = None,
    ) -> List[Chunk]:
        """Chunk one crawled page, recording its URL and outbound links."""
        metadata = {
            "url": url,
            "title": title,
            "links": list(links or []),
        }
        if crawled_from:
            metadata["crawled_from"] = crawled_from

        return self.process_text(
            knowledge_base_id,
            text,
            source_type="crawl",
            source=url,
            document_id=document_id,
            metadata=metadata,
        )
