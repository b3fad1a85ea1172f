"""
Knowledge Base Chat - Core Source Module

This module contains the pipeline components:
- DocumentChunker: Word-based segmentation with metadata preservation
- EmbeddingService: Embedding generation (local vs cloud) with retries
- VectorStore: Per-knowledge-base vector search (FAISS/MongoDB)
- DocumentProcessor: OCR of uploaded documents into stored pages
- IngestionService: Text, file and crawl ingestion with partial-failure reports
- CrawlCoordinator: Website crawl lifecycle and state machine
- LLMService: LLM provider abstraction (Ollama/OpenAI/Gemini/Mistral)
- RAGAgent: Retrieval + grounded generation with citations
- ChatOrchestrator: Per-turn chat decisions, auth and persistence
"""

from .chunker import DocumentChunker, Chunk
from .embeddings import EmbeddingService
from .vector_store import VectorStore, SearchResult, filter_by_threshold
from .ocr import DocumentProcessor, MistralOCRProvider
from .ingestion import IngestionService, IngestionReport
from .crawler import CrawlCoordinator, ApifyCrawlProvider
from .llm_service import LLMService, LLMResponse
from .rag_agent import RAGAgent, RAGAnswer, WebpageContext
from .chat import ChatOrchestrator, ChatRequest, ChatResponse, ChatErrorResponse, Identity
from .knowledge_base import KnowledgeBaseService
from .messages import MessageService, generate_session_id
from .services import ServiceContainer, create_services

__all__ = [
    # Ingestion
    "DocumentChunker",
    "Chunk",
    "DocumentProcessor",
    "MistralOCRProvider",
    "IngestionService",
    "IngestionReport",
    "CrawlCoordinator",
    "ApifyCrawlProvider",
    # Retrieval
    "EmbeddingService",
    "VectorStore",
    "SearchResult",
    "filter_by_threshold",
    # Answering
    "LLMService",
    "LLMResponse",
    "RAGAgent",
    "RAGAnswer",
    "WebpageContext",
    # Chat
    "ChatOrchestrator",
    "ChatRequest",
    "ChatResponse",
    "ChatErrorResponse",
    "Identity",
    "MessageService",
    "generate_session_id",
    "KnowledgeBaseService",
    # Wiring
    "ServiceContainer",
    "create_services",
]
