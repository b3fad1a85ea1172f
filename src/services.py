"""
Service container.

Builds every service once per process and wires them together. Callers
hold the container and pass it to their request handlers; nothing here is
a module-level singleton.

Usage:
    services = create_services()
    response = services.chat.handle_chat(request, identity)
    services.shutdown()
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Optional

from config.settings import get_settings, Settings
from src.blob_store import BlobStore
from src.chat import ChatOrchestrator
from src.chunker import DocumentChunker
from src.crawler import ApifyCrawlProvider, CrawlCoordinator
from src.embeddings import EmbeddingService
from src.enrichment import EnrichmentService, LinkRanker, RecommendationGenerator
from src.ingestion import IngestionService
from src.knowledge_base import KnowledgeBaseService
from src.llm_service import LLMService
from src.messages import MessageService
from src.ocr import DocumentProcessor, MistralOCRProvider
from src.rag_agent import RAGAgent
from src.repository import BaseRepository, create_repository
from src.vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Long-lived service handles shared by all requests."""
    settings: Settings
    repository: BaseRepository
    blob_store: BlobStore
    embedding_service: EmbeddingService
    vector_store: VectorStore
    llm_service: LLMService
    chunker: DocumentChunker
    document_processor: Optional[DocumentProcessor]
    ingestion: IngestionService
    crawler: Optional[CrawlCoordinator]
    enrichment: EnrichmentService
    rag_agent: Optional[RAGAgent]
    messages: MessageService
    knowledge_bases: KnowledgeBaseService
    chat: ChatOrchestrator
    executor: ThreadPoolExecutor

    def shutdown(self, wait: bool = True) -> None:
        """Stop background enrichment and close HTTP clients."""
        self.executor.shutdown(wait=wait)
        if self.crawler is not None:
            self.crawler.provider.close()
        logger.info("Services shut down")


def create_services(settings: Optional[Settings] = None, **overrides: Any) -> ServiceContainer:
    """
    Build the service graph from settings.

    Any component can be replaced by passing it by name, e.g.
    ``create_services(llm_service=fake_llm, repository=InMemoryRepository())``.
    OCR and crawling are left out when their API keys are missing.
    """
    settings = settings or get_settings()

    def pick(name: str, factory):
        if name in overrides:
            return overrides[name]
        return factory()

    executor = pick("executor", lambda: ThreadPoolExecutor(max_workers=2, thread_name_prefix="enrichment"))
    repository = pick("repository", lambda: create_repository(settings.storage))
    blob_store = pick("blob_store", lambda: BlobStore(settings.storage.blob_store_path))
    embedding_service = pick("embedding_service", lambda: EmbeddingService(config=settings.embedding))
    vector_store = pick(
        "vector_store",
        lambda: VectorStore(embedding_service=embedding_service, config=settings.vector_store),
    )
    llm_service = pick("llm_service", lambda: LLMService(config=settings.llm))
    chunker = pick("chunker", lambda: DocumentChunker(config=settings.chunking))

    def build_processor() -> Optional[DocumentProcessor]:
        if not settings.ocr.mistral_api_key:
            logger.warning("MISTRAL_API_KEY not set; OCR uploads are disabled")
            return None
        return DocumentProcessor(MistralOCRProvider(settings.ocr), blob_store)

    document_processor = pick("document_processor", build_processor)
    ingestion = pick(
        "ingestion",
        lambda: IngestionService(
            repository, vector_store, chunker, blob_store,
            document_processor=document_processor,
            config=settings.chunking,
        ),
    )
    enrichment = pick(
        "enrichment",
        lambda: EnrichmentService(
            repository,
            vector_store,
            LinkRanker(llm_service),
            RecommendationGenerator(llm_service),
            executor=executor,
        ),
    )

    def build_crawler() -> Optional[CrawlCoordinator]:
        if not settings.crawl.apify_api_token:
            logger.warning("APIFY_API_TOKEN not set; website crawling is disabled")
            return None
        return CrawlCoordinator(
            repository,
            ingestion,
            ApifyCrawlProvider(settings.crawl),
            config=settings.crawl,
            enrichment=enrichment,
        )

    crawler = pick("crawler", build_crawler)
    rag_agent = pick(
        "rag_agent",
        lambda: RAGAgent(vector_store, llm_service, llm_config=settings.llm, chat_config=settings.chat),
    )
    messages = pick(
        "messages",
        lambda: MessageService(
            repository,
            retention_days=settings.storage.message_retention_days,
            store_ip_default=settings.chat.store_ip_address,
        ),
    )
    knowledge_bases = pick(
        "knowledge_bases",
        lambda: KnowledgeBaseService(repository, vector_store, blob_store, ingestion),
    )
    chat = pick(
        "chat",
        lambda: ChatOrchestrator(
            repository,
            messages,
            rag_agent,
            llm_service,
            config=settings.chat,
            llm_config=settings.llm,
            max_chunks=settings.retrieval.top_k,
            similarity_threshold=settings.retrieval.similarity_threshold,
        ),
    )

    logger.info(
        f"Services ready: storage={settings.storage.provider}, "
        f"vectors={vector_store.provider}, llm={llm_service.provider_name}, "
        f"ocr={'on' if document_processor else 'off'}, crawl={'on' if crawler else 'off'}"
    )
    return ServiceContainer(
        settings=settings,
        repository=repository,
        blob_store=blob_store,
        embedding_service=embedding_service,
        vector_store=vector_store,
        llm_service=llm_service,
        chunker=chunker,
        document_processor=document_processor,
        ingestion=ingestion,
        crawler=crawler,
        enrichment=enrichment,
        rag_agent=rag_agent,
        messages=messages,
        knowledge_bases=knowledge_bases,
        chat=chat,
        executor=executor,
    )
