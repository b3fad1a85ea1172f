"""
Shared fixtures: deterministic embedding and LLM providers plus a fully
wired in-memory pipeline. No test in the default suite reaches a network.
"""

import pytest

from config.settings import ChatConfig, ChunkingConfig, CrawlConfig, EmbeddingConfig, LLMConfig
from src.blob_store import BlobStore
from src.chunker import DocumentChunker
from src.embeddings import EmbeddingService
from src.ingestion import IngestionService
from src.llm_service import LLMService
from src.messages import MessageService
from src.rag_agent import RAGAgent
from src.repository import InMemoryRepository
from src.vector_store import FAISSVectorStore, VectorStore
from tests.fakes import FakeEmbeddingProvider, FakeLLMProvider


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_service(embedding_provider):
    return EmbeddingService(
        config=EmbeddingConfig(max_retries=0, retry_backoff=0.0),
        provider_instance=embedding_provider,
    )


@pytest.fixture
def vector_store(embedding_service):
    return VectorStore(embedding_service=embedding_service, backend=FAISSVectorStore())


@pytest.fixture
def llm_provider():
    return FakeLLMProvider()


@pytest.fixture
def llm_service(llm_provider):
    return LLMService(config=LLMConfig(), provider_instance=llm_provider)


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def blob_store(tmp_path):
    return BlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def chunking_config():
    return ChunkingConfig(chunk_size=50, chunk_overlap=5)


@pytest.fixture
def chunker(chunking_config):
    return DocumentChunker(config=chunking_config)


@pytest.fixture
def ingestion(repository, vector_store, chunker, blob_store, chunking_config):
    return IngestionService(repository, vector_store, chunker, blob_store, config=chunking_config)


@pytest.fixture
def chat_config():
    return ChatConfig()


@pytest.fixture
def crawl_config():
    return CrawlConfig(apify_api_token="test-token", min_page_chars=10)


@pytest.fixture
def rag_agent(vector_store, llm_service, chat_config):
    return RAGAgent(vector_store, llm_service, llm_config=LLMConfig(), chat_config=chat_config)


@pytest.fixture
def message_service(repository):
    return MessageService(repository)
