"""
Configuration settings for the knowledge-base chat service.

This module handles all configuration management using environment variables.
No hardcoded secrets - everything is configurable via .env file.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Literal, Optional
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EmbeddingConfig:
    """Configuration for embedding models."""

    provider: Literal["local", "openai"] = "local"
    local_model: str = "all-MiniLM-L6-v2"
    openai_model: str = "text-embedding-3-small"
    openai_api_key: Optional[str] = None

    # Transient provider failures are retried with exponential backoff
    max_retries: int = 3
    retry_backoff: float = 0.5

    # all-MiniLM-L6-v2: 384
    # text-embedding-3-small: 1536
    @property
    def dimension(self) -> int:
        """Return embedding dimension based on selected model."""
        if self.provider == "local":
            model_dimensions = {
                "all-MiniLM-L6-v2": 384,
                "all-mpnet-base-v2": 768,
                "paraphrase-MiniLM-L6-v2": 384,
            }
            return model_dimensions.get(self.local_model, 384)
        else:
            model_dimensions = {
                "text-embedding-3-small": 1536,
                "text-embedding-3-large": 3072,
                "text-embedding-ada-002": 1536,
            }
            return model_dimensions.get(self.openai_model, 1536)


@dataclass
class LLMConfig:
    """Configuration for LLM providers."""

    provider: Literal["ollama", "openai", "gemini", "mistral"] = "openai"

    # Ollama settings
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3"

    # OpenAI settings
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4.1-mini"

    # Gemini settings
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"

    # Mistral settings
    mistral_api_key: Optional[str] = None
    mistral_model: str = "mistral-small-latest"

    # Generation defaults for grounded answers
    temperature: float = 0.2
    max_tokens: int = 5000


@dataclass
class VectorStoreConfig:
    """Configuration for the embedding store."""

    provider: Literal["faiss", "mongodb"] = "faiss"

    # MongoDB settings
    mongodb_uri: Optional[str] = None
    mongodb_database: str = "knowledge_chat"
    mongodb_collection: str = "chunks"
    mongodb_vector_index: str = "vector_index"

    # FAISS settings (one index per knowledge base under this directory)
    faiss_index_path: str = "./data/faiss_index"


@dataclass
class ChunkingConfig:
    """Configuration for document chunking."""

    chunk_size: int = 1000  # Words per chunk
    chunk_overlap: int = 100  # Words shared between neighbouring chunks
    max_tokens_per_chunk: int = 8000
    token_estimate_divisor: float = 3.5  # ~3.5 characters per token
    max_chunks_per_knowledge_base: int = 5000


@dataclass
class RetrievalConfig:
    """Configuration for retrieval settings."""

    top_k: int = 5  # Number of chunks to retrieve
    similarity_threshold: float = 0.0  # Minimum cosine similarity kept


@dataclass
class StorageConfig:
    """Configuration for records, blobs and retention."""

    provider: Literal["memory", "mongodb"] = "memory"
    mongodb_uri: Optional[str] = None
    mongodb_database: str = "knowledge_chat"
    blob_store_path: str = "./data/blobs"
    message_retention_days: int = 90


@dataclass
class OCRConfig:
    """Configuration for the document processor."""

    mistral_api_key: Optional[str] = None
    model: str = "mistral-ocr-latest"
    include_images: bool = True
    max_retries: int = 2
    retry_backoff: float = 1.0


@dataclass
class CrawlConfig:
    """Configuration for the external crawl provider."""

    apify_api_token: Optional[str] = None
    actor_id: str = "apify~website-content-crawler"
    base_url: str = "https://api.apify.com/v2"
    max_pages: int = 25
    stuck_after_minutes: int = 30
    min_page_chars: int = 50
    request_timeout: float = 30.0


@dataclass
class ChatConfig:
    """Configuration for the chat orchestrator."""

    max_message_length: int = 10000
    history_turns: int = 10
    page_content_limit: int = 50000  # Plain-context path
    rag_page_content_limit: int = 10000  # Webpage section of the RAG prompt
    store_ip_address: bool = False


@dataclass
class Settings:
    """
    Main settings class that aggregates all configurations.

    Usage:
        settings = get_settings()
        print(settings.embedding.provider)
        print(settings.chat.max_message_length)
    """

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    vector_store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ocr: OCRConfig = field(default_factory=OCRConfig)
    crawl: CrawlConfig = field(default_factory=CrawlConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)

    # Paths
    project_root: Path = field(default_factory=lambda: Path(__file__).parent.parent)
    data_dir: Path = field(default_factory=lambda: Path(__file__).parent.parent / "data")

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Create Settings instance from environment variables.

        This is the primary way to instantiate Settings.
        """
        embedding = EmbeddingConfig(
            provider=os.getenv("EMBEDDING_PROVIDER", "local"),  # type: ignore
            local_model=os.getenv("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            openai_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            max_retries=int(os.getenv("EMBEDDING_MAX_RETRIES", "3")),
            retry_backoff=float(os.getenv("EMBEDDING_RETRY_BACKOFF", "0.5")),
        )

        llm = LLMConfig(
            provider=os.getenv("LLM_PROVIDER", "openai"),  # type: ignore
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "llama3"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_LLM_MODEL", "gpt-4.1-mini"),
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            mistral_api_key=os.getenv("MISTRAL_API_KEY"),
            mistral_model=os.getenv("MISTRAL_MODEL", "mistral-small-latest"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.2")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "5000")),
        )

        vector_store = VectorStoreConfig(
            provider=os.getenv("VECTOR_STORE_PROVIDER", "faiss"),  # type: ignore
            mongodb_uri=os.getenv("MONGODB_URI"),
            mongodb_database=os.getenv("MONGODB_DATABASE", "knowledge_chat"),
            mongodb_collection=os.getenv("MONGODB_COLLECTION", "chunks"),
            mongodb_vector_index=os.getenv("MONGODB_VECTOR_INDEX", "vector_index"),
            faiss_index_path=os.getenv("FAISS_INDEX_PATH", "./data/faiss_index"),
        )

        chunking = ChunkingConfig(
            chunk_size=int(os.getenv("CHUNK_SIZE", "1000")),
            chunk_overlap=int(os.getenv("CHUNK_OVERLAP", "100")),
            max_tokens_per_chunk=int(os.getenv("MAX_TOKENS_PER_CHUNK", "8000")),
            max_chunks_per_knowledge_base=int(os.getenv("MAX_CHUNKS_PER_KNOWLEDGE_BASE", "5000")),
        )

        retrieval = RetrievalConfig(
            top_k=int(os.getenv("TOP_K_RESULTS", "5")),
            similarity_threshold=float(os.getenv("SIMILARITY_THRESHOLD", "0.0")),
        )

        storage = StorageConfig(
            provider=os.getenv("STORAGE_PROVIDER", "memory"),  # type: ignore
            mongodb_uri=os.getenv("MONGODB_URI"),
            mongodb_database=os.getenv("MONGODB_DATABASE", "knowledge_chat"),
            blob_store_path=os.getenv("BLOB_STORE_PATH", "./data/blobs"),
            message_retention_days=int(os.getenv("MESSAGE_RETENTION_DAYS", "90")),
        )

        ocr = OCRConfig(
            mistral_api_key=os.getenv("MISTRAL_API_KEY"),
            model=os.getenv("MISTRAL_OCR_MODEL", "mistral-ocr-latest"),
        )

        crawl = CrawlConfig(
            apify_api_token=os.getenv("APIFY_API_TOKEN"),
            max_pages=int(os.getenv("CRAWL_MAX_PAGES", "25")),
            stuck_after_minutes=int(os.getenv("CRAWL_STUCK_AFTER_MINUTES", "30")),
        )

        chat = ChatConfig(
            max_message_length=int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "10000")),
            history_turns=int(os.getenv("CHAT_HISTORY_TURNS", "10")),
            store_ip_address=_env_bool("CHAT_STORE_IP_ADDRESS", False),
        )

        return cls(
            embedding=embedding,
            llm=llm,
            vector_store=vector_store,
            chunking=chunking,
            retrieval=retrieval,
            storage=storage,
            ocr=ocr,
            crawl=crawl,
            chat=chat,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging using the configured level."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# Singleton pattern for settings
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the singleton Settings instance.

    Returns:
        Settings: The application settings loaded from environment.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment (useful for testing).

    Returns:
        Settings: Fresh settings instance.
    """
    global _settings
    load_dotenv(override=True)
    _settings = Settings.from_env()
    return _settings
