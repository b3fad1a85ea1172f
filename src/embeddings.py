"""
Embedding Service Module

Provides an abstraction layer for embedding generation, supporting both:
- Local: Sentence Transformers (all-MiniLM-L6-v2) - Free, no API key needed
- Cloud: OpenAI (text-embedding-3-small) - Requires API key

The same service instance embeds chunks at ingestion and queries at search
time, so both sides always share one model and one dimensionality.

Embedding Dimensions:
- all-MiniLM-L6-v2: 384 dimensions
- all-mpnet-base-v2: 768 dimensions
- text-embedding-3-small: 1536 dimensions
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional
import numpy as np

from config.settings import get_settings, EmbeddingConfig
from huggingface_hub import login

from src.errors import CancellationToken, Cancelled, RetrievalError
from src.retry import call_with_retry

if hf_token := os.getenv("HF_TOKEN"):
    login(token=hf_token)

# Configure logging
logger = logging.getLogger(__name__)


class BaseEmbeddingProvider(ABC):
    """
    Abstract base class for embedding providers.

    All embedding providers must implement:
    - embed_text: Embed a single text string
    - embed_batch: Embed multiple texts efficiently
    - dimension: Return the embedding dimension
    """

    @abstractmethod
    def embed_text(self, text: str) -> List[float]:
        """Generate embedding for a single text."""
        pass

    @abstractmethod
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts, preserving order."""
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimension of embeddings produced."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the name of the embedding model."""
        pass


class LocalEmbeddingProvider(BaseEmbeddingProvider):
    """
    Local embedding provider using Sentence Transformers.

    Models:
    - all-MiniLM-L6-v2: Fast, 384 dims (default)
    - all-mpnet-base-v2: Better quality, 768 dims
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self._model_name = model_name
        self._model = None
        self._dimension = None

        logger.info(f"Initializing LocalEmbeddingProvider with model: {model_name}")

    def _load_model(self):
        """Lazy load the model (only when first needed)."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise ImportError(
                    "sentence-transformers is required for local embeddings. "
                    "Install with: pip install sentence-transformers"
                )

            logger.info(f"Loading sentence-transformers model: {self._model_name}")
            self._model = SentenceTransformer(self._model_name)
            self._dimension = self._model.get_sentence_embedding_dimension()
            logger.info(f"Model loaded. Embedding dimension: {self._dimension}")

    def embed_text(self, text: str) -> List[float]:
        self._load_model()
        embedding = self._model.encode(text, convert_to_numpy=True)
        return embedding.tolist()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self._load_model()

        if not texts:
            return []

        logger.debug(f"Embedding batch of {len(texts)} texts")

        embeddings = self._model.encode(
            texts,
            convert_to_numpy=True,
            show_progress_bar=len(texts) > 10,
            batch_size=32,
        )

        return embeddings.tolist()

    @property
    def dimension(self) -> int:
        self._load_model()
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """
    OpenAI embedding provider using the embeddings API.

    Models:
    - text-embedding-3-small: 1536 dims (default)
    - text-embedding-3-large: 3072 dims
    - text-embedding-ada-002: 1536 dims (legacy)
    """

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    # Inputs per embeddings request
    BATCH_SIZE = 100

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
    ):
        self._model_name = model_name
        self._api_key = api_key
        self._client = None

        if model_name not in self.MODEL_DIMENSIONS:
            logger.warning(
                f"Unknown model {model_name}, assuming 1536 dimensions. "
                f"Known models: {list(self.MODEL_DIMENSIONS.keys())}"
            )

        logger.info(f"Initializing OpenAIEmbeddingProvider with model: {model_name}")

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            try:
                from openai import OpenAI
            except ImportError:
                raise ImportError(
                    "openai package is required for OpenAI embeddings. "
                    "Install with: pip install openai"
                )

            api_key = self._api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError(
                    "OpenAI API key not found. Set OPENAI_API_KEY environment "
                    "variable or pass api_key parameter."
                )

            self._client = OpenAI(api_key=api_key)
            logger.info("OpenAI client initialized")

        return self._client

    @staticmethod
    def _clean(text: str) -> str:
        return text.replace("\n", " ")

    def embed_text(self, text: str) -> List[float]:
        client = self._get_client()
        response = client.embeddings.create(
            input=self._clean(text),
            model=self._model_name,
        )
        return response.data[0].embedding

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        client = self._get_client()
        logger.debug(f"Embedding batch of {len(texts)} texts via OpenAI")

        all_embeddings = []
        for i in range(0, len(texts), self.BATCH_SIZE):
            batch = [self._clean(t) for t in texts[i:i + self.BATCH_SIZE]]
            response = client.embeddings.create(
                input=batch,
                model=self._model_name,
            )
            # Sort by index to maintain order
            sorted_data = sorted(response.data, key=lambda x: x.index)
            all_embeddings.extend(item.embedding for item in sorted_data)

        return all_embeddings

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self._model_name, 1536)

    @property
    def model_name(self) -> str:
        return self._model_name


class EmbeddingService:
    """
    Main embedding service that provides a unified interface.

    Provider calls are retried with exponential backoff; once retries are
    exhausted the failure surfaces as ``RetrievalError`` so callers can tell
    a failed call apart from "no match".

    Example:
        service = EmbeddingService()  # Uses config
        embedding = service.embed_text("Hello world")
        embeddings = service.embed_batch(["text1", "text2"])
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        config: Optional[EmbeddingConfig] = None,
        provider_instance: Optional[BaseEmbeddingProvider] = None,
    ):
        """
        Initialize the embedding service.

        Args:
            provider: "local" or "openai" (default from config)
            config: Optional EmbeddingConfig instance
            provider_instance: Pre-built provider (overrides ``provider``)
        """
        self.config = config or get_settings().embedding
        self._provider_name = provider or self.config.provider

        if provider_instance is not None:
            self._provider = provider_instance
        elif self._provider_name == "local":
            self._provider = LocalEmbeddingProvider(
                model_name=self.config.local_model
            )
        elif self._provider_name == "openai":
            self._provider = OpenAIEmbeddingProvider(
                model_name=self.config.openai_model,
                api_key=self.config.openai_api_key,
            )
        else:
            raise ValueError(f"Unknown embedding provider: {self._provider_name}")

        logger.info(
            f"EmbeddingService initialized with {self._provider_name} provider "
            f"({self._provider.model_name})"
        )

    def _call(self, func, description: str, cancel_token: Optional[CancellationToken] = None):
        try:
            return call_with_retry(
                func,
                max_retries=self.config.max_retries,
                backoff=self.config.retry_backoff,
                give_up_on=(ImportError, ValueError),
                description=description,
                cancel_token=cancel_token,
            )
        except (ImportError, ValueError):
            # Configuration problems are not transient
            raise
        except (RetrievalError, Cancelled):
            raise
        except Exception as e:
            raise RetrievalError(f"Embedding provider failed: {e}") from e

    def embed_text(
        self,
        text: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[float]:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: If text is empty
            RetrievalError: If the provider keeps failing
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        return self._call(
            lambda: self._provider.embed_text(text),
            "embed_text",
            cancel_token,
        )

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Empty texts are filtered out before the provider call.
        """
        valid_texts = [t for t in texts if t and t.strip()]

        if not valid_texts:
            return []

        return self._call(
            lambda: self._provider.embed_batch(valid_texts),
            f"embed_batch({len(valid_texts)})",
        )

    def embed_query(
        self,
        query: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[float]:
        """Embed a user query for retrieval."""
        return self.embed_text(query, cancel_token=cancel_token)

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def provider_name(self) -> str:
        return self._provider_name


def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Returns:
        Similarity score between -1 and 1 (1 = identical)
    """
    arr1 = np.array(vec1)
    arr2 = np.array(vec2)

    dot_product = np.dot(arr1, arr2)
    norm1 = np.linalg.norm(arr1)
    norm2 = np.linalg.norm(arr2)

    if norm1 == 0 or norm2 == 0:
        return 0.0

    return float(dot_product / (norm1 * norm2))
