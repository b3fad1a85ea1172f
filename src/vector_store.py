"""
Vector Store Module

Persists text chunks with their embeddings and answers nearest-neighbour
queries scoped to one knowledge base. Supports two backends:
- FAISS: Local, one index per knowledge base, persisted to a directory
- MongoDB Atlas: Production, single collection with a knowledge_base_id filter

Schema (stored per chunk):
- chunk_id: Unique identifier
- knowledge_base_id / document_id: Ownership
- text: Original text content
- embedding: Vector representation
- source_type: text_content | file | crawl
- metadata: Additional info (page number, url, links, ...)
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Dict, Any
import numpy as np

from config.settings import get_settings, VectorStoreConfig
from src.chunker import Chunk
from src.embeddings import EmbeddingService
from src.errors import CancellationToken, Cancelled, RetrievalError, check_cancelled

# Configure logging
logger = logging.getLogger(__name__)


class SearchResult:
    """
    Represents a single search result.

    Attributes:
        chunk: The retrieved Chunk object
        similarity: Cosine similarity to the query (higher is better)
        rank: Position in results (1-indexed)
    """

    def __init__(self, chunk: Chunk, similarity: float, rank: int = 0):
        self.chunk = chunk
        self.similarity = similarity
        self.rank = rank

    @property
    def score(self) -> float:
        return self.similarity

    def __repr__(self) -> str:
        return (
            f"SearchResult(source='{self.chunk.source}', "
            f"similarity={self.similarity:.4f}, rank={self.rank})"
        )

    def to_source(self) -> Dict[str, Any]:
        """Shape used in answers: text, similarity, metadata and origin."""
        metadata = dict(self.chunk.metadata)
        return {
            "text": self.chunk.text,
            "similarity": self.similarity,
            "metadata": metadata,
            "document_id": self.chunk.document_id,
            "source_type": self.chunk.source_type,
            "source": self.chunk.source,
            "url": metadata.get("url"),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk": self.chunk.to_dict(),
            "similarity": self.similarity,
            "rank": self.rank,
        }


def filter_by_threshold(results: List[SearchResult], threshold: float) -> List[SearchResult]:
    """
    Keep results whose similarity is at least ``threshold``.

    Output is ordered by similarity descending and re-ranked from 1.
    """
    kept = [r for r in results if r.similarity >= threshold]
    kept.sort(key=lambda r: r.similarity, reverse=True)
    for rank, result in enumerate(kept, 1):
        result.rank = rank
    return kept


class BaseVectorStore(ABC):
    """
    Abstract base class for vector store backends.

    Every operation is scoped to one knowledge base.
    """

    @abstractmethod
    def add_chunks(self, knowledge_base_id: str, chunks: List[Chunk]) -> int:
        """Insert or replace chunks (must have embeddings). Returns count written."""
        pass

    @abstractmethod
    def search(
        self,
        knowledge_base_id: str,
        query_embedding: List[float],
        top_k: int = 5,
    ) -> List[SearchResult]:
        """Return up to ``top_k`` nearest chunks, similarity descending."""
        pass

    @abstractmethod
    def delete_for_knowledge_base(self, knowledge_base_id: str) -> int:
        pass

    @abstractmethod
    def delete_for_document(self, knowledge_base_id: str, document_id: str) -> int:
        pass

    @abstractmethod
    def count(self, knowledge_base_id: str, document_id: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def list_chunks(self, knowledge_base_id: str, limit: Optional[int] = None) -> List[Chunk]:
        """Return stored chunks (without embeddings) for a knowledge base."""
        pass


class _FAISSIndex:
    """FAISS index plus chunk payloads for a single knowledge base."""

    def __init__(self, dimension: int):
        import faiss

        self.dimension = dimension
        self.index = faiss.IndexFlatIP(dimension)
        self.chunks: List[Chunk] = []

    @staticmethod
    def normalize(vectors: np.ndarray) -> np.ndarray:
        """Normalize vectors so inner product equals cosine similarity."""
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1  # Avoid division by zero
        return vectors / norms

    def add(self, chunks: List[Chunk]) -> None:
        vectors = np.array([c.embedding for c in chunks], dtype=np.float32)
        self.index.add(self.normalize(vectors))
        self.chunks.extend(chunks)

    def retain(self, keep: List[int]) -> None:
        """
        Keep only the chunks at the given positions.

        Vectors are read back from the index itself, so this works for
        indexes loaded from disk where payloads carry no embeddings.
        """
        import faiss

        vectors = self.index.reconstruct_n(0, self.index.ntotal) if self.index.ntotal else None
        chunks = self.chunks

        self.index = faiss.IndexFlatIP(self.dimension)
        self.chunks = [chunks[i] for i in keep]
        if keep:
            self.index.add(np.ascontiguousarray(vectors[keep], dtype=np.float32))


class FAISSVectorStore(BaseVectorStore):
    """
    FAISS-based vector store for local development.

    Each knowledge base gets its own exact inner-product index, so
    similarity search is naturally scoped and the vector dimension is fixed
    per knowledge base by the first chunk written to it.
    """

    def __init__(self, index_path: Optional[str] = None):
        """
        Args:
            index_path: Directory to persist indexes to (optional)
        """
        self.index_path = Path(index_path) if index_path else None
        self._indexes: Dict[str, _FAISSIndex] = {}
        self._lock = threading.RLock()

        try:
            import faiss  # noqa: F401
        except ImportError:
            raise ImportError(
                "faiss-cpu is required for FAISS vector store. "
                "Install with: pip install faiss-cpu"
            )

        logger.info(f"FAISSVectorStore initialized: index_path={index_path}")

    def _paths(self, knowledge_base_id: str):
        base = self.index_path / knowledge_base_id
        return base.with_suffix(".faiss"), base.with_suffix(".json")

    def _get(self, knowledge_base_id: str) -> Optional[_FAISSIndex]:
        if knowledge_base_id not in self._indexes:
            self._load(knowledge_base_id)
        return self._indexes.get(knowledge_base_id)

    def add_chunks(self, knowledge_base_id: str, chunks: List[Chunk]) -> int:
        valid_chunks = [c for c in chunks if c.embedding is not None]
        if not valid_chunks:
            logger.warning("No chunks with embeddings to add")
            return 0

        dimension = len(valid_chunks[0].embedding)
        if any(len(c.embedding) != dimension for c in valid_chunks):
            raise ValueError("All embeddings in a batch must share one dimension")

        with self._lock:
            store = self._get(knowledge_base_id)
            if store is None:
                store = _FAISSIndex(dimension)
                self._indexes[knowledge_base_id] = store
            elif store.dimension != dimension:
                raise ValueError(
                    f"Embedding dimension {dimension} does not match "
                    f"{store.dimension} already used by knowledge base {knowledge_base_id}"
                )

            # Upsert: replace any chunk with the same id
            new_ids = {c.chunk_id for c in valid_chunks}
            if any(c.chunk_id in new_ids for c in store.chunks):
                store.retain([i for i, c in enumerate(store.chunks) if c.chunk_id not in new_ids])

            store.add(valid_chunks)
            self._save(knowledge_base_id)

        logger.info(f"Added {len(valid_chunks)} chunks to FAISS index {knowledge_base_id}")
        return len(valid_chunks)

    def search(
        self,
        knowledge_base_id: str,
        query_embedding: List[float],
        top_k: int = 5,
    ) -> List[SearchResult]:
        with self._lock:
            store = self._get(knowledge_base_id)
            if store is None or store.index.ntotal == 0:
                logger.debug(f"Search on empty index for {knowledge_base_id}")
                return []

            query_vector = store.normalize(np.array([query_embedding], dtype=np.float32))
            k = min(top_k, store.index.ntotal)
            scores, indices = store.index.search(query_vector, k)

            results = []
            for score, idx in zip(scores[0], indices[0]):
                if idx < 0:  # FAISS returns -1 for not found
                    continue
                results.append(SearchResult(chunk=store.chunks[idx], similarity=float(score)))

        for rank, result in enumerate(results, 1):
            result.rank = rank
        logger.debug(f"Search returned {len(results)} results")
        return results

    def _delete_where(self, knowledge_base_id: str, predicate) -> int:
        with self._lock:
            store = self._get(knowledge_base_id)
            if store is None:
                return 0
            keep = [i for i, c in enumerate(store.chunks) if not predicate(c)]
            deleted = len(store.chunks) - len(keep)
            if deleted:
                store.retain(keep)
                self._save(knowledge_base_id)
            return deleted

    def delete_for_document(self, knowledge_base_id: str, document_id: str) -> int:
        return self._delete_where(knowledge_base_id, lambda c: c.document_id == document_id)

    def delete_for_knowledge_base(self, knowledge_base_id: str) -> int:
        with self._lock:
            store = self._get(knowledge_base_id)
            deleted = len(store.chunks) if store else 0
            self._indexes.pop(knowledge_base_id, None)
            if self.index_path:
                for path in self._paths(knowledge_base_id):
                    path.unlink(missing_ok=True)
        logger.info(f"Deleted {deleted} chunks for knowledge base {knowledge_base_id}")
        return deleted

    def count(self, knowledge_base_id: str, document_id: Optional[str] = None) -> int:
        with self._lock:
            store = self._get(knowledge_base_id)
            if store is None:
                return 0
            if document_id is None:
                return len(store.chunks)
            return sum(1 for c in store.chunks if c.document_id == document_id)

    def list_chunks(self, knowledge_base_id: str, limit: Optional[int] = None) -> List[Chunk]:
        with self._lock:
            store = self._get(knowledge_base_id)
            chunks = list(store.chunks) if store else []
        return chunks[:limit] if limit is not None else chunks

    def _save(self, knowledge_base_id: str):
        """Save one knowledge base's index and chunk payloads to disk."""
        import faiss

        if not self.index_path:
            return

        self.index_path.mkdir(parents=True, exist_ok=True)
        index_file, metadata_file = self._paths(knowledge_base_id)
        store = self._indexes[knowledge_base_id]

        faiss.write_index(store.index, str(index_file))
        with open(metadata_file, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "dimension": store.dimension,
                    "chunks": [{**c.to_dict(), "embedding": None} for c in store.chunks],
                },
                f,
            )

        logger.debug(f"Saved FAISS index to {index_file}")

    def _load(self, knowledge_base_id: str):
        """Load one knowledge base's index from disk, if persisted."""
        import faiss

        if not self.index_path:
            return
        index_file, metadata_file = self._paths(knowledge_base_id)
        if not index_file.exists() or not metadata_file.exists():
            return

        with open(metadata_file, "r", encoding="utf-8") as f:
            metadata = json.load(f)

        store = _FAISSIndex(metadata["dimension"])
        store.index = faiss.read_index(str(index_file))
        store.chunks = [Chunk.from_dict(c) for c in metadata["chunks"]]
        self._indexes[knowledge_base_id] = store

        logger.info(f"Loaded FAISS index for {knowledge_base_id} with {store.index.ntotal} vectors")


class MongoDBVectorStore(BaseVectorStore):
    """
    MongoDB Atlas Vector Store for production use.

    Requires a vector search index on ``embedding`` with ``knowledge_base_id``
    declared as a filter field (see ``create_vector_index``).
    """

    def __init__(
        self,
        dimension: int,
        uri: Optional[str] = None,
        database: Optional[str] = None,
        collection: Optional[str] = None,
        vector_index: Optional[str] = None,
    ):
        config = get_settings().vector_store

        self.dimension = dimension
        self.uri = uri or config.mongodb_uri
        self.database_name = database or config.mongodb_database
        self.collection_name = collection or config.mongodb_collection
        self.vector_index = vector_index or config.mongodb_vector_index

        self._client = None
        self._collection = None

        logger.info(
            f"MongoDBVectorStore initialized: db={self.database_name}, "
            f"collection={self.collection_name}"
        )

    def _connect(self):
        """Establish connection to MongoDB."""
        if self._collection is not None:
            return

        if not self.uri:
            raise ValueError(
                "MongoDB URI not configured. Set MONGODB_URI environment variable."
            )

        try:
            from pymongo import MongoClient
        except ImportError:
            raise ImportError(
                "pymongo is required for MongoDB. "
                "Install with: pip install 'pymongo[srv]'"
            )

        self._client = MongoClient(self.uri)
        self._collection = self._client[self.database_name][self.collection_name]
        self._client.admin.command("ping")

        logger.info("Connected to MongoDB Atlas")

    @staticmethod
    def _to_chunk(doc: Dict[str, Any]) -> Chunk:
        return Chunk(
            text=doc["text"],
            knowledge_base_id=doc["knowledge_base_id"],
            chunk_id=doc["_id"],
            document_id=doc.get("document_id"),
            source_type=doc.get("source_type", "text_content"),
            source=doc.get("source", "text_content"),
            chunk_index=doc.get("chunk_index", 0),
            total_chunks=doc.get("total_chunks", 0),
            metadata=doc.get("metadata", {}),
        )

    def add_chunks(self, knowledge_base_id: str, chunks: List[Chunk]) -> int:
        from pymongo import UpdateOne

        self._connect()

        valid_chunks = [c for c in chunks if c.embedding is not None]
        if not valid_chunks:
            logger.warning("No chunks with embeddings to add")
            return 0

        for chunk in valid_chunks:
            if len(chunk.embedding) != self.dimension:
                raise ValueError(
                    f"Embedding dimension {len(chunk.embedding)} does not match "
                    f"index dimension {self.dimension}"
                )

        operations = [
            UpdateOne(
                {"_id": chunk.chunk_id},
                {"$set": {
                    "knowledge_base_id": knowledge_base_id,
                    "document_id": chunk.document_id,
                    "text": chunk.text,
                    "embedding": chunk.embedding,
                    "source_type": chunk.source_type,
                    "source": chunk.source,
                    "chunk_index": chunk.chunk_index,
                    "total_chunks": chunk.total_chunks,
                    "metadata": chunk.metadata,
                }},
                upsert=True,
            )
            for chunk in valid_chunks
        ]

        result = self._collection.bulk_write(operations)
        written = result.upserted_count + result.matched_count
        logger.info(f"Added/updated {written} chunks in MongoDB")
        return written

    def search(
        self,
        knowledge_base_id: str,
        query_embedding: List[float],
        top_k: int = 5,
    ) -> List[SearchResult]:
        self._connect()

        pipeline = [
            {
                "$vectorSearch": {
                    "index": self.vector_index,
                    "path": "embedding",
                    "queryVector": query_embedding,
                    "numCandidates": top_k * 10,  # Over-fetch for recall
                    "limit": top_k,
                    "filter": {"knowledge_base_id": knowledge_base_id},
                }
            },
            {
                "$project": {
                    "embedding": 0,
                    "score": {"$meta": "vectorSearchScore"},
                }
            },
        ]

        results = []
        for rank, doc in enumerate(self._collection.aggregate(pipeline), 1):
            # Atlas cosine scores are normalized to (1 + cos) / 2
            similarity = 2 * doc.get("score", 0.5) - 1
            results.append(SearchResult(chunk=self._to_chunk(doc), similarity=similarity, rank=rank))

        logger.debug(f"MongoDB search returned {len(results)} results")
        return results

    def delete_for_knowledge_base(self, knowledge_base_id: str) -> int:
        self._connect()
        result = self._collection.delete_many({"knowledge_base_id": knowledge_base_id})
        logger.info(f"Deleted {result.deleted_count} chunks for knowledge base {knowledge_base_id}")
        return result.deleted_count

    def delete_for_document(self, knowledge_base_id: str, document_id: str) -> int:
        self._connect()
        result = self._collection.delete_many(
            {"knowledge_base_id": knowledge_base_id, "document_id": document_id}
        )
        return result.deleted_count

    def count(self, knowledge_base_id: str, document_id: Optional[str] = None) -> int:
        self._connect()
        query: Dict[str, Any] = {"knowledge_base_id": knowledge_base_id}
        if document_id is not None:
            query["document_id"] = document_id
        return self._collection.count_documents(query)

    def list_chunks(self, knowledge_base_id: str, limit: Optional[int] = None) -> List[Chunk]:
        self._connect()
        cursor = self._collection.find(
            {"knowledge_base_id": knowledge_base_id}, {"embedding": 0}
        ).sort("chunk_index", 1)
        if limit is not None:
            cursor = cursor.limit(limit)
        return [self._to_chunk(doc) for doc in cursor]

    def create_vector_index(self) -> Dict[str, Any]:
        """
        Return the Atlas vector search index definition.

        Note: This usually needs to be created via Atlas UI or CLI.
        """
        index_definition = {
            "fields": [
                {
                    "type": "vector",
                    "path": "embedding",
                    "numDimensions": self.dimension,
                    "similarity": "cosine",
                },
                {"type": "filter", "path": "knowledge_base_id"},
            ]
        }

        logger.info(
            f"To create the vector index '{self.vector_index}', "
            f"use the following definition in Atlas:\n"
            f"{json.dumps(index_definition, indent=2)}"
        )
        return index_definition


class VectorStore:
    """
    Main Vector Store class with unified interface.

    Embeds chunks that arrive without vectors, scopes every query to one
    knowledge base and turns backend failures into ``RetrievalError``.

    Example:
        store = VectorStore(embedding_service=embedding_service)
        store.upsert_chunks("kb_1", chunks)
        results = store.search("kb_1", "How do I reset my password?", k=5)
    """

    def __init__(
        self,
        embedding_service: Optional[EmbeddingService] = None,
        provider: Optional[str] = None,
        config: Optional[VectorStoreConfig] = None,
        backend: Optional[BaseVectorStore] = None,
    ):
        """
        Args:
            embedding_service: EmbeddingService shared by ingestion and search
            provider: "faiss" or "mongodb" (default from config)
            config: Optional VectorStoreConfig
            backend: Pre-built backend (overrides ``provider``)
        """
        self.config = config or get_settings().vector_store
        self.embedding_service = embedding_service or EmbeddingService()
        self._provider = provider or self.config.provider

        if backend is not None:
            self._store = backend
        elif self._provider == "faiss":
            self._store = FAISSVectorStore(index_path=self.config.faiss_index_path)
        elif self._provider == "mongodb":
            self._store = MongoDBVectorStore(
                dimension=self.embedding_service.dimension,
                uri=self.config.mongodb_uri,
                database=self.config.mongodb_database,
                collection=self.config.mongodb_collection,
                vector_index=self.config.mongodb_vector_index,
            )
        else:
            raise ValueError(f"Unknown vector store provider: {self._provider}")

        logger.info(f"VectorStore initialized with {self._provider} backend")

    def upsert_chunks(self, knowledge_base_id: str, chunks: List[Chunk]) -> int:
        """
        Embed (where needed) and write chunks for one knowledge base.

        Returns:
            Number of chunks written

        Raises:
            ValueError: If a chunk belongs to another knowledge base
            RetrievalError: If the embedding provider keeps failing
        """
        if not chunks:
            return 0

        for chunk in chunks:
            if chunk.knowledge_base_id != knowledge_base_id:
                raise ValueError(
                    f"Chunk {chunk.chunk_id} belongs to {chunk.knowledge_base_id}, "
                    f"not {knowledge_base_id}"
                )

        chunks = [c for c in chunks if c.embedding is not None or (c.text and c.text.strip())]
        chunks_to_embed = [c for c in chunks if c.embedding is None]
        if chunks_to_embed:
            logger.debug(f"Generating embeddings for {len(chunks_to_embed)} chunks")
            embeddings = self.embedding_service.embed_batch([c.text for c in chunks_to_embed])
            if len(embeddings) != len(chunks_to_embed):
                raise RetrievalError(
                    f"Expected {len(chunks_to_embed)} embeddings, provider returned {len(embeddings)}"
                )
            for chunk, embedding in zip(chunks_to_embed, embeddings):
                chunk.embedding = embedding

        return self._store.add_chunks(knowledge_base_id, chunks)

    def search(
        self,
        knowledge_base_id: str,
        query: str,
        k: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[SearchResult]:
        """
        Search a knowledge base for chunks relevant to a query.

        An empty list means "no match"; a failed call raises instead.

        Args:
            knowledge_base_id: Knowledge base to search
            query: User's question/search query
            k: Maximum results (default from config)
            similarity_threshold: Minimum similarity (default from config)
            cancel_token: Optional cancellation signal

        Returns:
            At most ``k`` SearchResult objects, similarity descending

        Raises:
            RetrievalError: Embedding or backend failure
            Cancelled: The token was cancelled
        """
        retrieval = get_settings().retrieval
        k = retrieval.top_k if k is None else k
        threshold = retrieval.similarity_threshold if similarity_threshold is None else similarity_threshold

        if k <= 0:
            return []

        try:
            query_embedding = self.embedding_service.embed_query(query, cancel_token=cancel_token)
        except (Cancelled, RetrievalError):
            raise
        except Exception as e:
            raise RetrievalError(f"Query embedding failed: {e}") from e
        check_cancelled(cancel_token)

        try:
            results = self._store.search(knowledge_base_id, query_embedding, top_k=k)
        except (Cancelled, RetrievalError):
            raise
        except Exception as e:
            raise RetrievalError(f"Vector search failed: {e}") from e

        return filter_by_threshold(results, threshold)[:k]

    def delete_for_knowledge_base(self, knowledge_base_id: str) -> int:
        return self._store.delete_for_knowledge_base(knowledge_base_id)

    def delete_for_document(self, knowledge_base_id: str, document_id: str) -> int:
        return self._store.delete_for_document(knowledge_base_id, document_id)

    def count(self, knowledge_base_id: str) -> int:
        return self._store.count(knowledge_base_id)

    def count_for_document(self, knowledge_base_id: str, document_id: str) -> int:
        return self._store.count(knowledge_base_id, document_id=document_id)

    def list_chunks(self, knowledge_base_id: str, limit: Optional[int] = None) -> List[Chunk]:
        return self._store.list_chunks(knowledge_base_id, limit=limit)

    @property
    def provider(self) -> str:
        return self._provider
