"""
Knowledge Base Service Module

Owner-facing lifecycle of a knowledge base: create (optionally with pasted
text), read, update, delete with full cascade, plus stats and an
embedding health check.
"""

import logging
from typing import Any, Dict, List, Optional

from src.blob_store import BlobStore
from src.errors import InvalidInput, NotFound, Unauthorized
from src.ingestion import IngestionService, TEXT_CONTENT_KEY
from src.models import KnowledgeBase
from src.vector_store import VectorStore

logger = logging.getLogger(__name__)


# Fields an owner may change through ``update``
UPDATABLE_FIELDS = {"name", "description", "is_public", "instructions", "store_ip_address"}


class KnowledgeBaseService:
    """
    CRUD over knowledge bases with cascading deletes.

    Example:
        service = KnowledgeBaseService(repository, vector_store, blob_store, ingestion)
        kb = service.create("user_1", "Docs", content="Refunds take 5 days.")
        service.stats(kb.id)
    """

    def __init__(
        self,
        repository,
        vector_store: VectorStore,
        blob_store: BlobStore,
        ingestion: IngestionService,
    ):
        self.repository = repository
        self.vector_store = vector_store
        self.blob_store = blob_store
        self.ingestion = ingestion

    def create(
        self,
        owner_id: Optional[str],
        name: str,
        description: str = "",
        is_public: bool = False,
        instructions: str = "",
        content: Optional[str] = None,
        store_ip_address: bool = False,
    ) -> KnowledgeBase:
        """Create a knowledge base and ingest ``content`` as pasted text if given."""
        if not name or not name.strip():
            raise InvalidInput("Knowledge base name is required")

        knowledge_base = self.repository.create_knowledge_base(KnowledgeBase(
            name=name.strip(),
            owner_id=owner_id,
            description=description,
            is_public=is_public,
            instructions=instructions,
            store_ip_address=store_ip_address,
        ))
        logger.info(f"Created knowledge base {knowledge_base.id} for owner {owner_id}")

        if content and content.strip():
            self.ingestion.ingest_text(knowledge_base.id, content)
        return knowledge_base

    def get(self, knowledge_base_id: str) -> KnowledgeBase:
        knowledge_base = self.repository.get_knowledge_base(knowledge_base_id)
        if knowledge_base is None:
            raise NotFound(f"Knowledge base {knowledge_base_id} not found")
        return knowledge_base

    def get_for_owner(self, knowledge_base_id: str, owner_id: Optional[str]) -> KnowledgeBase:
        """
        Fetch a knowledge base the caller owns.

        Raises:
            NotFound: No such knowledge base
            Unauthorized: The caller is not the owner
        """
        knowledge_base = self.get(knowledge_base_id)
        if not knowledge_base.is_owned_by(owner_id):
            raise Unauthorized(f"User {owner_id} does not own knowledge base {knowledge_base_id}")
        return knowledge_base

    def list_for_owner(self, owner_id: str) -> List[KnowledgeBase]:
        return self.repository.list_knowledge_bases(owner_id=owner_id)

    def update(
        self,
        knowledge_base_id: str,
        caller_id: Optional[str],
        content: Optional[str] = None,
        **fields: Any,
    ) -> KnowledgeBase:
        """
        Change owner-editable fields; new ``content`` replaces the pasted text.

        Raises:
            InvalidInput: An unknown or read-only field was passed
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidInput(f"Cannot update fields: {', '.join(sorted(unknown))}")

        self.get_for_owner(knowledge_base_id, caller_id)
        if fields:
            self.repository.update_knowledge_base(knowledge_base_id, **fields)
        if content is not None:
            self.ingestion.ingest_text(knowledge_base_id, content)
        return self.get(knowledge_base_id)

    def delete(self, knowledge_base_id: str, owner_id: Optional[str]) -> bool:
        """Delete a knowledge base with its chunks, blobs, documents and messages."""
        self.get_for_owner(knowledge_base_id, owner_id)

        chunks = self.vector_store.delete_for_knowledge_base(knowledge_base_id)
        self.blob_store.delete_knowledge_base(knowledge_base_id)
        self.repository.delete_knowledge_base(knowledge_base_id)
        logger.info(f"Deleted knowledge base {knowledge_base_id} ({chunks} chunks)")
        return True

    def stats(self, knowledge_base_id: str) -> Dict[str, Any]:
        knowledge_base = self.get(knowledge_base_id)
        documents = self.repository.list_documents(knowledge_base_id)
        crawl_documents = [d for d in documents if d.is_crawl_document]
        return {
            "knowledge_base_id": knowledge_base_id,
            "chunk_count": self.vector_store.count(knowledge_base_id),
            "document_count": len(documents) - len(crawl_documents),
            "crawl_page_count": len(crawl_documents),
            "message_count": self.repository.count_messages(knowledge_base_id),
            "crawl_status": knowledge_base.crawl.status.value,
            "has_text_content": self._has_text_content(knowledge_base_id),
        }

    def _has_text_content(self, knowledge_base_id: str) -> bool:
        text = self.blob_store.get_original(knowledge_base_id, TEXT_CONTENT_KEY)
        return bool(text and text.strip())

    def validate_embeddings(self, knowledge_base_id: str) -> bool:
        """
        False when the knowledge base has content but no stored chunks.

        A knowledge base with no content at all is considered valid.
        """
        self.get(knowledge_base_id)
        has_content = (
            self._has_text_content(knowledge_base_id)
            or bool(self.repository.list_documents(knowledge_base_id))
        )
        if not has_content:
            return True

        chunk_count = self.vector_store.count(knowledge_base_id)
        if chunk_count == 0:
            logger.warning(f"Knowledge base {knowledge_base_id} has content but no embeddings")
            return False
        return True
