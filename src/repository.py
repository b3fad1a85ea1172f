"""
Repository Module

Durable records for knowledge bases, source documents and chat messages.
Supports two backends:
- InMemoryRepository: process-local dictionaries guarded by a lock
- MongoRepository: MongoDB collections (knowledge_bases, documents, chat_messages)

Crawl state is updated through ``compare_and_set_crawl`` so that two
concurrent crawl starts cannot both win.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from config.settings import get_settings, StorageConfig
from src.messages import ChatMessage
from src.models import (
    CrawlRun,
    CrawlStatus,
    DocumentOrigin,
    KnowledgeBase,
    SourceDocument,
    utcnow,
)

logger = logging.getLogger(__name__)


class BaseRepository(ABC):
    """Abstract record store shared by every service."""

    # Knowledge bases

    @abstractmethod
    def create_knowledge_base(self, knowledge_base: KnowledgeBase) -> KnowledgeBase:
        pass

    @abstractmethod
    def get_knowledge_base(self, knowledge_base_id: str) -> Optional[KnowledgeBase]:
        pass

    @abstractmethod
    def update_knowledge_base(self, knowledge_base_id: str, **fields: Any) -> Optional[KnowledgeBase]:
        """Set fields on a knowledge base; returns the updated record."""
        pass

    @abstractmethod
    def delete_knowledge_base(self, knowledge_base_id: str) -> bool:
        """Delete a knowledge base with its documents and messages."""
        pass

    @abstractmethod
    def list_knowledge_bases(self, owner_id: Optional[str] = None) -> List[KnowledgeBase]:
        pass

    @abstractmethod
    def compare_and_set_crawl(
        self,
        knowledge_base_id: str,
        expected_status: CrawlStatus,
        crawl: CrawlRun,
        expected_run_id: Optional[str] = None,
        crawl_url: Optional[str] = None,
    ) -> bool:
        """
        Atomically replace crawl state if it still has ``expected_status``
        (and ``expected_run_id`` when given). Returns True on success.
        """
        pass

    # Source documents

    @abstractmethod
    def add_document(self, document: SourceDocument) -> SourceDocument:
        pass

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[SourceDocument]:
        pass

    @abstractmethod
    def list_documents(
        self,
        knowledge_base_id: str,
        origin: Optional[DocumentOrigin] = None,
    ) -> List[SourceDocument]:
        pass

    @abstractmethod
    def update_document(self, document_id: str, **fields: Any) -> Optional[SourceDocument]:
        pass

    @abstractmethod
    def delete_document(self, document_id: str) -> bool:
        pass

    # Chat messages

    @abstractmethod
    def save_message(self, message: ChatMessage) -> ChatMessage:
        pass

    @abstractmethod
    def get_messages(
        self,
        knowledge_base_id: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ChatMessage]:
        """Messages oldest first."""
        pass

    @abstractmethod
    def get_sessions(self, knowledge_base_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def count_messages(self, knowledge_base_id: str) -> int:
        pass

    @abstractmethod
    def delete_messages_before(self, cutoff: datetime) -> int:
        pass


def _summarize_sessions(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    sessions: Dict[str, Dict[str, Any]] = {}
    for message in messages:
        summary = sessions.setdefault(message.session_id, {
            "session_id": message.session_id,
            "user_id": message.user_id,
            "message_count": 0,
            "first_message_at": message.created_at,
            "last_message_at": message.created_at,
        })
        summary["message_count"] += 1
        summary["first_message_at"] = min(summary["first_message_at"], message.created_at)
        summary["last_message_at"] = max(summary["last_message_at"], message.created_at)
    return sorted(sessions.values(), key=lambda s: s["last_message_at"], reverse=True)


class InMemoryRepository(BaseRepository):
    """
    Thread-safe in-process repository.

    Used for tests and single-process deployments; records are lost on exit.
    Records go in and come out as copies, so stored state only changes
    through repository calls.
    """

    def __init__(self):
        self._knowledge_bases: Dict[str, KnowledgeBase] = {}
        self._documents: Dict[str, SourceDocument] = {}
        self._messages: List[ChatMessage] = []
        self._lock = threading.Lock()

        logger.debug("InMemoryRepository created")

    def create_knowledge_base(self, knowledge_base: KnowledgeBase) -> KnowledgeBase:
        with self._lock:
            if knowledge_base.id in self._knowledge_bases:
                raise ValueError(f"Knowledge base {knowledge_base.id} already exists")
            self._knowledge_bases[knowledge_base.id] = copy.deepcopy(knowledge_base)
        return knowledge_base

    def get_knowledge_base(self, knowledge_base_id: str) -> Optional[KnowledgeBase]:
        with self._lock:
            return copy.deepcopy(self._knowledge_bases.get(knowledge_base_id))

    def update_knowledge_base(self, knowledge_base_id: str, **fields: Any) -> Optional[KnowledgeBase]:
        with self._lock:
            knowledge_base = self._knowledge_bases.get(knowledge_base_id)
            if knowledge_base is None:
                return None
            for name, value in fields.items():
                if not hasattr(knowledge_base, name):
                    raise AttributeError(f"KnowledgeBase has no field '{name}'")
                setattr(knowledge_base, name, copy.deepcopy(value))
            knowledge_base.updated_at = utcnow()
            return copy.deepcopy(knowledge_base)

    def delete_knowledge_base(self, knowledge_base_id: str) -> bool:
        with self._lock:
            existed = self._knowledge_bases.pop(knowledge_base_id, None) is not None
            self._documents = {
                doc_id: doc for doc_id, doc in self._documents.items()
                if doc.knowledge_base_id != knowledge_base_id
            }
            self._messages = [m for m in self._messages if m.knowledge_base_id != knowledge_base_id]
        return existed

    def list_knowledge_bases(self, owner_id: Optional[str] = None) -> List[KnowledgeBase]:
        with self._lock:
            return [
                copy.deepcopy(kb) for kb in self._knowledge_bases.values()
                if owner_id is None or kb.owner_id == owner_id
            ]

    def compare_and_set_crawl(
        self,
        knowledge_base_id: str,
        expected_status: CrawlStatus,
        crawl: CrawlRun,
        expected_run_id: Optional[str] = None,
        crawl_url: Optional[str] = None,
    ) -> bool:
        with self._lock:
            knowledge_base = self._knowledge_bases.get(knowledge_base_id)
            if knowledge_base is None or knowledge_base.crawl.status != expected_status:
                return False
            if expected_run_id is not None and knowledge_base.crawl.run_id != expected_run_id:
                return False
            knowledge_base.crawl = copy.deepcopy(crawl)
            if crawl_url is not None:
                knowledge_base.crawl_url = crawl_url
            knowledge_base.updated_at = utcnow()
            return True

    def add_document(self, document: SourceDocument) -> SourceDocument:
        with self._lock:
            self._documents[document.id] = copy.deepcopy(document)
        return document

    def get_document(self, document_id: str) -> Optional[SourceDocument]:
        with self._lock:
            return copy.deepcopy(self._documents.get(document_id))

    def list_documents(
        self,
        knowledge_base_id: str,
        origin: Optional[DocumentOrigin] = None,
    ) -> List[SourceDocument]:
        with self._lock:
            documents = [
                copy.deepcopy(doc) for doc in self._documents.values()
                if doc.knowledge_base_id == knowledge_base_id
                and (origin is None or doc.origin == origin)
            ]
        return sorted(documents, key=lambda d: d.created_at)

    def update_document(self, document_id: str, **fields: Any) -> Optional[SourceDocument]:
        with self._lock:
            document = self._documents.get(document_id)
            if document is None:
                return None
            for name, value in fields.items():
                if not hasattr(document, name):
                    raise AttributeError(f"SourceDocument has no field '{name}'")
                setattr(document, name, copy.deepcopy(value))
            return copy.deepcopy(document)

    def delete_document(self, document_id: str) -> bool:
        with self._lock:
            return self._documents.pop(document_id, None) is not None

    def save_message(self, message: ChatMessage) -> ChatMessage:
        with self._lock:
            self._messages.append(message)
        return message

    def get_messages(
        self,
        knowledge_base_id: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ChatMessage]:
        with self._lock:
            matched = [
                m for m in self._messages
                if m.knowledge_base_id == knowledge_base_id
                and (session_id is None or m.session_id == session_id)
                and (user_id is None or m.user_id == user_id)
                and (start is None or m.created_at >= start)
                and (end is None or m.created_at <= end)
            ]
        matched.sort(key=lambda m: m.created_at)
        return matched[offset:offset + limit]

    def get_sessions(self, knowledge_base_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            messages = [
                m for m in self._messages
                if m.knowledge_base_id == knowledge_base_id
                and (user_id is None or m.user_id == user_id)
            ]
        return _summarize_sessions(messages)

    def count_messages(self, knowledge_base_id: str) -> int:
        with self._lock:
            return sum(1 for m in self._messages if m.knowledge_base_id == knowledge_base_id)

    def delete_messages_before(self, cutoff: datetime) -> int:
        with self._lock:
            before = len(self._messages)
            self._messages = [m for m in self._messages if m.created_at >= cutoff]
            return before - len(self._messages)


class MongoRepository(BaseRepository):
    """
    MongoDB-backed repository.

    Knowledge bases and documents are stored with ``_id`` equal to their id;
    chat messages keep ``created_at`` as a BSON date for range queries.
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        database: Optional[str] = None,
        client=None,
    ):
        config = get_settings().storage
        self.uri = uri or config.mongodb_uri
        self.database_name = database or config.mongodb_database
        self._client = client
        self._db = None

        logger.info(f"MongoRepository initialized: db={self.database_name}")

    def _database(self):
        if self._db is not None:
            return self._db

        if self._client is None:
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
            self._client.admin.command("ping")
            logger.info("Connected to MongoDB")

        self._db = self._client[self.database_name]
        return self._db

    @property
    def _knowledge_bases(self):
        return self._database()["knowledge_bases"]

    @property
    def _documents(self):
        return self._database()["documents"]

    @property
    def _messages(self):
        return self._database()["chat_messages"]

    @staticmethod
    def _kb_from_doc(doc: Optional[Dict[str, Any]]) -> Optional[KnowledgeBase]:
        if doc is None:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        return KnowledgeBase.from_dict(doc)

    @staticmethod
    def _document_from_doc(doc: Optional[Dict[str, Any]]) -> Optional[SourceDocument]:
        if doc is None:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        return SourceDocument.from_dict(doc)

    @staticmethod
    def _message_from_doc(doc: Dict[str, Any]) -> ChatMessage:
        doc = dict(doc)
        doc.pop("_id", None)
        created_at = doc.get("created_at")
        if isinstance(created_at, datetime) and created_at.tzinfo is None:
            doc["created_at"] = created_at.replace(tzinfo=timezone.utc)
        return ChatMessage.from_dict(doc)

    @staticmethod
    def _serialize(value: Any) -> Any:
        if hasattr(value, "to_dict"):
            return value.to_dict()
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def create_knowledge_base(self, knowledge_base: KnowledgeBase) -> KnowledgeBase:
        self._knowledge_bases.insert_one({"_id": knowledge_base.id, **knowledge_base.to_dict()})
        return knowledge_base

    def get_knowledge_base(self, knowledge_base_id: str) -> Optional[KnowledgeBase]:
        return self._kb_from_doc(self._knowledge_bases.find_one({"_id": knowledge_base_id}))

    def update_knowledge_base(self, knowledge_base_id: str, **fields: Any) -> Optional[KnowledgeBase]:
        from pymongo import ReturnDocument

        update = {name: self._serialize(value) for name, value in fields.items()}
        update["updated_at"] = utcnow().isoformat()
        doc = self._knowledge_bases.find_one_and_update(
            {"_id": knowledge_base_id},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        return self._kb_from_doc(doc)

    def delete_knowledge_base(self, knowledge_base_id: str) -> bool:
        result = self._knowledge_bases.delete_one({"_id": knowledge_base_id})
        self._documents.delete_many({"knowledge_base_id": knowledge_base_id})
        self._messages.delete_many({"knowledge_base_id": knowledge_base_id})
        return result.deleted_count > 0

    def list_knowledge_bases(self, owner_id: Optional[str] = None) -> List[KnowledgeBase]:
        query = {} if owner_id is None else {"owner_id": owner_id}
        return [self._kb_from_doc(doc) for doc in self._knowledge_bases.find(query)]

    def compare_and_set_crawl(
        self,
        knowledge_base_id: str,
        expected_status: CrawlStatus,
        crawl: CrawlRun,
        expected_run_id: Optional[str] = None,
        crawl_url: Optional[str] = None,
    ) -> bool:
        query: Dict[str, Any] = {"_id": knowledge_base_id, "crawl.status": expected_status.value}
        if expected_run_id is not None:
            query["crawl.run_id"] = expected_run_id

        update: Dict[str, Any] = {"crawl": crawl.to_dict(), "updated_at": utcnow().isoformat()}
        if crawl_url is not None:
            update["crawl_url"] = crawl_url

        doc = self._knowledge_bases.find_one_and_update(query, {"$set": update})
        return doc is not None

    def add_document(self, document: SourceDocument) -> SourceDocument:
        self._documents.replace_one({"_id": document.id}, {"_id": document.id, **document.to_dict()}, upsert=True)
        return document

    def get_document(self, document_id: str) -> Optional[SourceDocument]:
        return self._document_from_doc(self._documents.find_one({"_id": document_id}))

    def list_documents(
        self,
        knowledge_base_id: str,
        origin: Optional[DocumentOrigin] = None,
    ) -> List[SourceDocument]:
        query: Dict[str, Any] = {"knowledge_base_id": knowledge_base_id}
        if origin is not None:
            query["origin"] = origin.value
        cursor = self._documents.find(query).sort("created_at", 1)
        return [self._document_from_doc(doc) for doc in cursor]

    def update_document(self, document_id: str, **fields: Any) -> Optional[SourceDocument]:
        from pymongo import ReturnDocument

        update = {name: self._serialize(value) for name, value in fields.items()}
        doc = self._documents.find_one_and_update(
            {"_id": document_id},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        return self._document_from_doc(doc)

    def delete_document(self, document_id: str) -> bool:
        return self._documents.delete_one({"_id": document_id}).deleted_count > 0

    def save_message(self, message: ChatMessage) -> ChatMessage:
        doc = message.to_dict()
        doc["_id"] = message.id
        doc["created_at"] = message.created_at
        self._messages.insert_one(doc)
        return message

    def get_messages(
        self,
        knowledge_base_id: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ChatMessage]:
        query: Dict[str, Any] = {"knowledge_base_id": knowledge_base_id}
        if session_id is not None:
            query["session_id"] = session_id
        if user_id is not None:
            query["user_id"] = user_id
        if start is not None or end is not None:
            query["created_at"] = {}
            if start is not None:
                query["created_at"]["$gte"] = start
            if end is not None:
                query["created_at"]["$lte"] = end

        cursor = self._messages.find(query).sort("created_at", 1).skip(offset).limit(limit)
        return [self._message_from_doc(doc) for doc in cursor]

    def get_sessions(self, knowledge_base_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        match: Dict[str, Any] = {"knowledge_base_id": knowledge_base_id}
        if user_id is not None:
            match["user_id"] = user_id

        pipeline = [
            {"$match": match},
            {"$group": {
                "_id": "$session_id",
                "user_id": {"$first": "$user_id"},
                "message_count": {"$sum": 1},
                "first_message_at": {"$min": "$created_at"},
                "last_message_at": {"$max": "$created_at"},
            }},
            {"$sort": {"last_message_at": -1}},
        ]
        return [
            {
                "session_id": doc["_id"],
                "user_id": doc.get("user_id"),
                "message_count": doc["message_count"],
                "first_message_at": doc["first_message_at"],
                "last_message_at": doc["last_message_at"],
            }
            for doc in self._messages.aggregate(pipeline)
        ]

    def count_messages(self, knowledge_base_id: str) -> int:
        return self._messages.count_documents({"knowledge_base_id": knowledge_base_id})

    def delete_messages_before(self, cutoff: datetime) -> int:
        return self._messages.delete_many({"created_at": {"$lt": cutoff}}).deleted_count


def create_repository(config: Optional[StorageConfig] = None) -> BaseRepository:
    """Build the repository backend selected in configuration."""
    config = config or get_settings().storage
    if config.provider == "memory":
        return InMemoryRepository()
    if config.provider == "mongodb":
        return MongoRepository(uri=config.mongodb_uri, database=config.mongodb_database)
    raise ValueError(f"Unknown storage provider: {config.provider}")
