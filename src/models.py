"""
Record types for knowledge bases, their source documents and crawl state.

Chunks live in ``src.chunker`` and chat messages in ``src.messages``; the
types here are the rows the repository stores for the owner-facing side.
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse


CRAWL_FILENAME_PREFIX = "crawl_"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class CrawlStatus(str, Enum):
    """Crawl state of a knowledge base."""

    IDLE = "idle"
    CRAWLING = "crawling"
    READY = "ready"
    FAILED = "failed"


class DocumentOrigin(str, Enum):
    """Who produced a source document."""

    UPLOADED = "uploaded"
    CRAWL = "crawl"


@dataclass(frozen=True)
class CrawlRun:
    """
    Crawl fields of a knowledge base.

    Frozen so that changes go through ``src.crawler.transition`` rather
    than direct assignment.
    """

    status: CrawlStatus = CrawlStatus.IDLE
    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    page_count: int = 0
    last_run_at: Optional[datetime] = None
    last_progress_at: Optional[datetime] = None
    error: Optional[str] = None

    def evolve(self, **changes: Any) -> "CrawlRun":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "page_count": self.page_count,
            "last_run_at": _format_datetime(self.last_run_at),
            "last_progress_at": _format_datetime(self.last_progress_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CrawlRun":
        if not data:
            return cls()
        return cls(
            status=CrawlStatus(data.get("status", CrawlStatus.IDLE.value)),
            run_id=data.get("run_id"),
            workflow_id=data.get("workflow_id"),
            page_count=data.get("page_count", 0),
            last_run_at=_parse_datetime(data.get("last_run_at")),
            last_progress_at=_parse_datetime(data.get("last_progress_at")),
            error=data.get("error"),
        )


@dataclass
class KnowledgeBase:
    """
    A named, owned collection of ingested content.

    Attributes:
        id: Unique identifier
        owner_id: Owning user (None for anonymously created bases)
        name: Display name
        description: Short description shown to visitors
        is_public: Whether non-owners may chat with it
        instructions: Free-text answering instructions from the owner
        crawl_url: Single crawl source URL, if any
        crawl: Current crawl state
        recommendations: Suggested follow-up questions (title, description)
        important_links: Ranked in-domain links for UI surfacing
        store_ip_address: Privacy flag for persisting caller IPs
    """

    name: str
    id: str = field(default_factory=new_id)
    owner_id: Optional[str] = None
    description: str = ""
    is_public: bool = False
    instructions: str = ""
    crawl_url: Optional[str] = None
    crawl: CrawlRun = field(default_factory=CrawlRun)
    recommendations: List[Dict[str, str]] = field(default_factory=list)
    important_links: List[Dict[str, Any]] = field(default_factory=list)
    store_ip_address: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_owned_by(self, user_id: Optional[str]) -> bool:
        return user_id is not None and self.owner_id == user_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "is_public": self.is_public,
            "instructions": self.instructions,
            "crawl_url": self.crawl_url,
            "crawl": self.crawl.to_dict(),
            "recommendations": list(self.recommendations),
            "important_links": list(self.important_links),
            "store_ip_address": self.store_ip_address,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeBase":
        return cls(
            id=data["id"],
            owner_id=data.get("owner_id"),
            name=data.get("name", ""),
            description=data.get("description", ""),
            is_public=data.get("is_public", False),
            instructions=data.get("instructions", ""),
            crawl_url=data.get("crawl_url"),
            crawl=CrawlRun.from_dict(data.get("crawl")),
            recommendations=list(data.get("recommendations", [])),
            important_links=list(data.get("important_links", [])),
            store_ip_address=data.get("store_ip_address", False),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass
class SourceDocument:
    """An uploaded or crawl-produced file belonging to one knowledge base."""

    knowledge_base_id: str
    filename: str
    media_type: str
    size: int = 0
    origin: DocumentOrigin = DocumentOrigin.UPLOADED
    id: str = field(default_factory=new_id)
    metadata: Dict[str, Any] = field(default_factory=dict)
    expected_chunks: int = 0
    stored_chunks: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_crawl_document(self) -> bool:
        return self.origin == DocumentOrigin.CRAWL or self.filename.startswith(CRAWL_FILENAME_PREFIX)

    @property
    def is_fully_ingested(self) -> bool:
        return self.stored_chunks >= self.expected_chunks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "knowledge_base_id": self.knowledge_base_id,
            "filename": self.filename,
            "media_type": self.media_type,
            "size": self.size,
            "origin": self.origin.value,
            "metadata": dict(self.metadata),
            "expected_chunks": self.expected_chunks,
            "stored_chunks": self.stored_chunks,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceDocument":
        return cls(
            id=data["id"],
            knowledge_base_id=data["knowledge_base_id"],
            filename=data["filename"],
            media_type=data.get("media_type", "application/octet-stream"),
            size=data.get("size", 0),
            origin=DocumentOrigin(data.get("origin", DocumentOrigin.UPLOADED.value)),
            metadata=dict(data.get("metadata", {})),
            expected_chunks=data.get("expected_chunks", 0),
            stored_chunks=data.get("stored_chunks", 0),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
        )


def crawl_filename(url: str) -> str:
    """
    Build the conventional filename for a crawl-produced document.

    ``https://example.com/docs/intro`` becomes ``crawl_docs_intro.txt``;
    the site root becomes ``crawl_index.txt``.
    """
    path = urlparse(url).path.strip("/")
    sanitized = re.sub(r"[^a-zA-Z0-9]+", "_", path).strip("_") or "index"
    return f"{CRAWL_FILENAME_PREFIX}{sanitized}.txt"
