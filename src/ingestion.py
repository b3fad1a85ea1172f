"""
Ingestion Service Module

Normalizes every accepted input into chunks and writes them to the vector
store:

- Pasted text       -> text_content chunks (no source document)
- Uploaded files    -> text types are decoded directly, others go through OCR
- OCR pages         -> file chunks tagged with their page number
- Crawled pages     -> crawl chunks tagged with URL and outbound links

Each document records how many chunks it should have and how many were
stored, so partial ingestion is detectable and ``refresh_embeddings`` can
be re-run safely (delete, then recreate).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config.settings import get_settings, ChunkingConfig
from src.blob_store import BlobStore
from src.chunker import Chunk, DocumentChunker
from src.errors import IngestionPartial, InvalidInput, NotFound, RetrievalError
from src.models import DocumentOrigin, SourceDocument, crawl_filename
from src.ocr import DocumentProcessor, needs_ocr
from src.vector_store import VectorStore

logger = logging.getLogger(__name__)


# Blob key under which pasted text is kept for refreshes
TEXT_CONTENT_KEY = "text_content"


@dataclass
class IngestionReport:
    """
    Outcome of ingesting one source.

    Attributes:
        document_id: Source document (None for pasted text)
        expected_chunks: Chunks produced by the chunker
        stored_chunks: Chunks written to the vector store
        failed_pages: OCR page numbers with at least one failed chunk
        errors: Error messages collected along the way
        truncated: True when the per-knowledge-base chunk cap was hit
    """
    document_id: Optional[str] = None
    expected_chunks: int = 0
    stored_chunks: int = 0
    failed_pages: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    truncated: bool = False

    @property
    def partial(self) -> bool:
        return self.stored_chunks < self.expected_chunks

    def raise_for_partial(self) -> None:
        if self.partial:
            raise IngestionPartial(
                f"Stored {self.stored_chunks} of {self.expected_chunks} chunks",
                report=self,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "expected_chunks": self.expected_chunks,
            "stored_chunks": self.stored_chunks,
            "failed_pages": list(self.failed_pages),
            "errors": list(self.errors),
            "truncated": self.truncated,
            "partial": self.partial,
        }


class IngestionService:
    """
    Chunks and embeds content for a knowledge base.

    Example:
        service = IngestionService(repository, vector_store, chunker, blob_store, processor)
        document, report = service.ingest_file("kb_1", "guide.pdf", "application/pdf", data)
        if report.partial:
            service.refresh_embeddings("kb_1")
    """

    def __init__(
        self,
        repository,
        vector_store: VectorStore,
        chunker: DocumentChunker,
        blob_store: BlobStore,
        document_processor: Optional[DocumentProcessor] = None,
        config: Optional[ChunkingConfig] = None,
        batch_size: int = 20,
    ):
        self.repository = repository
        self.vector_store = vector_store
        self.chunker = chunker
        self.blob_store = blob_store
        self.document_processor = document_processor
        self.config = config or get_settings().chunking
        self.batch_size = batch_size

    # Core write path

    def _store_chunks(self, knowledge_base_id: str, chunks: List[Chunk], report: IngestionReport) -> IngestionReport:
        report.expected_chunks += len(chunks)

        remaining = self.config.max_chunks_per_knowledge_base - self.vector_store.count(knowledge_base_id)
        if len(chunks) > remaining:
            remaining = max(remaining, 0)
            report.truncated = True
            report.errors.append(
                f"Chunk limit of {self.config.max_chunks_per_knowledge_base} reached; "
                f"{len(chunks) - remaining} chunks not stored"
            )
            logger.warning(f"Knowledge base {knowledge_base_id} hit its chunk limit")
            chunks = chunks[:remaining]

        failed_pages = set(report.failed_pages)
        for start in range(0, len(chunks), self.batch_size):
            batch = chunks[start:start + self.batch_size]
            try:
                report.stored_chunks += self.vector_store.upsert_chunks(knowledge_base_id, batch)
            except RetrievalError as e:
                logger.error(f"Failed to embed chunks {start}-{start + len(batch)} for {knowledge_base_id}: {e}")
                report.errors.append(str(e))
                failed_pages.update(
                    c.metadata["page_number"] for c in batch if "page_number" in c.metadata
                )
        report.failed_pages = sorted(failed_pages)

        if report.document_id is not None:
            self.repository.update_document(
                report.document_id,
                expected_chunks=report.expected_chunks,
                stored_chunks=report.stored_chunks,
            )

        if report.partial:
            logger.warning(
                f"Partial ingestion for {report.document_id or knowledge_base_id}: "
                f"{report.stored_chunks}/{report.expected_chunks} chunks stored"
            )
        else:
            logger.info(
                f"Ingested {report.stored_chunks} chunks for "
                f"{report.document_id or knowledge_base_id}"
            )
        return report

    # Entry points

    def ingest_text(self, knowledge_base_id: str, text: str) -> IngestionReport:
        """
        Replace the knowledge base's pasted text content.

        Previous text_content chunks are deleted first.
        """
        self.vector_store.delete_for_document(knowledge_base_id, None)
        self.blob_store.put_original(knowledge_base_id, TEXT_CONTENT_KEY, text.encode("utf-8"))

        chunks = self.chunker.process_text(knowledge_base_id, text, source_type="text_content")
        return self._store_chunks(knowledge_base_id, chunks, IngestionReport())

    def ingest_pages(
        self,
        knowledge_base_id: str,
        document: SourceDocument,
        pages: List[Dict[str, Any]],
    ) -> IngestionReport:
        """Chunk and store OCR pages for a document."""
        chunks = self.chunker.process_pages(
            knowledge_base_id,
            document.id,
            pages,
            source=document.filename,
            metadata={"filename": document.filename},
        )
        return self._store_chunks(knowledge_base_id, chunks, IngestionReport(document_id=document.id))

    def ingest_document_text(
        self,
        knowledge_base_id: str,
        document: SourceDocument,
        text: str,
    ) -> IngestionReport:
        """Chunk and store the decoded text of an uploaded document."""
        chunks = self.chunker.process_text(
            knowledge_base_id,
            text,
            source_type="file",
            source=document.filename,
            document_id=document.id,
            metadata={"filename": document.filename},
        )
        return self._store_chunks(knowledge_base_id, chunks, IngestionReport(document_id=document.id))

    def ingest_file(
        self,
        knowledge_base_id: str,
        filename: str,
        media_type: str,
        data: bytes,
        strict: bool = False,
    ) -> Tuple[SourceDocument, IngestionReport]:
        """
        Store an uploaded file and ingest its content.

        Args:
            strict: Raise IngestionPartial instead of returning a partial report

        Raises:
            InvalidInput: Empty file, or OCR needed but not configured
            OCRFailed: The OCR provider failed
        """
        if not data:
            raise InvalidInput(f"File {filename} is empty")
        if needs_ocr(media_type) and self.document_processor is None:
            raise InvalidInput(f"Cannot process {media_type} files: OCR is not configured")

        document = self.repository.add_document(SourceDocument(
            knowledge_base_id=knowledge_base_id,
            filename=filename,
            media_type=media_type,
            size=len(data),
            origin=DocumentOrigin.UPLOADED,
        ))
        self.blob_store.put_original(knowledge_base_id, document.id, data)
        logger.info(f"Stored upload {filename} ({media_type}) as document {document.id}")

        report = self._ingest_stored_document(knowledge_base_id, document, data)
        if strict:
            report.raise_for_partial()
        return self.repository.get_document(document.id), report

    def _ingest_stored_document(
        self,
        knowledge_base_id: str,
        document: SourceDocument,
        data: bytes,
        prefer_stored_pages: bool = False,
    ) -> IngestionReport:
        if not needs_ocr(document.media_type):
            return self.ingest_document_text(
                knowledge_base_id, document, data.decode("utf-8", errors="replace")
            )

        if prefer_stored_pages:
            pages = self.blob_store.list_pages(knowledge_base_id, document.id)
            if pages:
                return self.ingest_pages(knowledge_base_id, document, pages)

        if self.document_processor is None:
            report = IngestionReport(document_id=document.id)
            report.errors.append("OCR is not configured")
            return report

        result = self.document_processor.process_document(
            knowledge_base_id,
            document.id,
            data,
            media_type=document.media_type,
            on_pages=lambda pages: self.ingest_pages(knowledge_base_id, document, pages),
        )
        if result.ingestion_report is not None:
            return result.ingestion_report

        report = IngestionReport(document_id=document.id)
        if result.ingestion_error:
            report.errors.append(result.ingestion_error)
        return report

    def ingest_crawl_page(
        self,
        knowledge_base_id: str,
        url: str,
        text: str,
        title: str = "",
        links: Optional[List[str]] = None,
        run_id: Optional[str] = None,
        crawled_from: Optional[str] = None,
    ) -> Tuple[SourceDocument, IngestionReport]:
        """
        Store one crawled page as a crawl-produced document and ingest it.

        A previous document for the same URL is replaced.
        """
        for existing in self.repository.list_documents(knowledge_base_id, origin=DocumentOrigin.CRAWL):
            if existing.metadata.get("source_url") == url:
                self.remove_document(knowledge_base_id, existing.id)

        data = text.encode("utf-8")
        document = self.repository.add_document(SourceDocument(
            knowledge_base_id=knowledge_base_id,
            filename=crawl_filename(url),
            media_type="text/plain",
            size=len(data),
            origin=DocumentOrigin.CRAWL,
            metadata={
                "source_url": url,
                "title": title,
                "crawl_run_id": run_id,
                "links": list(links or []),
            },
        ))
        self.blob_store.put_original(knowledge_base_id, document.id, data)

        chunks = self.chunker.process_crawl_page(
            knowledge_base_id,
            document.id,
            url=url,
            text=text,
            title=title,
            links=links,
            crawled_from=crawled_from,
        )
        report = self._store_chunks(knowledge_base_id, chunks, IngestionReport(document_id=document.id))
        return self.repository.get_document(document.id), report

    # Maintenance

    def remove_document(self, knowledge_base_id: str, document_id: str) -> bool:
        """Delete a document's chunks, blobs and record."""
        document = self.repository.get_document(document_id)
        if document is None or document.knowledge_base_id != knowledge_base_id:
            raise NotFound(f"Document {document_id} not found")

        deleted = self.vector_store.delete_for_document(knowledge_base_id, document_id)
        self.blob_store.delete_document(knowledge_base_id, document_id)
        self.repository.delete_document(document_id)
        logger.info(f"Removed document {document_id} ({deleted} chunks)")
        return True

    def delete_crawl_documents(self, knowledge_base_id: str) -> int:
        """Remove every crawl-produced document of a knowledge base."""
        documents = [
            d for d in self.repository.list_documents(knowledge_base_id)
            if d.is_crawl_document
        ]
        for document in documents:
            self.remove_document(knowledge_base_id, document.id)
        logger.info(f"Deleted {len(documents)} crawl documents for {knowledge_base_id}")
        return len(documents)

    def refresh_embeddings(self, knowledge_base_id: str) -> List[IngestionReport]:
        """
        Delete every chunk of a knowledge base and recreate them from stored sources.

        Stored OCR pages are reused rather than running OCR again.
        """
        deleted = self.vector_store.delete_for_knowledge_base(knowledge_base_id)
        logger.info(f"Refreshing embeddings for {knowledge_base_id}: deleted {deleted} chunks")

        reports: List[IngestionReport] = []

        text = self.blob_store.get_original(knowledge_base_id, TEXT_CONTENT_KEY)
        if text:
            chunks = self.chunker.process_text(knowledge_base_id, text.decode("utf-8"), source_type="text_content")
            reports.append(self._store_chunks(knowledge_base_id, chunks, IngestionReport()))

        for document in self.repository.list_documents(knowledge_base_id):
            self.repository.update_document(document.id, expected_chunks=0, stored_chunks=0)
            data = self.blob_store.get_original(knowledge_base_id, document.id)
            if data is None:
                logger.warning(f"No stored content for document {document.id}, skipping")
                continue

            if document.is_crawl_document:
                chunks = self.chunker.process_crawl_page(
                    knowledge_base_id,
                    document.id,
                    url=document.metadata.get("source_url", document.filename),
                    text=data.decode("utf-8", errors="replace"),
                    title=document.metadata.get("title", ""),
                    links=document.metadata.get("links"),
                )
                reports.append(
                    self._store_chunks(knowledge_base_id, chunks, IngestionReport(document_id=document.id))
                )
            else:
                reports.append(
                    self._ingest_stored_document(knowledge_base_id, document, data, prefer_stored_pages=True)
                )

        partial = [r for r in reports if r.partial]
        logger.info(
            f"Refresh of {knowledge_base_id} finished: {len(reports)} sources, {len(partial)} partial"
        )
        return reports

    def verify_ingestion(self, knowledge_base_id: str) -> List[Dict[str, Any]]:
        """
        List documents whose stored chunk count is below the expected count.

        Counts come from the vector store, not the document record.
        """
        incomplete = []
        for document in self.repository.list_documents(knowledge_base_id):
            stored = self.vector_store.count_for_document(knowledge_base_id, document.id)
            if stored < document.expected_chunks:
                incomplete.append({
                    "document_id": document.id,
                    "filename": document.filename,
                    "expected_chunks": document.expected_chunks,
                    "stored_chunks": stored,
                })
        return incomplete
