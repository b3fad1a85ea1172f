"""
Document Processor Module

Converts non-text source files (PDFs, images) into per-page markdown using
Mistral OCR, persists every page as its own artifact, then hands the pages
to ingestion for chunking and embedding.

Pages are written to the blob store before any embedding happens, so an
embedding failure never costs a second OCR run: the pages stay retrievable
and a refresh can re-chunk them.
"""

import base64
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from config.settings import get_settings, OCRConfig
from src.blob_store import BlobStore
from src.errors import KnowledgeBaseError, OCRFailed
from src.retry import call_with_retry

logger = logging.getLogger(__name__)


# Declared media types that are already text and skip OCR
TEXT_MEDIA_TYPES = {
    "text/plain",
    "text/markdown",
    "text/x-markdown",
    "application/json",
    "text/csv",
}


def needs_ocr(media_type: str) -> bool:
    """Classify by declared type only; content is never sniffed."""
    base_type = (media_type or "").split(";")[0].strip().lower()
    return base_type not in TEXT_MEDIA_TYPES


@dataclass
class OCRImage:
    """An image embedded in a page, with its bounding box."""
    id: str
    page_number: int
    top_left_x: Optional[float] = None
    top_left_y: Optional[float] = None
    bottom_right_x: Optional[float] = None
    bottom_right_y: Optional[float] = None
    image_base64: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "page_number": self.page_number,
            "bounding_box": {
                "top_left_x": self.top_left_x,
                "top_left_y": self.top_left_y,
                "bottom_right_x": self.bottom_right_x,
                "bottom_right_y": self.bottom_right_y,
            },
            "image_base64": self.image_base64,
        }


@dataclass
class OCRPage:
    """One OCR'd page (1-based)."""
    page_number: int
    markdown: str
    images: List[OCRImage] = field(default_factory=list)
    dimensions: Optional[Dict[str, Any]] = None  # dpi, height, width

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_number": self.page_number,
            "markdown": self.markdown,
            "images": [image.to_dict() for image in self.images],
            "dimensions": self.dimensions,
        }


@dataclass
class OCRResult:
    """
    Output of ``DocumentProcessor.process_document``.

    ``ingestion_report`` is set when pages were handed to ingestion;
    ``ingestion_error`` records why ingestion failed after OCR succeeded.
    """
    pages: List[OCRPage]
    full_text: str
    images: List[OCRImage]
    total_pages: int
    processed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ingestion_report: Any = None
    ingestion_error: Optional[str] = None


class BaseOCRProvider(ABC):
    """Abstract OCR provider: raw document bytes in, pages out."""

    @abstractmethod
    def ocr(self, data: bytes, media_type: str) -> List[OCRPage]:
        pass


class MistralOCRProvider(BaseOCRProvider):
    """
    Mistral OCR provider.

    PDFs are sent as a base64 ``document_url``; images as an ``image_url``.
    """

    def __init__(self, config: Optional[OCRConfig] = None):
        self.config = config or get_settings().ocr
        self._client = None

        logger.info(f"Initializing MistralOCRProvider: model={self.config.model}")

    def _get_client(self):
        """Get or create Mistral client."""
        if self._client is None:
            try:
                from mistralai import Mistral
            except ImportError:
                raise ImportError(
                    "mistralai package required. "
                    "Install with: pip install mistralai"
                )

            api_key = self.config.mistral_api_key or os.getenv("MISTRAL_API_KEY")
            if not api_key:
                raise ValueError(
                    "Mistral API key not found. Set MISTRAL_API_KEY environment variable."
                )
            self._client = Mistral(api_key=api_key)
        return self._client

    @staticmethod
    def _document(data: bytes, media_type: str) -> Dict[str, str]:
        encoded = base64.b64encode(data).decode("ascii")
        if media_type.startswith("image/"):
            return {"type": "image_url", "image_url": f"data:{media_type};base64,{encoded}"}
        return {"type": "document_url", "document_url": f"data:{media_type or 'application/pdf'};base64,{encoded}"}

    @staticmethod
    def _convert_page(page: Any) -> OCRPage:
        page_number = page.index + 1
        images = [
            OCRImage(
                id=image.id,
                page_number=page_number,
                top_left_x=image.top_left_x,
                top_left_y=image.top_left_y,
                bottom_right_x=image.bottom_right_x,
                bottom_right_y=image.bottom_right_y,
                image_base64=image.image_base64,
            )
            for image in (page.images or [])
        ]
        dimensions = None
        if page.dimensions is not None:
            dimensions = {
                "dpi": page.dimensions.dpi,
                "height": page.dimensions.height,
                "width": page.dimensions.width,
            }
        return OCRPage(
            page_number=page_number,
            markdown=page.markdown or "",
            images=images,
            dimensions=dimensions,
        )

    def ocr(self, data: bytes, media_type: str) -> List[OCRPage]:
        client = self._get_client()
        response = call_with_retry(
            lambda: client.ocr.process(
                model=self.config.model,
                document=self._document(data, media_type),
                include_image_base64=self.config.include_images,
            ),
            max_retries=self.config.max_retries,
            backoff=self.config.retry_backoff,
            description="Mistral OCR",
        )
        pages = [self._convert_page(page) for page in response.pages]
        return sorted(pages, key=lambda p: p.page_number)


class DocumentProcessor:
    """
    Runs OCR for a stored document and persists its pages.

    Example:
        processor = DocumentProcessor(MistralOCRProvider(), blob_store)
        result = processor.process_document("kb_1", "doc_1", pdf_bytes)
        print(result.total_pages, result.full_text[:200])
    """

    def __init__(self, provider: BaseOCRProvider, blob_store: BlobStore):
        self.provider = provider
        self.blob_store = blob_store

    def process_document(
        self,
        knowledge_base_id: str,
        document_id: str,
        raw_bytes: bytes,
        media_type: str = "application/pdf",
        on_pages: Optional[Callable[[List[Dict[str, Any]]], Any]] = None,
    ) -> OCRResult:
        """
        OCR a document, store each page, then hand pages to ``on_pages``.

        Args:
            knowledge_base_id: Owning knowledge base
            document_id: Document the pages belong to
            raw_bytes: Original file content
            media_type: Declared media type
            on_pages: Ingestion callback receiving ``{"page_number", "markdown"}`` dicts

        Returns:
            OCRResult with pages, joined text and flattened images

        Raises:
            OCRFailed: The OCR provider failed after retries
        """
        logger.info(f"Running OCR for document {document_id} ({len(raw_bytes)} bytes)")
        try:
            pages = self.provider.ocr(raw_bytes, media_type)
        except (ImportError, ValueError):
            raise
        except Exception as e:
            raise OCRFailed(f"OCR failed for document {document_id}: {e}") from e

        for page in pages:
            self.blob_store.put_page(knowledge_base_id, document_id, page.page_number, page.markdown)

        result = OCRResult(
            pages=pages,
            full_text="\n\n".join(page.markdown for page in pages),
            images=[image for page in pages for image in page.images],
            total_pages=len(pages),
        )
        logger.info(f"OCR stored {result.total_pages} pages for document {document_id}")

        if on_pages is not None and pages:
            try:
                result.ingestion_report = on_pages(
                    [{"page_number": p.page_number, "markdown": p.markdown} for p in pages]
                )
            except KnowledgeBaseError as e:
                # Pages are already stored; a refresh can retry embedding
                logger.error(f"Embedding failed after OCR for document {document_id}: {e}")
                result.ingestion_error = str(e)

        return result
