"""
Blob Store Module

Keeps original uploaded bytes and OCR page artifacts on the local
filesystem, addressable by knowledge base, document and page:

    <root>/<knowledge_base_id>/<document_id>/original
    <root>/<knowledge_base_id>/<document_id>/page_<n>.md
"""

import logging
import re
import shutil
from pathlib import Path
from typing import List, Optional, Dict

logger = logging.getLogger(__name__)


_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")
_PAGE_FILE = re.compile(r"^page_(\d+)\.md$")


class BlobStore:
    """Filesystem-backed blob storage."""

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"BlobStore initialized at {self.root}")

    @staticmethod
    def _check(key: str) -> str:
        if not key or not _SAFE_KEY.match(key) or key in (".", ".."):
            raise ValueError(f"Invalid blob key component: {key!r}")
        return key

    def _document_dir(self, knowledge_base_id: str, document_id: str) -> Path:
        return self.root / self._check(knowledge_base_id) / self._check(document_id)

    def put_original(self, knowledge_base_id: str, document_id: str, data: bytes) -> Path:
        path = self._document_dir(knowledge_base_id, document_id) / "original"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def get_original(self, knowledge_base_id: str, document_id: str) -> Optional[bytes]:
        path = self._document_dir(knowledge_base_id, document_id) / "original"
        return path.read_bytes() if path.exists() else None

    def put_page(self, knowledge_base_id: str, document_id: str, page_number: int, markdown: str) -> Path:
        if page_number < 1:
            raise ValueError("Page numbers start at 1")
        path = self._document_dir(knowledge_base_id, document_id) / f"page_{page_number}.md"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(markdown, encoding="utf-8")
        return path

    def get_page(self, knowledge_base_id: str, document_id: str, page_number: int) -> Optional[str]:
        path = self._document_dir(knowledge_base_id, document_id) / f"page_{page_number}.md"
        return path.read_text(encoding="utf-8") if path.exists() else None

    def list_pages(self, knowledge_base_id: str, document_id: str) -> List[Dict[str, object]]:
        """Stored pages in page order, as ``{"page_number", "markdown"}`` dicts."""
        directory = self._document_dir(knowledge_base_id, document_id)
        if not directory.exists():
            return []

        pages = []
        for path in directory.iterdir():
            match = _PAGE_FILE.match(path.name)
            if match:
                pages.append({
                    "page_number": int(match.group(1)),
                    "markdown": path.read_text(encoding="utf-8"),
                })
        return sorted(pages, key=lambda p: p["page_number"])

    def delete_document(self, knowledge_base_id: str, document_id: str) -> None:
        shutil.rmtree(self._document_dir(knowledge_base_id, document_id), ignore_errors=True)

    def delete_knowledge_base(self, knowledge_base_id: str) -> None:
        shutil.rmtree(self.root / self._check(knowledge_base_id), ignore_errors=True)
        logger.info(f"Deleted blobs for knowledge base {knowledge_base_id}")
