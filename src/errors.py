"""
Error taxonomy shared across the pipeline.

Every error carries a stable ``code`` so callers (an HTTP layer, a worker,
tests) can branch on the kind of failure without matching messages.
"""

import threading
from typing import Any, Dict, List, Optional


class KnowledgeBaseError(Exception):
    """Base class for all pipeline errors."""

    code = "internal_error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class InvalidInput(KnowledgeBaseError):
    """Request failed validation before any work was done."""

    code = "invalid_input"


class Unauthorized(KnowledgeBaseError):
    """Caller may not access the requested knowledge base."""

    code = "unauthorized"


class NotFound(KnowledgeBaseError):
    """Referenced record does not exist."""

    code = "not_found"


class Cancelled(KnowledgeBaseError):
    """The caller aborted the request."""

    code = "cancelled"


class RetrievalError(KnowledgeBaseError):
    """Embedding store or embedding provider failed."""

    code = "retrieval_error"


class RetrievalDegraded(RetrievalError):
    """Retrieval failed and the answer proceeds without grounding context."""

    code = "retrieval_degraded"


class GenerationFailed(KnowledgeBaseError):
    """The language model could not produce an answer."""

    code = "generation_failed"


class OCRFailed(KnowledgeBaseError):
    """The OCR provider rejected or could not process a document."""

    code = "ocr_failed"


class IngestionPartial(KnowledgeBaseError):
    """Some chunks of a document could not be stored."""

    code = "ingestion_partial"

    def __init__(self, message: str = "", report: Any = None):
        super().__init__(message)
        self.report = report


class InvalidTransition(KnowledgeBaseError):
    """A crawl status change that the state machine does not allow."""

    code = "invalid_transition"


class CrawlInProgress(KnowledgeBaseError):
    """A crawl is already running for this knowledge base."""

    code = "crawl_in_progress"

    def __init__(self, message: str = "", run_id: Optional[str] = None):
        super().__init__(message, run_id=run_id)
        self.run_id = run_id


class CrawlStuck(KnowledgeBaseError):
    """A crawl made no progress within the allowed window."""

    code = "crawl_stuck"


class CancellationToken:
    """
    Cooperative cancellation flag passed into long-running calls.

    Retrieval and generation check the token between steps; a cancelled
    token turns into a ``Cancelled`` error at the next check.
    """

    def __init__(self):
        self._event = threading.Event()
        self._callbacks: List[Any] = []
        self._lock = threading.Lock()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, callback) -> None:
        """Register a callback run once when the token is cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Request was cancelled by the user.")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """Raise ``Cancelled`` when an optional token has been cancelled."""
    if token is not None:
        token.raise_if_cancelled()
