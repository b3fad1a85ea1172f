"""
Crawl Coordinator Module

Drives an external crawler (Apify website-content-crawler) to turn a seed
URL into a bounded set of page documents, and tracks the long-running run
as state on the knowledge base.

State machine:

    idle -> crawling -> ready | failed
    crawling -> idle              (reset of a stuck run)
    ready | failed -> crawling    (re-crawl)

Starting a crawl never blocks on the crawl itself: the external run is
launched and a handle is returned; callers poll ``check_status``.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from config.settings import get_settings, CrawlConfig
from src.errors import (
    CrawlInProgress,
    CrawlStuck,
    InvalidInput,
    InvalidTransition,
    KnowledgeBaseError,
    NotFound,
)
from src.models import CrawlRun, CrawlStatus, KnowledgeBase, utcnow

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    CrawlStatus.IDLE: {CrawlStatus.CRAWLING},
    CrawlStatus.CRAWLING: {CrawlStatus.READY, CrawlStatus.FAILED, CrawlStatus.IDLE},
    CrawlStatus.READY: {CrawlStatus.CRAWLING},
    CrawlStatus.FAILED: {CrawlStatus.CRAWLING},
}


def transition(crawl: CrawlRun, target: CrawlStatus, **changes: Any) -> CrawlRun:
    """
    Return a copy of ``crawl`` moved to ``target``.

    Raises:
        InvalidTransition: If the state machine does not allow the move
    """
    if target not in ALLOWED_TRANSITIONS[crawl.status]:
        raise InvalidTransition(
            f"Cannot move crawl from {crawl.status.value} to {target.value}"
        )
    return crawl.evolve(status=target, **changes)


def record_progress(crawl: CrawlRun, page_count: int, at: datetime) -> CrawlRun:
    """Update the page counter of a running crawl."""
    if crawl.status != CrawlStatus.CRAWLING:
        raise InvalidTransition(f"Cannot record progress on a {crawl.status.value} crawl")
    return crawl.evolve(page_count=page_count, last_progress_at=at)


# Provider side

TERMINAL_STATUSES = {"SUCCEEDED", "FAILED", "ABORTED", "TIMED-OUT"}
NOT_FOUND = "NOT_FOUND"

_MARKDOWN_LINK = re.compile(r"\[[^\]]*\]\((https?://[^)\s]+)\)")


@dataclass
class CrawlProgress:
    """Status of an external crawl run."""
    status: str
    item_count: int = 0
    finished_at: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCEEDED"


@dataclass
class CrawledPage:
    """One page returned by the crawler."""
    url: str
    text: str
    title: str = ""
    markdown: str = ""
    links: List[str] = field(default_factory=list)


@dataclass
class CrawlHandle:
    """Returned by ``start_crawl``; ``started`` is False for a no-op."""
    run_id: Optional[str]
    workflow_id: Optional[str]
    status: CrawlStatus
    started: bool = True


def extract_links(markdown: str) -> List[str]:
    """Absolute links found in markdown, in order, without duplicates."""
    seen: Dict[str, None] = {}
    for url in _MARKDOWN_LINK.findall(markdown or ""):
        seen.setdefault(url.split("#")[0], None)
    return [url for url in seen if url]


class ApifyCrawlProvider:
    """
    Apify website-content-crawler client.

    Example:
        provider = ApifyCrawlProvider()
        run_id = provider.start_crawl("https://example.com", max_pages=25)
        progress = provider.get_status(run_id)
        if progress.succeeded:
            pages = provider.get_results(run_id)
    """

    def __init__(self, config: Optional[CrawlConfig] = None, client: Optional[httpx.Client] = None):
        self.config = config or get_settings().crawl
        if not self.config.apify_api_token:
            raise ValueError("Apify token not found. Set APIFY_API_TOKEN environment variable.")
        self._client = client or httpx.Client(
            base_url=self.config.base_url,
            timeout=self.config.request_timeout,
        )

        logger.info(f"ApifyCrawlProvider initialized: actor={self.config.actor_id}")

    @property
    def _params(self) -> Dict[str, str]:
        return {"token": self.config.apify_api_token}

    def start_crawl(self, seed_url: str, max_pages: int) -> str:
        """Launch a run restricted to the seed URL's host; returns the run id."""
        host = urlparse(seed_url).netloc
        run_input = {
            "startUrls": [{"url": seed_url}],
            "maxCrawlPages": max_pages,
            "includeUrlGlobs": [
                {"glob": f"http://{host}/**"},
                {"glob": f"https://{host}/**"},
            ],
            "saveMarkdown": True,
        }
        response = self._client.post(
            f"/acts/{self.config.actor_id}/runs",
            params=self._params,
            json=run_input,
        )
        response.raise_for_status()
        run_id = response.json()["data"]["id"]
        logger.info(f"Started Apify run {run_id} for {seed_url} (max {max_pages} pages)")
        return run_id

    def _get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        response = self._client.get(f"/actor-runs/{run_id}", params=self._params)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()["data"]

    def get_status(self, run_id: str) -> CrawlProgress:
        run = self._get_run(run_id)
        if run is None:
            return CrawlProgress(status=NOT_FOUND)
        stats = run.get("stats") or {}
        return CrawlProgress(
            status=run.get("status", "RUNNING"),
            item_count=stats.get("itemCount") or stats.get("requestsFinished") or 0,
            finished_at=run.get("finishedAt"),
        )

    def get_results(self, run_id: str) -> List[CrawledPage]:
        run = self._get_run(run_id)
        if run is None:
            raise NotFound(f"Crawl run {run_id} not found")

        response = self._client.get(
            f"/datasets/{run['defaultDatasetId']}/items",
            params={**self._params, "format": "json", "clean": "true", "limit": self.config.max_pages},
        )
        response.raise_for_status()

        pages = []
        for item in response.json():
            markdown = item.get("markdown") or ""
            pages.append(CrawledPage(
                url=item.get("url", ""),
                text=item.get("text") or markdown,
                title=(item.get("metadata") or {}).get("title") or item.get("title") or "",
                markdown=markdown,
                links=extract_links(markdown),
            ))
        return pages

    def close(self) -> None:
        self._client.close()


class CrawlCoordinator:
    """
    Owns the crawl lifecycle of every knowledge base.

    All crawl state writes go through ``transition``/``record_progress`` and
    the repository's compare-and-set, so two concurrent starts resolve to one
    run and the loser gets the winner's handle back.
    """

    def __init__(
        self,
        repository,
        ingestion,
        provider: ApifyCrawlProvider,
        config: Optional[CrawlConfig] = None,
        enrichment=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.ingestion = ingestion
        self.provider = provider
        self.config = config or get_settings().crawl
        self.enrichment = enrichment
        self.clock = clock

    def _get(self, knowledge_base_id: str) -> KnowledgeBase:
        knowledge_base = self.repository.get_knowledge_base(knowledge_base_id)
        if knowledge_base is None:
            raise NotFound(f"Knowledge base {knowledge_base_id} not found")
        return knowledge_base

    @staticmethod
    def _validate_url(url: str) -> str:
        parsed = urlparse((url or "").strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidInput(f"Invalid crawl URL: {url!r}")
        return parsed.geturl()

    def _swap(self, knowledge_base: KnowledgeBase, new_crawl: CrawlRun, **kwargs: Any) -> bool:
        return self.repository.compare_and_set_crawl(
            knowledge_base.id,
            knowledge_base.crawl.status,
            new_crawl,
            expected_run_id=knowledge_base.crawl.run_id if knowledge_base.crawl.status == CrawlStatus.CRAWLING else None,
            **kwargs,
        )

    def start_crawl(self, knowledge_base_id: str, url: str, max_pages: Optional[int] = None) -> CrawlHandle:
        """
        Launch a crawl for a knowledge base.

        Raises:
            CrawlInProgress: A crawl is already running (carries its run id)
            InvalidInput: The URL is not http(s)
        """
        url = self._validate_url(url)
        max_pages = max_pages or self.config.max_pages
        knowledge_base = self._get(knowledge_base_id)

        if knowledge_base.crawl.status == CrawlStatus.CRAWLING:
            raise CrawlInProgress(
                f"A crawl is already running for {knowledge_base_id}",
                run_id=knowledge_base.crawl.run_id or knowledge_base.crawl.workflow_id,
            )

        previous_url = knowledge_base.crawl_url
        now = self.clock()
        workflow_id = f"crawl_{uuid.uuid4().hex}"
        claimed = transition(
            knowledge_base.crawl,
            CrawlStatus.CRAWLING,
            run_id=None,
            workflow_id=workflow_id,
            page_count=0,
            last_run_at=now,
            last_progress_at=now,
            error=None,
        )
        if not self._swap(knowledge_base, claimed, crawl_url=url):
            current = self._get(knowledge_base_id)
            logger.info(f"Concurrent crawl start on {knowledge_base_id}; returning existing run")
            return CrawlHandle(
                run_id=current.crawl.run_id,
                workflow_id=current.crawl.workflow_id,
                status=current.crawl.status,
                started=False,
            )

        if previous_url and previous_url != url:
            logger.info(f"Crawl URL changed for {knowledge_base_id}, removing stale crawl content")
            self.ingestion.delete_crawl_documents(knowledge_base_id)

        try:
            run_id = self.provider.start_crawl(url, max_pages)
        except Exception as e:
            logger.error(f"Failed to start crawl for {knowledge_base_id}: {e}")
            self.repository.compare_and_set_crawl(
                knowledge_base_id,
                CrawlStatus.CRAWLING,
                transition(claimed, CrawlStatus.FAILED, error=str(e)),
            )
            raise

        running = claimed.evolve(run_id=run_id)
        self.repository.compare_and_set_crawl(knowledge_base_id, CrawlStatus.CRAWLING, running)
        return CrawlHandle(run_id=run_id, workflow_id=workflow_id, status=CrawlStatus.CRAWLING)

    def is_stuck(self, crawl: CrawlRun) -> bool:
        """True when a running crawl has reported no progress within the window."""
        if crawl.status != CrawlStatus.CRAWLING:
            return False
        last_seen = crawl.last_progress_at or crawl.last_run_at
        if last_seen is None:
            return True
        return self.clock() - last_seen > timedelta(minutes=self.config.stuck_after_minutes)

    def reset(self, knowledge_base_id: str) -> bool:
        """Move a running crawl back to idle. Returns False if none was running."""
        knowledge_base = self._get(knowledge_base_id)
        if knowledge_base.crawl.status != CrawlStatus.CRAWLING:
            return False
        reset = transition(knowledge_base.crawl, CrawlStatus.IDLE, run_id=None, workflow_id=None)
        swapped = self._swap(knowledge_base, reset)
        if swapped:
            logger.warning(f"Crawl for {knowledge_base_id} reset to idle")
        return swapped

    def _recover_stuck(self, knowledge_base: KnowledgeBase, reason: str) -> None:
        error = CrawlStuck(f"Crawl for {knowledge_base.id} is stuck: {reason}")
        logger.warning(str(error))
        self.reset(knowledge_base.id)

    def check_status(self, knowledge_base_id: str) -> Dict[str, Any]:
        """
        Reconcile the stored crawl state with the external run.

        Finished runs are processed here; stuck or vanished runs are reset.
        Returns the status snapshot after reconciliation.
        """
        knowledge_base = self._get(knowledge_base_id)
        crawl = knowledge_base.crawl
        if crawl.status != CrawlStatus.CRAWLING:
            return self.get_status(knowledge_base_id)

        if crawl.run_id is None:
            if self.is_stuck(crawl):
                self._recover_stuck(knowledge_base, "external run was never started")
            return self.get_status(knowledge_base_id)

        try:
            progress = self.provider.get_status(crawl.run_id)
        except httpx.HTTPError as e:
            logger.warning(f"Could not poll crawl run {crawl.run_id}: {e}")
            return self.get_status(knowledge_base_id)

        if progress.status == NOT_FOUND:
            self._recover_stuck(knowledge_base, f"run {crawl.run_id} not found")
        elif progress.succeeded:
            self.process_results(knowledge_base_id, crawl.run_id)
        elif progress.finished:
            failed = transition(crawl, CrawlStatus.FAILED, error=f"Crawl run {progress.status}")
            self._swap(knowledge_base, failed)
            logger.error(f"Crawl run {crawl.run_id} ended with {progress.status}")
        elif progress.item_count > crawl.page_count:
            self._swap(knowledge_base, record_progress(crawl, progress.item_count, self.clock()))
        elif self.is_stuck(crawl):
            self._recover_stuck(knowledge_base, "no progress reported")

        return self.get_status(knowledge_base_id)

    def process_results(self, knowledge_base_id: str, run_id: str) -> int:
        """
        Ingest every page of a finished run and mark the crawl ready.

        Page count and progress time are updated after each page so pollers
        see ingestion advance. Returns the number of pages stored.
        """
        try:
            pages = self.provider.get_results(run_id)
        except (httpx.HTTPError, KnowledgeBaseError) as e:
            logger.error(f"Failed to fetch results for crawl run {run_id}: {e}")
            knowledge_base = self._get(knowledge_base_id)
            if knowledge_base.crawl.status == CrawlStatus.CRAWLING:
                self._swap(knowledge_base, transition(knowledge_base.crawl, CrawlStatus.FAILED, error=str(e)))
            return 0

        crawl_url = self._get(knowledge_base_id).crawl_url
        stored = 0
        for page in pages:
            if len(page.text.strip()) < self.config.min_page_chars:
                logger.debug(f"Skipping near-empty page {page.url}")
                continue

            try:
                self.ingestion.ingest_crawl_page(
                    knowledge_base_id,
                    url=page.url,
                    text=page.text,
                    title=page.title,
                    links=page.links,
                    run_id=run_id,
                    crawled_from=crawl_url,
                )
            except KnowledgeBaseError as e:
                logger.error(f"Failed to ingest crawled page {page.url}: {e}")
                continue
            stored += 1

            knowledge_base = self._get(knowledge_base_id)
            if knowledge_base.crawl.run_id != run_id or knowledge_base.crawl.status != CrawlStatus.CRAWLING:
                logger.warning(f"Crawl run {run_id} was reset during processing, stopping")
                return stored
            self._swap(knowledge_base, record_progress(knowledge_base.crawl, stored, self.clock()))

        knowledge_base = self._get(knowledge_base_id)
        if knowledge_base.crawl.status == CrawlStatus.CRAWLING and knowledge_base.crawl.run_id == run_id:
            ready = transition(
                knowledge_base.crawl,
                CrawlStatus.READY,
                page_count=stored,
                last_run_at=self.clock(),
            )
            self._swap(knowledge_base, ready)
            logger.info(f"Crawl run {run_id} for {knowledge_base_id} ready with {stored} pages")

            if self.enrichment is not None:
                self.enrichment.schedule(knowledge_base_id)

        return stored

    def get_status(self, knowledge_base_id: str) -> Dict[str, Any]:
        """Snapshot of a knowledge base's crawl state for polling clients."""
        knowledge_base = self._get(knowledge_base_id)
        crawl = knowledge_base.crawl
        return {
            "status": crawl.status.value,
            "run_id": crawl.run_id,
            "workflow_id": crawl.workflow_id,
            "page_count": crawl.page_count,
            "last_run_at": crawl.last_run_at.isoformat() if crawl.last_run_at else None,
            "crawl_url": knowledge_base.crawl_url,
            "error": crawl.error,
        }
