"""
Tests for the crawl coordinator, its state machine and the Apify client.
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import httpx
import pytest

from src.crawler import (
    NOT_FOUND,
    ApifyCrawlProvider,
    CrawlCoordinator,
    CrawledPage,
    CrawlProgress,
    extract_links,
    record_progress,
    transition,
)
from src.errors import CrawlInProgress, InvalidInput, InvalidTransition, NotFound
from src.models import CrawlRun, CrawlStatus, KnowledgeBase


START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, minutes):
        self.now += timedelta(minutes=minutes)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    provider = Mock(spec=ApifyCrawlProvider)
    provider.start_crawl.return_value = "run_1"
    return provider


@pytest.fixture
def enrichment():
    return Mock()


@pytest.fixture
def coordinator(repository, ingestion, provider, crawl_config, enrichment, clock):
    return CrawlCoordinator(repository, ingestion, provider, config=crawl_config,
                            enrichment=enrichment, clock=clock)


@pytest.fixture
def kb(repository):
    return repository.create_knowledge_base(KnowledgeBase(name="Site", owner_id="owner_1"))


def page(url, text="A page with enough text to be kept.", links=None):
    return CrawledPage(url=url, text=text, title=url.rsplit("/", 1)[-1], links=links or [])


class TestStateMachine:
    @pytest.mark.parametrize("source,target", [
        (CrawlStatus.IDLE, CrawlStatus.CRAWLING),
        (CrawlStatus.CRAWLING, CrawlStatus.READY),
        (CrawlStatus.CRAWLING, CrawlStatus.FAILED),
        (CrawlStatus.CRAWLING, CrawlStatus.IDLE),
        (CrawlStatus.READY, CrawlStatus.CRAWLING),
        (CrawlStatus.FAILED, CrawlStatus.CRAWLING),
    ])
    def test_allowed(self, source, target):
        assert transition(CrawlRun(status=source), target).status == target

    @pytest.mark.parametrize("source,target", [
        (CrawlStatus.IDLE, CrawlStatus.READY),
        (CrawlStatus.IDLE, CrawlStatus.FAILED),
        (CrawlStatus.CRAWLING, CrawlStatus.CRAWLING),
        (CrawlStatus.READY, CrawlStatus.FAILED),
        (CrawlStatus.READY, CrawlStatus.IDLE),
    ])
    def test_rejected(self, source, target):
        with pytest.raises(InvalidTransition):
            transition(CrawlRun(status=source), target)

    def test_transition_does_not_mutate(self):
        crawl = CrawlRun()
        transition(crawl, CrawlStatus.CRAWLING, run_id="run_1")
        assert crawl.status == CrawlStatus.IDLE

    def test_progress_only_while_crawling(self):
        running = CrawlRun(status=CrawlStatus.CRAWLING)
        assert record_progress(running, 3, START).page_count == 3

        with pytest.raises(InvalidTransition):
            record_progress(CrawlRun(status=CrawlStatus.READY), 3, START)


class TestExtractLinks:
    def test_links_in_order_without_duplicates(self):
        markdown = (
            "See [pricing](https://example.com/pricing) and [docs](https://example.com/docs#intro). "
            "Again [pricing](https://example.com/pricing). Relative [x](/local) ignored."
        )
        assert extract_links(markdown) == ["https://example.com/pricing", "https://example.com/docs"]


class TestStartCrawl:
    def test_start_moves_to_crawling(self, coordinator, repository, kb, provider):
        handle = coordinator.start_crawl(kb.id, "https://example.com")

        assert handle.started
        assert handle.run_id == "run_1"
        crawl = repository.get_knowledge_base(kb.id).crawl
        assert crawl.status == CrawlStatus.CRAWLING
        assert crawl.run_id == "run_1"
        assert crawl.last_run_at == START
        provider.start_crawl.assert_called_once_with("https://example.com", 25)

    def test_start_while_crawling_is_rejected(self, coordinator, kb, provider):
        coordinator.start_crawl(kb.id, "https://example.com")
        provider.start_crawl.reset_mock()

        with pytest.raises(CrawlInProgress) as exc_info:
            coordinator.start_crawl(kb.id, "https://example.com")

        assert exc_info.value.run_id == "run_1"
        provider.start_crawl.assert_not_called()

    def test_concurrent_start_returns_existing_run(self, coordinator, repository, kb, provider):
        """A start that read the knowledge base before another start claimed it gets the winner's run."""
        stale = KnowledgeBase.from_dict(kb.to_dict())
        coordinator.start_crawl(kb.id, "https://example.com")

        real_get = repository.get_knowledge_base
        snapshots = [stale]
        repository.get_knowledge_base = lambda kb_id: snapshots.pop() if snapshots else real_get(kb_id)

        handle = coordinator.start_crawl(kb.id, "https://example.com")

        assert handle.started is False
        assert handle.run_id == "run_1"
        assert provider.start_crawl.call_count == 1

    @pytest.mark.parametrize("url", ["", "example.com", "ftp://example.com", "https://"])
    def test_invalid_url(self, coordinator, kb, url):
        with pytest.raises(InvalidInput):
            coordinator.start_crawl(kb.id, url)

    def test_unknown_kb(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.start_crawl("missing", "https://example.com")

    def test_provider_failure_marks_failed(self, coordinator, repository, kb, provider):
        provider.start_crawl.side_effect = httpx.ConnectError("refused")

        with pytest.raises(httpx.ConnectError):
            coordinator.start_crawl(kb.id, "https://example.com")

        crawl = repository.get_knowledge_base(kb.id).crawl
        assert crawl.status == CrawlStatus.FAILED
        assert "refused" in crawl.error

    def test_recrawl_after_ready(self, coordinator, repository, kb, provider):
        repository.compare_and_set_crawl(kb.id, CrawlStatus.IDLE, CrawlRun(status=CrawlStatus.READY))
        provider.start_crawl.return_value = "run_2"

        assert coordinator.start_crawl(kb.id, "https://example.com").run_id == "run_2"

    def test_changed_url_removes_old_crawl_pages(self, coordinator, repository, ingestion, kb):
        coordinator.start_crawl(kb.id, "https://old.example.com")
        ingestion.ingest_crawl_page(kb.id, "https://old.example.com/a", "Old crawled content.")
        coordinator.reset(kb.id)

        coordinator.start_crawl(kb.id, "https://new.example.com")

        assert repository.list_documents(kb.id) == []
        assert repository.get_knowledge_base(kb.id).crawl_url == "https://new.example.com"


class TestCheckStatus:
    def test_progress_is_recorded(self, coordinator, provider, kb, clock):
        coordinator.start_crawl(kb.id, "https://example.com")
        provider.get_status.return_value = CrawlProgress(status="RUNNING", item_count=4)
        clock.advance(5)

        status = coordinator.check_status(kb.id)

        assert status["status"] == "crawling"
        assert status["page_count"] == 4

    def test_stuck_run_is_reset(self, coordinator, provider, kb, clock):
        coordinator.start_crawl(kb.id, "https://example.com")
        provider.get_status.return_value = CrawlProgress(status="RUNNING", item_count=0)
        clock.advance(31)

        assert coordinator.check_status(kb.id)["status"] == "idle"

    def test_vanished_run_is_reset(self, coordinator, provider, kb):
        coordinator.start_crawl(kb.id, "https://example.com")
        provider.get_status.return_value = CrawlProgress(status=NOT_FOUND)

        assert coordinator.check_status(kb.id)["status"] == "idle"

    def test_failed_run(self, coordinator, provider, kb):
        coordinator.start_crawl(kb.id, "https://example.com")
        provider.get_status.return_value = CrawlProgress(status="ABORTED")

        status = coordinator.check_status(kb.id)

        assert status["status"] == "failed"
        assert "ABORTED" in status["error"]

    def test_succeeded_run_is_ingested(self, coordinator, provider, repository, vector_store, kb, enrichment):
        coordinator.start_crawl(kb.id, "https://example.com")
        provider.get_status.return_value = CrawlProgress(status="SUCCEEDED", item_count=3)
        provider.get_results.return_value = [
            page("https://example.com/"),
            page("https://example.com/pricing", links=["https://example.com/"]),
            page("https://example.com/empty", text="tiny"),
        ]

        status = coordinator.check_status(kb.id)

        assert status["status"] == "ready"
        assert status["page_count"] == 2
        documents = repository.list_documents(kb.id)
        assert sorted(d.filename for d in documents) == ["crawl_index.txt", "crawl_pricing.txt"]
        assert all(d.metadata["crawl_run_id"] == "run_1" for d in documents)
        assert vector_store.count(kb.id) == 2
        enrichment.schedule.assert_called_once_with(kb.id)

    def test_poll_error_keeps_state(self, coordinator, provider, kb):
        coordinator.start_crawl(kb.id, "https://example.com")
        provider.get_status.side_effect = httpx.ReadTimeout("slow")

        assert coordinator.check_status(kb.id)["status"] == "crawling"

    def test_idle_kb_is_untouched(self, coordinator, provider, kb):
        assert coordinator.check_status(kb.id)["status"] == "idle"
        provider.get_status.assert_not_called()


class TestProcessResults:
    def test_results_fetch_failure_marks_failed(self, coordinator, provider, kb):
        coordinator.start_crawl(kb.id, "https://example.com")
        provider.get_results.side_effect = NotFound("Crawl run run_1 not found")

        assert coordinator.process_results(kb.id, "run_1") == 0
        assert coordinator.get_status(kb.id)["status"] == "failed"

    def test_reset_during_processing_stops(self, coordinator, provider, kb):
        coordinator.start_crawl(kb.id, "https://example.com")

        def results(run_id):
            coordinator.reset(kb.id)
            return [page("https://example.com/a"), page("https://example.com/b")]

        provider.get_results.side_effect = results

        assert coordinator.process_results(kb.id, "run_1") == 1
        assert coordinator.get_status(kb.id)["status"] == "idle"


class TestApifyCrawlProvider:
    """Tests for the Apify HTTP client using httpx.MockTransport."""

    @pytest.fixture
    def requests(self):
        return []

    @pytest.fixture
    def apify(self, crawl_config, requests):
        def handler(request):
            requests.append(request)
            path = request.url.path
            if request.method == "POST" and path.endswith("/runs"):
                return httpx.Response(201, json={"data": {"id": "run_1"}})
            if path == "/v2/actor-runs/run_1":
                return httpx.Response(200, json={"data": {
                    "id": "run_1", "status": "SUCCEEDED", "defaultDatasetId": "ds_1",
                    "stats": {"itemCount": 2}, "finishedAt": "2026-01-01T12:30:00Z",
                }})
            if path == "/v2/datasets/ds_1/items":
                return httpx.Response(200, json=[
                    {"url": "https://example.com/", "text": "Home text",
                     "markdown": "Go to [pricing](https://example.com/pricing)",
                     "metadata": {"title": "Home"}},
                    {"url": "https://example.com/pricing", "markdown": "Plans start at $10"},
                ])
            return httpx.Response(404, json={"error": {"type": "record-not-found"}})

        client = httpx.Client(base_url=crawl_config.base_url, transport=httpx.MockTransport(handler))
        return ApifyCrawlProvider(crawl_config, client=client)

    def test_requires_token(self):
        from config.settings import CrawlConfig

        with pytest.raises(ValueError, match="Apify token"):
            ApifyCrawlProvider(CrawlConfig(apify_api_token=None))

    def test_start_crawl_is_scoped_to_host(self, apify, requests):
        assert apify.start_crawl("https://example.com/docs", max_pages=10) == "run_1"

        body = json.loads(requests[0].content)
        assert body["startUrls"] == [{"url": "https://example.com/docs"}]
        assert body["maxCrawlPages"] == 10
        assert {"glob": "https://example.com/**"} in body["includeUrlGlobs"]
        assert requests[0].url.params["token"] == "test-token"

    def test_get_status(self, apify):
        progress = apify.get_status("run_1")

        assert progress.succeeded
        assert progress.finished
        assert progress.item_count == 2

    def test_missing_run(self, apify):
        assert apify.get_status("run_404").status == NOT_FOUND
        with pytest.raises(NotFound):
            apify.get_results("run_404")

    def test_get_results(self, apify):
        pages = apify.get_results("run_1")

        assert pages[0].title == "Home"
        assert pages[0].text == "Home text"
        assert pages[0].links == ["https://example.com/pricing"]
        assert pages[1].text == "Plans start at $10"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
