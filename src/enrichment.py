"""
Enrichment Module

Best-effort side tasks run after a crawl completes:
- Important links: in-domain links ranked high/medium/low, capped at 15
- Recommendations: suggested questions generated from sampled chunks

Both run on a background executor. A failure is logged and never reaches
the ingestion result that triggered it.
"""

import json
import logging
import re
from concurrent.futures import Executor, Future
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from src.errors import KnowledgeBaseError, NotFound

logger = logging.getLogger(__name__)


IMPORTANCE_ORDER = {"high": 3, "medium": 2, "low": 1}
MAX_IMPORTANT_LINKS = 15
MAX_LOW_LINKS = 10
LINK_BATCH_SIZE = 20
MAX_RECOMMENDATIONS = 6

# (path keywords, category, importance, fallback text)
_HEURISTIC_RULES = [
    (("doc", "guide", "tutorial"), "documentation", "high", "Documentation"),
    (("api",), "api", "high", "API Reference"),
    (("pricing", "plans"), "pricing", "high", "Pricing"),
    (("contact", "support"), "contact", "high", "Contact"),
    (("about",), "about", "medium", "About"),
    (("feature",), "features", "medium", "Features"),
    (("blog", "news"), "content", "medium", "Blog"),
    (("faq", "help"), "support", "medium", "FAQ"),
]


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    match = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL)
    return match.group(1) if match else text


def text_from_path(path: str) -> str:
    """``/docs/getting-started.html`` becomes ``Docs Getting Started``."""
    text = re.sub(r"\.[^/.]+$", "", path.strip("/"))
    text = re.sub(r"[-_/]", " ", text)
    return " ".join(word[:1].upper() + word[1:] for word in text.split())


def sort_links(links: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order high before medium before low and keep the top 15."""
    ranked = sorted(links, key=lambda link: IMPORTANCE_ORDER.get(link.get("importance"), 0), reverse=True)
    return ranked[:MAX_IMPORTANT_LINKS]


class LinkRanker:
    """
    Ranks discovered links by importance.

    Uses the LLM when one is configured and falls back to URL-pattern
    heuristics when it is absent or its answer cannot be used.
    """

    def __init__(self, llm_service=None):
        self.llm_service = llm_service

    @staticmethod
    def in_domain(links: List[str], base_url: str) -> List[str]:
        origin = "{0.scheme}://{0.netloc}".format(urlparse(base_url))
        seen: Dict[str, None] = {}
        for url in links:
            if url and url.startswith(origin):
                seen.setdefault(url, None)
        return list(seen)

    def rank_heuristically(self, links: List[str], base_url: str) -> List[Dict[str, Any]]:
        ranked: List[Dict[str, Any]] = []
        for url in self.in_domain(links, base_url):
            path = urlparse(url).path.lower() or "/"
            text = text_from_path(path)
            category, importance, fallback = "other", "low", ""

            if path in ("/", "/index", "/home"):
                category, importance, fallback = "main", "high", "Home"
            else:
                for keywords, rule_category, rule_importance, rule_text in _HEURISTIC_RULES:
                    if any(k in path for k in keywords) and "api-key" not in path:
                        category, importance, fallback = rule_category, rule_importance, rule_text
                        break

            low_count = sum(1 for link in ranked if link["importance"] == "low")
            if importance != "low" or low_count < MAX_LOW_LINKS:
                ranked.append({
                    "url": url,
                    "text": text or fallback or path,
                    "importance": importance,
                    "category": category,
                })
        return sort_links(ranked)

    def _rank_batch(self, batch: List[str], base_url: str, site_name: str) -> List[Dict[str, Any]]:
        system_prompt = (
            f"You rank links from the website \"{site_name}\" ({base_url}) by how useful "
            "they are to a visitor. For each link return an object with keys "
            "\"url\", \"text\" (a short human-readable label), \"importance\" "
            "(\"high\", \"medium\" or \"low\") and \"category\" (for example "
            "documentation, pricing, contact, api, about, features, content, support, other). "
            "Return only a JSON array."
        )
        response = self.llm_service.generate(
            "\n".join(batch),
            system_prompt=system_prompt,
            temperature=0.2,
            max_tokens=2000,
        )
        items = json.loads(_strip_code_fence(response.content))
        if not isinstance(items, list):
            raise ValueError("Link ranking response is not a JSON array")

        allowed = set(batch)
        ranked = []
        for item in items:
            if not isinstance(item, dict) or item.get("url") not in allowed:
                continue
            importance = item.get("importance") if item.get("importance") in IMPORTANCE_ORDER else "low"
            ranked.append({
                "url": item["url"],
                "text": item.get("text") or text_from_path(urlparse(item["url"]).path),
                "importance": importance,
                "category": item.get("category") or "other",
            })
        return ranked

    def rank(self, links: List[str], base_url: str, site_name: str = "Website") -> List[Dict[str, Any]]:
        candidates = self.in_domain(links, base_url)
        if not candidates:
            return []
        if self.llm_service is None:
            return self.rank_heuristically(candidates, base_url)

        try:
            ranked: List[Dict[str, Any]] = []
            for start in range(0, len(candidates), LINK_BATCH_SIZE):
                ranked.extend(self._rank_batch(candidates[start:start + LINK_BATCH_SIZE], base_url, site_name))
            return sort_links(ranked)
        except (KnowledgeBaseError, ValueError) as e:
            logger.warning(f"LLM link ranking failed, using heuristics: {e}")
            return self.rank_heuristically(candidates, base_url)


class RecommendationGenerator:
    """Generates suggested questions from sampled knowledge-base content."""

    def __init__(self, llm_service):
        self.llm_service = llm_service

    def generate(self, sample_texts: List[str], name: str = "Website", url: str = "") -> List[Dict[str, str]]:
        if not sample_texts:
            return []

        content = "\n".join(sample_texts)
        system_prompt = (
            f"You generate thoughtful questions about the content of \"{name}\""
            f"{f' ({url})' if url else ''}.\n\nContent:\n{content}\n\n"
            f"Generate exactly {MAX_RECOMMENDATIONS} specific questions a visitor might ask "
            "(4-8 words each). Return only a JSON object with a \"recommendations\" array "
            "of {\"title\": question, \"description\": what the question explores}."
        )
        response = self.llm_service.generate(
            f"Generate {MAX_RECOMMENDATIONS} questions.",
            system_prompt=system_prompt,
            temperature=0.7,
            max_tokens=500,
        )
        try:
            data = json.loads(_strip_code_fence(response.content))
        except ValueError:
            logger.warning("Recommendation response was not valid JSON")
            return []

        items = data.get("recommendations", []) if isinstance(data, dict) else data
        recommendations = [
            {"title": str(item["title"]), "description": str(item.get("description", ""))}
            for item in items
            if isinstance(item, dict) and item.get("title")
        ]
        return recommendations[:MAX_RECOMMENDATIONS]


class EnrichmentService:
    """
    Computes and stores important links and recommendations for a knowledge base.

    Example:
        service = EnrichmentService(repository, vector_store, LinkRanker(llm), RecommendationGenerator(llm), executor)
        future = service.schedule("kb_1")
    """

    def __init__(
        self,
        repository,
        vector_store,
        link_ranker: LinkRanker,
        recommendation_generator: Optional[RecommendationGenerator] = None,
        executor: Optional[Executor] = None,
        sample_size: int = 10,
    ):
        self.repository = repository
        self.vector_store = vector_store
        self.link_ranker = link_ranker
        self.recommendation_generator = recommendation_generator
        self.executor = executor
        self.sample_size = sample_size

    def extract_important_links(self, knowledge_base_id: str) -> List[Dict[str, Any]]:
        knowledge_base = self.repository.get_knowledge_base(knowledge_base_id)
        if knowledge_base is None:
            raise NotFound(f"Knowledge base {knowledge_base_id} not found")
        if not knowledge_base.crawl_url:
            return []

        links: List[str] = []
        for chunk in self.vector_store.list_chunks(knowledge_base_id):
            if chunk.source_type == "crawl":
                links.extend(chunk.metadata.get("links", []))

        ranked = self.link_ranker.rank(links, knowledge_base.crawl_url, knowledge_base.name or "Website")
        self.repository.update_knowledge_base(knowledge_base_id, important_links=ranked)
        logger.info(f"Stored {len(ranked)} important links for {knowledge_base_id}")
        return ranked

    def generate_recommendations(self, knowledge_base_id: str) -> List[Dict[str, str]]:
        knowledge_base = self.repository.get_knowledge_base(knowledge_base_id)
        if knowledge_base is None:
            raise NotFound(f"Knowledge base {knowledge_base_id} not found")
        if self.recommendation_generator is None:
            return []

        samples = [c.text for c in self.vector_store.list_chunks(knowledge_base_id, limit=self.sample_size)]
        if not samples:
            logger.info(f"No content available for recommendations on {knowledge_base_id}")
            return []

        recommendations = self.recommendation_generator.generate(
            samples, knowledge_base.name or "Website", knowledge_base.crawl_url or ""
        )
        self.repository.update_knowledge_base(knowledge_base_id, recommendations=recommendations)
        logger.info(f"Stored {len(recommendations)} recommendations for {knowledge_base_id}")
        return recommendations

    def enrich(self, knowledge_base_id: str) -> Dict[str, bool]:
        """Run every enrichment step; returns which steps succeeded."""
        outcome = {}
        for name, step in (
            ("recommendations", self.generate_recommendations),
            ("important_links", self.extract_important_links),
        ):
            try:
                step(knowledge_base_id)
                outcome[name] = True
            except Exception:
                # A failed step never touches crawl state
                logger.exception(f"Enrichment step {name} failed for {knowledge_base_id}")
                outcome[name] = False
        return outcome

    def schedule(self, knowledge_base_id: str) -> Optional[Future]:
        """Run ``enrich`` in the background, or inline when no executor is set."""
        if self.executor is None:
            self.enrich(knowledge_base_id)
            return None
        return self.executor.submit(self.enrich, knowledge_base_id)
