"""
RAG Agent Module

Answers a question against one knowledge base:

1. Retrieve the top matching chunks (a retrieval failure degrades to an
   empty context instead of failing the turn)
2. Build a system prompt with answering instructions, single-source
   citation rules, the numbered sources, the current webpage and, when
   there is no context at all, a note telling the model to flag uncertainty
3. Append the conversation history and the new user turn
4. Generate with a low temperature and a generous token ceiling

Sources are returned only when at least one chunk qualified; otherwise
``sources`` is None so callers can tell "ungrounded" from "grounded, no
matches".
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Iterator

from config.settings import get_settings, ChatConfig, LLMConfig
from src.errors import CancellationToken, RetrievalDegraded, RetrievalError, check_cancelled
from src.llm_service import LLMService
from src.vector_store import SearchResult, VectorStore

logger = logging.getLogger(__name__)


ANSWER_INSTRUCTIONS = """You are an AI assistant that answers questions based on the provided context. You should:

1. Use the retrieved information to answer questions accurately
2. If the retrieved information doesn't contain relevant details, say so clearly
3. Be helpful, accurate, and concise"""

CITATION_RULES = """## Citation Rules:
- Cite sources with a single inline marker like [1] or [2] placed directly after the information it supports
- Each discrete fact must cite exactly one source
- Never combine markers: citations such as [1,2] or [1][2] are not allowed
- If a statement draws on more than one source, split it into separate sentences and cite each sentence with its own source
- Only cite source numbers listed under "Retrieved Knowledge Base Context\""""

NO_CONTEXT_NOTE = (
    "Note: No grounding context was found for this query: no knowledge base "
    "sources matched and no webpage content was provided. Answer from general "
    "knowledge, say clearly that no grounding context was found, and flag any "
    "uncertainty in your answer."
)


@dataclass
class WebpageContext:
    """The page the visitor is currently on."""
    url: str = ""
    title: str = ""
    content: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["WebpageContext"]:
        if not data:
            return None
        return cls(
            url=data.get("url", ""),
            title=data.get("title", ""),
            content=data.get("content", ""),
        )

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())


@dataclass
class RAGAnswer:
    """
    Blocking answer.

    Attributes:
        answer: Generated answer text
        sources: Chunk sources used, or None when no chunk qualified
        model: Generating model
        metadata: retrieval_degraded, chunks_used, confidence, response_time
    """
    answer: str
    sources: Optional[List[Dict[str, Any]]]
    model: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"answer": self.answer, "model": self.model}
        if self.sources is not None:
            result["sources"] = self.sources
        return result


@dataclass
class RAGStream:
    """Streaming answer: tokens are produced lazily as ``tokens`` is iterated."""
    tokens: Iterator[str]
    sources: Optional[List[Dict[str, Any]]]
    model: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __iter__(self) -> Iterator[str]:
        return self.tokens


class RAGAgent:
    """
    Retrieval-augmented answering over a knowledge base.

    Example:
        agent = RAGAgent(vector_store, llm_service)
        result = agent.generate_answer("How do refunds work?", knowledge_base_id="kb_1")
        print(result.answer)
        for source in result.sources or []:
            print(source["similarity"], source["url"])
    """

    def __init__(
        self,
        vector_store: VectorStore,
        llm_service: LLMService,
        llm_config: Optional[LLMConfig] = None,
        chat_config: Optional[ChatConfig] = None,
    ):
        settings = get_settings()
        self.vector_store = vector_store
        self.llm_service = llm_service
        self.llm_config = llm_config or settings.llm
        self.chat_config = chat_config or settings.chat

        logger.info("RAGAgent initialized")

    def retrieve(
        self,
        query: str,
        knowledge_base_id: Optional[str],
        max_chunks: int,
        similarity_threshold: float,
        cancel_token: Optional[CancellationToken] = None,
    ) -> tuple:
        """
        Search the knowledge base, degrading to no results on failure.

        Returns:
            (results, degraded) where degraded is True if retrieval failed
        """
        if not knowledge_base_id:
            return [], False

        try:
            results = self.vector_store.search(
                knowledge_base_id,
                query,
                k=max_chunks,
                similarity_threshold=similarity_threshold,
                cancel_token=cancel_token,
            )
            return results, False
        except RetrievalError as e:
            degraded = RetrievalDegraded(f"Retrieval failed for {knowledge_base_id}: {e}")
            logger.warning(f"{degraded.message}; answering without grounding context")
            return [], True

    def build_system_prompt(
        self,
        results: List[SearchResult],
        webpage_context: Optional[WebpageContext] = None,
        instructions: Optional[str] = None,
    ) -> str:
        """Assemble the system prompt in its fixed section order."""
        parts = [ANSWER_INSTRUCTIONS]
        if instructions and instructions.strip():
            parts.append(f"## Additional Instructions:\n{instructions.strip()}")
        parts.append(CITATION_RULES)

        if results:
            sources = "\n".join(
                f"\n### Source [{i}]:\n{result.chunk.text}\n"
                for i, result in enumerate(results, 1)
            )
            parts.append(f"## Retrieved Knowledge Base Context:\n{sources}")

        has_page = webpage_context is not None and webpage_context.has_content
        if has_page:
            limit = self.chat_config.rag_page_content_limit
            parts.append(
                "## Current Webpage Context:\n"
                f"URL: {webpage_context.url}\n"
                f"Title: {webpage_context.title}\n"
                f"Content: {webpage_context.content[:limit]}"
            )

        if not results and not has_page:
            parts.append(NO_CONTEXT_NOTE)

        return "\n\n".join(parts)

    @staticmethod
    def build_messages(
        system_prompt: str,
        query: str,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": system_prompt}]
        for item in history or []:
            messages.append({"role": item["role"], "content": item["content"]})
        messages.append({"role": "user", "content": query})
        return messages

    @staticmethod
    def _confidence(results: List[SearchResult]) -> float:
        """Mean similarity of the used chunks, clipped to [0, 1]."""
        if not results:
            return 0.0
        mean = sum(r.similarity for r in results) / len(results)
        return max(0.0, min(1.0, mean))

    def _prepare(
        self,
        query: str,
        knowledge_base_id: Optional[str],
        history: Optional[List[Dict[str, str]]],
        webpage_context: Optional[WebpageContext],
        max_chunks: int,
        similarity_threshold: float,
        instructions: Optional[str],
        cancel_token: Optional[CancellationToken],
    ):
        results, degraded = self.retrieve(
            query, knowledge_base_id, max_chunks, similarity_threshold, cancel_token
        )
        check_cancelled(cancel_token)

        system_prompt = self.build_system_prompt(results, webpage_context, instructions)
        messages = self.build_messages(system_prompt, query, history)
        sources = [r.to_source() for r in results] or None
        metadata = {
            "retrieval_degraded": degraded,
            "chunks_used": len(results),
            "confidence": self._confidence(results),
        }
        return messages, sources, metadata

    def generate_answer(
        self,
        query: str,
        knowledge_base_id: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
        webpage_context: Optional[WebpageContext] = None,
        max_chunks: int = 5,
        similarity_threshold: float = 0.0,
        instructions: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RAGAnswer:
        """
        Produce a grounded answer.

        Raises:
            GenerationFailed: The model call failed (no partial answer is returned)
            Cancelled: The caller aborted
        """
        start_time = time.time()
        messages, sources, metadata = self._prepare(
            query, knowledge_base_id, history, webpage_context,
            max_chunks, similarity_threshold, instructions, cancel_token,
        )

        response = self.llm_service.complete(
            messages,
            temperature=self.llm_config.temperature,
            max_tokens=self.llm_config.max_tokens,
            cancel_token=cancel_token,
        )

        metadata["response_time"] = time.time() - start_time
        logger.info(
            f"Answered query on {knowledge_base_id or 'no knowledge base'} with "
            f"{metadata['chunks_used']} chunks in {metadata['response_time']:.2f}s"
        )
        return RAGAnswer(
            answer=response.content,
            sources=sources,
            model=response.model,
            metadata=metadata,
        )

    def stream_answer(
        self,
        query: str,
        knowledge_base_id: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
        webpage_context: Optional[WebpageContext] = None,
        max_chunks: int = 5,
        similarity_threshold: float = 0.0,
        instructions: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RAGStream:
        """
        Like ``generate_answer`` but returns tokens incrementally.

        Retrieval runs eagerly so ``sources`` is known before the first token.
        """
        messages, sources, metadata = self._prepare(
            query, knowledge_base_id, history, webpage_context,
            max_chunks, similarity_threshold, instructions, cancel_token,
        )
        tokens = self.llm_service.stream(
            messages,
            temperature=self.llm_config.temperature,
            max_tokens=self.llm_config.max_tokens,
            cancel_token=cancel_token,
        )
        return RAGStream(
            tokens=tokens,
            sources=sources,
            model=self.llm_service.model_name,
            metadata=metadata,
        )
