"""
Chat Orchestrator Module

Entry point for one chat turn. Per request:

1. Validate the message (non-empty string, at most 10,000 characters)
2. Reuse the caller's session id or mint a new one
3. With a knowledge base: owners always get RAG; other callers only when
   the knowledge base is public, otherwise the turn is rejected before any
   model call
4. If RAG fails, fall back to answering from the current webpage alone
5. Persist both turns only for embedded (production) traffic
6. Map every failure to a typed error payload with a safe message

Usage:
    orchestrator = ChatOrchestrator(repository, message_service, rag_agent, llm_service)
    response = orchestrator.handle_chat(
        ChatRequest(message="What is this page about?", knowledge_base_id="kb_1", is_embedded=True),
        Identity.anonymous(),
    )
"""

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Iterator, Union

from config.settings import get_settings, ChatConfig, LLMConfig
from src.errors import (
    CancellationToken,
    Cancelled,
    InvalidInput,
    KnowledgeBaseError,
    NotFound,
    Unauthorized,
    check_cancelled,
)
from src.llm_service import LLMService
from src.messages import MessageService, generate_session_id, is_valid_session_id, trim_history
from src.models import KnowledgeBase
from src.rag_agent import RAGAgent, WebpageContext

logger = logging.getLogger(__name__)


SAFE_ERROR_MESSAGE = "Sorry, I'm having trouble processing your request right now."
CANCELLED_MESSAGE = "Request was cancelled by the user."

# HTTP-style status per error code
ERROR_STATUS = {
    "invalid_input": 400,
    "unauthorized": 401,
    "not_found": 404,
    "cancelled": 499,
    "generation_failed": 502,
}
INTERNAL_STATUS = 500


@dataclass
class Identity:
    """The caller; ``user_id`` is None for anonymous visitors."""
    user_id: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "Identity":
        return cls(user_id=None)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


@dataclass
class ChatRequest:
    message: Any
    history: List[Dict[str, str]] = field(default_factory=list)
    knowledge_base_id: Optional[str] = None
    session_id: Optional[str] = None
    webpage_context: Optional[WebpageContext] = None
    is_embedded: bool = False
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatRequest":
        """Build a request from a JSON body using the widget's camelCase keys."""
        return cls(
            message=data.get("message"),
            history=list(data.get("history") or []),
            knowledge_base_id=data.get("knowledgeBaseId"),
            session_id=data.get("sessionId"),
            webpage_context=WebpageContext.from_dict(data.get("webpageContext")),
            is_embedded=bool(data.get("isEmbedded", False)),
        )


@dataclass
class ChatResponse:
    answer: str
    session_id: str
    sources: Optional[List[Dict[str, Any]]] = None
    model: Optional[str] = None
    status: int = 200

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"message": self.answer, "sessionId": self.session_id}
        if self.sources is not None:
            result["sources"] = self.sources
        return result


@dataclass
class ChatErrorResponse:
    error: str
    message: str
    status: int
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"error": self.error, "message": self.message}
        if self.session_id:
            result["sessionId"] = self.session_id
        return result


def error_response(error: Exception, session_id: Optional[str] = None) -> ChatErrorResponse:
    """Translate an exception into a payload that never leaks internals."""
    if isinstance(error, Cancelled):
        return ChatErrorResponse("cancelled", CANCELLED_MESSAGE, ERROR_STATUS["cancelled"], session_id)
    if isinstance(error, KnowledgeBaseError) and error.code in ERROR_STATUS:
        # Generation failures carry provider text; only the code is surfaced
        message = SAFE_ERROR_MESSAGE if error.code == "generation_failed" else error.message
        return ChatErrorResponse(error.code, message, ERROR_STATUS[error.code], session_id)
    return ChatErrorResponse("internal_error", SAFE_ERROR_MESSAGE, INTERNAL_STATUS, session_id)


class ChatOrchestrator:
    """
    Decides, per turn, between RAG and the plain webpage path.

    ``rag_agent`` is optional: deployments without an embedding store
    pass None and every turn takes the plain path.
    """

    def __init__(
        self,
        repository,
        message_service: MessageService,
        rag_agent: Optional[RAGAgent],
        llm_service: LLMService,
        config: Optional[ChatConfig] = None,
        llm_config: Optional[LLMConfig] = None,
        max_chunks: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
    ):
        settings = get_settings()
        self.repository = repository
        self.message_service = message_service
        self.rag_agent = rag_agent
        self.llm_service = llm_service
        self.config = config or settings.chat
        self.llm_config = llm_config or settings.llm
        self.max_chunks = settings.retrieval.top_k if max_chunks is None else max_chunks
        self.similarity_threshold = (
            settings.retrieval.similarity_threshold if similarity_threshold is None else similarity_threshold
        )

    # Request checks

    def validate(self, request: ChatRequest) -> None:
        message = request.message
        if not isinstance(message, str) or not message.strip():
            raise InvalidInput("Message is required and must be a non-empty string")
        if len(message) > self.config.max_message_length:
            raise InvalidInput(
                f"Message too long (max {self.config.max_message_length} characters)",
                max_length=self.config.max_message_length,
            )
        if not isinstance(request.history, list):
            raise InvalidInput("History must be a list of messages")
        for turn in request.history:
            if not (
                isinstance(turn, dict)
                and isinstance(turn.get("role"), str)
                and isinstance(turn.get("content"), str)
            ):
                raise InvalidInput("Each history entry needs string 'role' and 'content' fields")

    @staticmethod
    def resolve_session_id(session_id: Optional[str]) -> str:
        if is_valid_session_id(session_id):
            return session_id
        return generate_session_id()

    def authorize(self, knowledge_base_id: str, identity: Identity) -> KnowledgeBase:
        """
        Load the knowledge base and check the caller may chat with it.

        Owners are always allowed; everyone else only when it is public.
        """
        knowledge_base = self.repository.get_knowledge_base(knowledge_base_id)
        if knowledge_base is None:
            raise NotFound(f"Knowledge base {knowledge_base_id} not found")
        if knowledge_base.is_owned_by(identity.user_id):
            return knowledge_base
        if not knowledge_base.is_public:
            raise Unauthorized("This knowledge base is private")
        return knowledge_base

    # Answering paths

    def _rag_kwargs(self, request: ChatRequest, knowledge_base: KnowledgeBase) -> Dict[str, Any]:
        return {
            "knowledge_base_id": knowledge_base.id,
            "history": trim_history(request.history, self.config.history_turns),
            "webpage_context": request.webpage_context,
            "max_chunks": self.max_chunks,
            "similarity_threshold": self.similarity_threshold,
            "instructions": knowledge_base.instructions,
        }

    def build_plain_messages(self, request: ChatRequest) -> List[Dict[str, str]]:
        """
        System prompt from the current page plus recent history.

        Raises:
            InvalidInput: No webpage context was supplied
        """
        page = request.webpage_context
        if page is None:
            raise InvalidInput("Webpage context is required")

        if page.has_content:
            body = (
                "You have access to the page content and can help users understand, "
                "summarize, or discuss it. Always base your responses on the provided "
                f"page content when relevant. Page content: {page.content[:self.config.page_content_limit]}"
            )
        else:
            body = "You can help users with questions about this webpage."

        system_prompt = f'You are a helpful AI assistant embedded on the webpage "{page.title}" ({page.url}). {body}'
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(trim_history(request.history, self.config.history_turns))
        messages.append({"role": "user", "content": request.message})
        return messages

    def _persist(
        self,
        request: ChatRequest,
        knowledge_base: Optional[KnowledgeBase],
        identity: Identity,
        session_id: str,
        answer: str,
        model: Optional[str],
        sources: Optional[List[Dict[str, Any]]],
        response_time: float,
    ) -> None:
        """Store the exchange for embedded traffic only."""
        if not request.is_embedded or knowledge_base is None:
            return
        try:
            self.message_service.save_exchange(
                knowledge_base,
                session_id,
                request.message,
                answer,
                user_id=identity.user_id,
                model=model,
                sources=sources,
                response_time=response_time,
                user_agent=request.user_agent,
                ip_address=request.ip_address,
            )
        except Exception:
            # The answer is already produced; history is best-effort
            logger.exception(f"Failed to persist chat exchange for session {session_id}")

    # Public API

    def handle_chat(
        self,
        request: ChatRequest,
        identity: Optional[Identity] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Union[ChatResponse, ChatErrorResponse]:
        """Run one chat turn; never raises."""
        identity = identity or Identity.anonymous()
        session_id: Optional[str] = None
        try:
            self.validate(request)
            session_id = self.resolve_session_id(request.session_id)
            return self._answer(request, identity, session_id, cancel_token)
        except Cancelled as e:
            logger.info(f"Chat request cancelled (session {session_id})")
            return error_response(e, session_id)
        except KnowledgeBaseError as e:
            logger.warning(f"Chat request failed with {e.code}: {e.message}")
            return error_response(e, session_id)
        except Exception as e:
            logger.exception("Unexpected chat error")
            return error_response(e, session_id)

    def _answer(
        self,
        request: ChatRequest,
        identity: Identity,
        session_id: str,
        cancel_token: Optional[CancellationToken],
    ) -> ChatResponse:
        start_time = time.time()
        knowledge_base = None
        if request.knowledge_base_id:
            knowledge_base = self.authorize(request.knowledge_base_id, identity)

        check_cancelled(cancel_token)

        if knowledge_base is not None and self.rag_agent is not None:
            try:
                result = self.rag_agent.generate_answer(
                    request.message,
                    cancel_token=cancel_token,
                    **self._rag_kwargs(request, knowledge_base),
                )
                response_time = time.time() - start_time
                self._persist(
                    request, knowledge_base, identity, session_id,
                    result.answer, result.model, result.sources, response_time,
                )
                return ChatResponse(
                    answer=result.answer,
                    session_id=session_id,
                    sources=result.sources,
                    model=result.model,
                )
            except Cancelled:
                raise
            except Exception as e:
                logger.warning(f"RAG failed for {knowledge_base.id}, falling back to page context: {e}")

        messages = self.build_plain_messages(request)
        response = self.llm_service.complete(
            messages,
            temperature=self.llm_config.temperature,
            cancel_token=cancel_token,
        )
        self._persist(
            request, knowledge_base, identity, session_id,
            response.content, response.model, None, time.time() - start_time,
        )
        return ChatResponse(answer=response.content, session_id=session_id, model=response.model)

    def stream_chat(
        self,
        request: ChatRequest,
        identity: Optional[Identity] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[Dict[str, Any]]:
        """
        Same decisions as ``handle_chat`` with the answer streamed as events.

        Yields dicts: ``{"type": "start", "sessionId", "sources"}``, then one
        ``{"type": "token", "content"}`` per token, then ``{"type": "done"}``.
        Any failure ends the stream with ``{"type": "error", ...}``. The
        assembled answer is persisted after the last token.
        """
        identity = identity or Identity.anonymous()
        session_id: Optional[str] = None
        try:
            self.validate(request)
            session_id = self.resolve_session_id(request.session_id)
            start_time = time.time()

            knowledge_base = None
            if request.knowledge_base_id:
                knowledge_base = self.authorize(request.knowledge_base_id, identity)
            check_cancelled(cancel_token)

            tokens = None
            sources = None
            model = self.llm_service.model_name
            if knowledge_base is not None and self.rag_agent is not None:
                try:
                    stream = self.rag_agent.stream_answer(
                        request.message,
                        cancel_token=cancel_token,
                        **self._rag_kwargs(request, knowledge_base),
                    )
                    # Provider streams are lazy; pull the first token so generation errors land here
                    rag_tokens = iter(stream)
                    first = next(rag_tokens, None)
                    tokens = rag_tokens if first is None else itertools.chain([first], rag_tokens)
                    sources, model = stream.sources, stream.model
                except Cancelled:
                    raise
                except Exception as e:
                    logger.warning(f"RAG stream failed for {knowledge_base.id}, falling back to page context: {e}")

            if tokens is None:
                tokens = iter(self.llm_service.stream(
                    self.build_plain_messages(request),
                    temperature=self.llm_config.temperature,
                    cancel_token=cancel_token,
                ))

            yield {"type": "start", "sessionId": session_id, "sources": sources}
            parts = []
            for token in tokens:
                parts.append(token)
                yield {"type": "token", "content": token}

            self._persist(
                request, knowledge_base, identity, session_id,
                "".join(parts), model, sources, time.time() - start_time,
            )
            yield {"type": "done", "sessionId": session_id}
        except Cancelled as e:
            logger.info(f"Chat stream cancelled (session {session_id})")
            yield {"type": "error", "status": ERROR_STATUS["cancelled"], **error_response(e, session_id).to_dict()}
        except KnowledgeBaseError as e:
            logger.warning(f"Chat stream failed with {e.code}: {e.message}")
            payload = error_response(e, session_id)
            yield {"type": "error", "status": payload.status, **payload.to_dict()}
        except Exception as e:
            logger.exception("Unexpected chat stream error")
            payload = error_response(e, session_id)
            yield {"type": "error", "status": payload.status, **payload.to_dict()}
