"""
LLM Service Module

Provides an abstraction layer for Large Language Model providers:
- Local: Ollama (Llama 3, Mistral, etc.) - Free, runs locally
- Cloud: OpenAI (GPT-4.1 family) - Requires API key
- Cloud: Google Gemini - Requires API key
- Cloud: Mistral - Requires API key

Every provider takes a chat-style message list and supports both a
blocking ``complete`` and an incremental ``stream``. Both observe a
cancellation token and raise ``Cancelled`` when it fires; any other
provider failure surfaces as ``GenerationFailed``.

Usage:
    llm = LLMService(provider="openai")
    response = llm.complete([
        {"role": "system", "content": "You are helpful."},
        {"role": "user", "content": "Explain RAG"},
    ])
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Any, Iterator
from dataclasses import dataclass

from google import genai
from google.genai import types

from config.settings import get_settings, LLMConfig
from src.errors import CancellationToken, Cancelled, GenerationFailed, check_cancelled

# Configure logging
logger = logging.getLogger(__name__)


Message = Dict[str, str]


@dataclass
class LLMResponse:
    """
    Standardized response from LLM providers.

    Attributes:
        content: The generated text response
        model: Model name used for generation
        usage: Token usage statistics (if available)
        finish_reason: Why generation stopped
    """
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None

    def __str__(self) -> str:
        return self.content


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Subclasses implement ``_complete`` and ``_stream``; the public
    ``complete`` and ``stream`` add cancellation and error translation.
    """

    @abstractmethod
    def _complete(
        self,
        messages: List[Message],
        temperature: float,
        max_tokens: Optional[int],
    ) -> LLMResponse:
        pass

    @abstractmethod
    def _stream(
        self,
        messages: List[Message],
        temperature: float,
        max_tokens: Optional[int],
    ) -> Iterator[str]:
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name."""
        pass

    def complete(
        self,
        messages: List[Message],
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LLMResponse:
        """
        Generate a full response for a message list.

        Raises:
            Cancelled: The token was cancelled before or during the call
            GenerationFailed: Provider error or empty response
        """
        check_cancelled(cancel_token)
        try:
            response = self._complete(messages, temperature, max_tokens)
        except (ImportError, ValueError):
            raise
        except Exception as e:
            logger.error(f"{self.__class__.__name__} generation error: {e}")
            raise GenerationFailed(f"Generation failed: {e}") from e

        # A result that arrives after cancellation is discarded
        check_cancelled(cancel_token)
        if not response.content:
            raise GenerationFailed("Model returned an empty response")
        return response

    def stream(
        self,
        messages: List[Message],
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        """
        Yield response tokens as they arrive.

        Cancellation is checked between tokens.
        """
        check_cancelled(cancel_token)
        try:
            tokens = self._stream(messages, temperature, max_tokens)
            for token in tokens:
                if cancel_token is not None and cancel_token.cancelled:
                    close = getattr(tokens, "close", None)
                    if close:
                        close()
                    raise Cancelled("Request was cancelled by the user.")
                if token:
                    yield token
        except (Cancelled, ImportError, ValueError):
            raise
        except Exception as e:
            logger.error(f"{self.__class__.__name__} streaming error: {e}")
            raise GenerationFailed(f"Generation failed: {e}") from e


class OllamaProvider(BaseLLMProvider):
    """
    Ollama provider for local LLM inference.

    Requirements:
    - Ollama installed: https://ollama.ai
    - Model pulled: ollama pull llama3
    """

    def __init__(
        self,
        model: str = "llama3",
        base_url: str = "http://localhost:11434",
    ):
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._client = None

        logger.info(f"Initializing OllamaProvider: model={model}, url={base_url}")

    def _get_client(self):
        """Get or create Ollama client."""
        if self._client is None:
            try:
                import ollama
            except ImportError:
                raise ImportError(
                    "ollama package required. Install with: pip install ollama"
                )
            self._client = ollama.Client(host=self._base_url)
            logger.info("Ollama client initialized")
        return self._client

    @staticmethod
    def _options(temperature: float, max_tokens: Optional[int]) -> Dict[str, Any]:
        options: Dict[str, Any] = {"temperature": temperature}
        if max_tokens:
            options["num_predict"] = max_tokens
        return options

    def _complete(self, messages, temperature, max_tokens) -> LLMResponse:
        response = self._get_client().chat(
            model=self._model,
            messages=messages,
            options=self._options(temperature, max_tokens),
        )
        return LLMResponse(
            content=response["message"]["content"],
            model=self._model,
            usage={
                "prompt_tokens": response.get("prompt_eval_count", 0),
                "completion_tokens": response.get("eval_count", 0),
            },
            finish_reason="stop",
        )

    def _stream(self, messages, temperature, max_tokens) -> Iterator[str]:
        for part in self._get_client().chat(
            model=self._model,
            messages=messages,
            options=self._options(temperature, max_tokens),
            stream=True,
        ):
            yield part["message"]["content"]

    @property
    def model_name(self) -> str:
        return self._model


class OpenAIProvider(BaseLLMProvider):
    """OpenAI chat completions provider."""

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        api_key: Optional[str] = None,
    ):
        self._model = model
        self._api_key = api_key
        self._client = None

        logger.info(f"Initializing OpenAIProvider: model={model}")

    def _get_client(self):
        """Get or create OpenAI client."""
        if self._client is None:
            try:
                from openai import OpenAI
            except ImportError:
                raise ImportError(
                    "openai package required. Install with: pip install openai"
                )

            api_key = self._api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError(
                    "OpenAI API key not found. Set OPENAI_API_KEY environment variable."
                )

            self._client = OpenAI(api_key=api_key)
            logger.info("OpenAI client initialized")
        return self._client

    def _kwargs(self, messages, temperature, max_tokens) -> Dict[str, Any]:
        kwargs = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        return kwargs

    def _complete(self, messages, temperature, max_tokens) -> LLMResponse:
        response = self._get_client().chat.completions.create(
            **self._kwargs(messages, temperature, max_tokens)
        )
        choice = response.choices[0]
        return LLMResponse(
            content=choice.message.content,
            model=response.model,
            usage={
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            } if response.usage else None,
            finish_reason=choice.finish_reason,
        )

    def _stream(self, messages, temperature, max_tokens) -> Iterator[str]:
        response = self._get_client().chat.completions.create(
            stream=True, **self._kwargs(messages, temperature, max_tokens)
        )
        try:
            for chunk in response:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        finally:
            response.close()

    @property
    def model_name(self) -> str:
        return self._model


class GeminiProvider(BaseLLMProvider):
    """Google Gemini provider using the google-genai client."""

    def __init__(
        self,
        model: str = "gemini-2.0-flash",
        api_key: Optional[str] = None,
    ):
        self._model = model
        self._api_key = api_key
        self._client = None

        logger.info(f"Initializing GeminiProvider: model={model}")

    def _get_client(self):
        """Get or create Gemini client."""
        if self._client is None:
            api_key = self._api_key or os.getenv("GEMINI_API_KEY")
            if not api_key:
                raise ValueError(
                    "Gemini API key not found. Set GEMINI_API_KEY environment variable."
                )

            self._client = genai.Client(api_key=api_key)
            logger.info(f"Gemini client initialized with model: {self._model}")
        return self._client

    @staticmethod
    def _split_messages(messages: List[Message]):
        """Gemini takes the system prompt separately and calls the assistant "model"."""
        system_parts = [m["content"] for m in messages if m["role"] == "system"]
        contents = [
            types.Content(
                role="model" if m["role"] == "assistant" else "user",
                parts=[types.Part(text=m["content"])],
            )
            for m in messages
            if m["role"] != "system"
        ]
        return "\n\n".join(system_parts) or None, contents

    def _config(self, system_instruction, temperature, max_tokens):
        config = types.GenerateContentConfig(
            temperature=temperature,
            system_instruction=system_instruction,
        )
        if max_tokens:
            config.max_output_tokens = max_tokens
        return config

    def _complete(self, messages, temperature, max_tokens) -> LLMResponse:
        system_instruction, contents = self._split_messages(messages)
        response = self._get_client().models.generate_content(
            model=self._model,
            contents=contents,
            config=self._config(system_instruction, temperature, max_tokens),
        )
        return LLMResponse(
            content=response.text,
            model=self._model,
            finish_reason="stop",
        )

    def _stream(self, messages, temperature, max_tokens) -> Iterator[str]:
        system_instruction, contents = self._split_messages(messages)
        for chunk in self._get_client().models.generate_content_stream(
            model=self._model,
            contents=contents,
            config=self._config(system_instruction, temperature, max_tokens),
        ):
            if chunk.text:
                yield chunk.text

    @property
    def model_name(self) -> str:
        return self._model


class MistralProvider(BaseLLMProvider):
    """Mistral chat provider."""

    def __init__(
        self,
        model: str = "mistral-small-latest",
        api_key: Optional[str] = None,
    ):
        self._model = model
        self._api_key = api_key
        self._client = None

        logger.info(f"Initializing MistralProvider: model={model}")

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

            api_key = self._api_key or os.getenv("MISTRAL_API_KEY")
            if not api_key:
                raise ValueError(
                    "Mistral API key not found. Set MISTRAL_API_KEY environment variable."
                )

            self._client = Mistral(api_key=api_key)
            logger.info(f"Mistral client initialized with model: {self._model}")
        return self._client

    def _complete(self, messages, temperature, max_tokens) -> LLMResponse:
        response = self._get_client().chat.complete(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        choice = response.choices[0]
        return LLMResponse(
            content=choice.message.content,
            model=self._model,
            usage={
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            } if response.usage else None,
            finish_reason=choice.finish_reason,
        )

    def _stream(self, messages, temperature, max_tokens) -> Iterator[str]:
        for event in self._get_client().chat.stream(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        ):
            delta = event.data.choices[0].delta.content
            if delta:
                yield delta

    @property
    def model_name(self) -> str:
        return self._model


class LLMService:
    """
    Main LLM Service with unified interface.

    This is the class that other components should use.
    It handles provider selection based on configuration.

    Example:
        llm = LLMService()
        response = llm.generate("What is AI?")

        for token in llm.stream(messages, cancel_token=token):
            print(token, end="")
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        config: Optional[LLMConfig] = None,
        provider_instance: Optional[BaseLLMProvider] = None,
    ):
        """
        Initialize the LLM service.

        Args:
            provider: "ollama", "openai", "gemini", or "mistral" (default from config)
            config: Optional LLMConfig instance
            provider_instance: Pre-built provider (overrides ``provider``)
        """
        self.config = config or get_settings().llm
        provider = provider or self.config.provider

        if provider_instance is not None:
            self._provider = provider_instance
        elif provider == "ollama":
            self._provider = OllamaProvider(
                model=self.config.ollama_model,
                base_url=self.config.ollama_base_url,
            )
        elif provider == "openai":
            self._provider = OpenAIProvider(
                model=self.config.openai_model,
                api_key=self.config.openai_api_key,
            )
        elif provider == "gemini":
            self._provider = GeminiProvider(
                model=self.config.gemini_model,
                api_key=self.config.gemini_api_key,
            )
        elif provider == "mistral":
            self._provider = MistralProvider(
                model=self.config.mistral_model,
                api_key=self.config.mistral_api_key,
            )
        else:
            raise ValueError(f"Unknown LLM provider: {provider}")

        self._provider_name = provider
        logger.info(f"LLMService initialized with {provider} provider")

    def complete(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LLMResponse:
        """
        Generate a response for a chat message list.

        Args:
            messages: [{"role": ..., "content": ...}, ...]
            temperature: Sampling temperature (default from config)
            max_tokens: Output token ceiling (default from config)
            cancel_token: Optional cancellation signal

        Returns:
            LLMResponse object
        """
        return self._provider.complete(
            messages,
            temperature=self.config.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.config.max_tokens,
            cancel_token=cancel_token,
        )

    def stream(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        """Stream response tokens for a chat message list."""
        return self._provider.stream(
            messages,
            temperature=self.config.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.config.max_tokens,
            cancel_token=cancel_token,
        )

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Single-turn convenience wrapper around ``complete``."""
        messages: List[Message] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return self.complete(messages, temperature=temperature, max_tokens=max_tokens)

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def provider_name(self) -> str:
        return self._provider_name
