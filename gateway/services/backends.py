"""Generation backend adapters.

Each adapter wraps one text-generation provider behind the same two calls:
``generate(messages, options)`` and ``health_check()``. Messages use the
neutral ``{"role": ..., "content": ...}`` shape; adapters convert to whatever
their provider needs. Provider failures surface as ``BackendUnavailable`` so
the router can fail over without knowing provider specifics.

Adapters are built once at startup by ``build_backends()`` and handed to the
``BackendRouter``; nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from services.errors import BackendUnavailable
from services.token_usage import TokenUsage, estimate_tokens

logger = logging.getLogger(__name__)

# Per-call options an adapter forwards to its provider.
BINDABLE_OPTIONS = ("temperature", "max_tokens")


@dataclass
class GenerationResult:
    text: str
    token_count: int
    latency_ms: int
    input_tokens: int = 0
    output_tokens: int = 0
    model_name: str = ""


class GenerationBackend(ABC):
    """Uniform capability over one external text-generation provider."""

    name: str = ""

    @abstractmethod
    def generate(self, messages: list[dict], options: dict | None = None) -> GenerationResult:
        """Return one complete reply for *messages* or raise ``BackendUnavailable``."""

    @abstractmethod
    def health_check(self) -> bool:
        """Return True when the provider answers; never raises."""


def create_chat_model(
    provider_type: str,
    model_name: str,
    *,
    api_key: str = "",
    base_url: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    timeout: float | None = None,
    max_retries: int | None = None,
) -> BaseChatModel:
    kwargs: dict = {"model": model_name}
    if temperature is not None:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    if timeout is not None:
        kwargs["timeout"] = timeout
    if max_retries is not None:
        kwargs["max_retries"] = max_retries

    if provider_type == "openai":
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(api_key=api_key, **kwargs)

    if provider_type == "anthropic":
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(api_key=api_key, **kwargs)

    if provider_type == "google":
        from langchain_google_genai import ChatGoogleGenerativeAI
        return ChatGoogleGenerativeAI(google_api_key=api_key, **kwargs)

    if provider_type == "openai_compatible":
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(api_key=api_key, base_url=base_url, **kwargs)

    raise ValueError(f"Unsupported provider type: {provider_type}")


def to_langchain_messages(messages: list[dict]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for msg in messages:
        role = msg.get("role", "user")
        content = msg.get("content", "")
        if role == "assistant":
            converted.append(AIMessage(content=content))
        elif role == "system":
            converted.append(SystemMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def _response_text(response) -> str:
    content = getattr(response, "content", "")
    if isinstance(content, str):
        return content
    # Anthropic may return a list of content blocks
    parts = []
    for block in content or []:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
        elif isinstance(block, str):
            parts.append(block)
    return "".join(parts)


class ChatModelBackend(GenerationBackend):
    """Adapter over a LangChain chat model."""

    def __init__(self, name: str, llm: BaseChatModel, model_name: str = "") -> None:
        self.name = name
        self.llm = llm
        self.model_name = model_name

    def generate(self, messages: list[dict], options: dict | None = None) -> GenerationResult:
        bound = {k: v for k, v in (options or {}).items() if k in BINDABLE_OPTIONS and v is not None}
        runnable = self.llm.bind(**bound) if bound else self.llm

        start = time.perf_counter()
        try:
            response = runnable.invoke(to_langchain_messages(messages))
        except Exception as exc:
            logger.warning("Backend %s failed: %s", self.name, exc, exc_info=True)
            raise BackendUnavailable(self.name, str(exc)) from exc
        latency_ms = int((time.perf_counter() - start) * 1000)

        text = _response_text(response)
        if not text.strip():
            raise BackendUnavailable(self.name, "empty response")

        usage = TokenUsage.from_response(response)
        total = usage.total_tokens
        if not total:
            prompt = "\n\n".join(m.get("content", "") for m in messages)
            total = estimate_tokens(prompt + text)

        logger.info("Backend %s replied in %dms, tokens: %d", self.name, latency_ms, total)
        return GenerationResult(
            text=text,
            token_count=total,
            latency_ms=latency_ms,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            model_name=self.model_name,
        )

    def health_check(self) -> bool:
        try:
            self.llm.bind(max_tokens=5).invoke([HumanMessage(content="Hello")])
            return True
        except Exception:
            logger.warning("Health check failed for backend %s", self.name, exc_info=True)
            return False


def build_backends(settings) -> dict[str, GenerationBackend]:
    """Construct every configured backend adapter, keyed by name."""
    common = {
        "temperature": settings.GENERATION_TEMPERATURE,
        "max_tokens": settings.GENERATION_MAX_TOKENS,
        "timeout": settings.BACKEND_TIMEOUT_SECONDS,
        "max_retries": 0,  # failover is the router's job
    }
    backends: dict[str, GenerationBackend] = {}

    if settings.OPENAI_API_KEY:
        llm = create_chat_model("openai", settings.OPENAI_MODEL, api_key=settings.OPENAI_API_KEY, **common)
        backends["openai"] = ChatModelBackend("openai", llm, settings.OPENAI_MODEL)

    if settings.ANTHROPIC_API_KEY:
        llm = create_chat_model(
            "anthropic", settings.ANTHROPIC_MODEL, api_key=settings.ANTHROPIC_API_KEY, **common
        )
        backends["anthropic"] = ChatModelBackend("anthropic", llm, settings.ANTHROPIC_MODEL)

    if settings.GEMINI_API_KEY:
        llm = create_chat_model("google", settings.GEMINI_MODEL, api_key=settings.GEMINI_API_KEY, **common)
        backends["gemini"] = ChatModelBackend("gemini", llm, settings.GEMINI_MODEL)

    if settings.LOCAL_LLM_BASE_URL:
        llm = create_chat_model(
            "openai_compatible",
            settings.LOCAL_LLM_MODEL,
            api_key=settings.LOCAL_LLM_API_KEY,
            base_url=settings.LOCAL_LLM_BASE_URL,
            **common,
        )
        backends["local"] = ChatModelBackend("local", llm, settings.LOCAL_LLM_MODEL)

    if not backends:
        logger.warning("No generation backends configured; every exchange will be rejected")
    return backends
