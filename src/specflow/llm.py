from __future__ import annotations

import asyncio
import json
import logging
import os
import random
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

import openai
from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import (
    BackendConfigurationError,
    BackendNotFoundError,
    BackendRequestError,
    GenerationFailedError,
    GenerationTimeoutError,
    RateLimitError,
    TransientBackendError,
)
from .models import BackendResponse, GenerationRequest, GenerationResult, ParameterOverrides, ResolvedParameters
from .parameters import ParameterResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are an expert software architect and project manager. "
    "Produce complete, production-ready artifacts with no placeholders."
)
TRUNCATION_FINISH_REASONS: frozenset[str] = frozenset({"length", "max_tokens", "MAX_TOKENS"})
_DEFAULT_MAX_RETRIES: int = 3


class GenerationBackend(Protocol):
    """Raw generation endpoint: {prompt, system instruction, parameters} -> text."""

    async def complete(self, request: GenerationRequest) -> BackendResponse:
        ...


# ---------------------------------------------------------------------------
# Timeout and retry primitives
# ---------------------------------------------------------------------------


async def call_with_timeout(call: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``call`` under an absolute wall-clock timeout.

    The scope is released on every exit path; the pending call is cancelled
    when the deadline passes.

    Raises:
        GenerationTimeoutError: If the deadline is exceeded.
    """
    try:
        async with asyncio.timeout(timeout_seconds):
            return await call
    except TimeoutError as exc:
        raise GenerationTimeoutError(timeout_seconds) from exc


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for transient failures.

    Rate limits back off exponentially, other transient errors linearly.
    Timeouts, request errors and configuration errors are never retried.
    """

    rate_limit_base_delay: float = 1.0
    transient_base_delay: float = 2.0
    max_backoff: float = 40.0
    jitter: float = 0.0

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(
            exc, (GenerationTimeoutError, BackendRequestError, BackendNotFoundError, BackendConfigurationError)
        ):
            return False
        return isinstance(exc, Exception)

    def delay_for(self, exc: BaseException, attempt: int) -> float:
        if isinstance(exc, RateLimitError):
            delay = self.rate_limit_base_delay * (2 ** (attempt - 1))
        else:
            delay = self.transient_base_delay * attempt
        delay = min(delay, self.max_backoff)
        if self.jitter:
            delay *= 1.0 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)


# ---------------------------------------------------------------------------
# LangChain / OpenAI backend
# ---------------------------------------------------------------------------


def ensure_api_key(env_var: str = "OPENAI_API_KEY", repo_root: Path | None = None) -> str:
    """Load an API key from the environment or a ``.env`` file and return it.

    Args:
        env_var: Environment variable holding the key.
        repo_root: Optional directory searched for ``.env`` (cwd if unset).

    Returns:
        The API key string.

    Raises:
        BackendConfigurationError: If the key is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv(env_var, "").strip()
    if not key:
        raise BackendConfigurationError(f"{env_var} is required for generation backend calls")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float,
    timeout: int,
    max_completion_tokens: int | None = None,
    top_p: float | None = None,
    frequency_penalty: float | None = None,
    presence_penalty: float | None = None,
    base_url: str | None = None,
    api_key_env: str = "OPENAI_API_KEY",
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with client-side retries disabled.

    Retry belongs to ``GenerationClient``; the LangChain client is built with
    ``max_retries=0`` so backoff is never applied twice.

    Raises:
        BackendConfigurationError: If model_name is blank or the API key is not available.
    """
    if not model_name or not model_name.strip():
        raise BackendConfigurationError("model_name must be a non-empty string")
    api_key = ensure_api_key(api_key_env, repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": 0,
        "api_key": api_key,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    if top_p is not None:
        kwargs["top_p"] = top_p
    if frequency_penalty:
        kwargs["frequency_penalty"] = frequency_penalty
    if presence_penalty:
        kwargs["presence_penalty"] = presence_penalty
    if base_url:
        kwargs["base_url"] = base_url
    return ChatOpenAI(**kwargs)


def _content_to_text(content: Any) -> str:
    """Flatten string, list-of-parts or dict message content to plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            elif isinstance(item, dict) and item.get("type") in {"reasoning", "thinking"}:
                continue
            else:
                chunks.append(json.dumps(item, sort_keys=True) if isinstance(item, dict) else str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if content is None:
        return ""
    return str(content)


class ChatOpenAIBackend:
    """OpenAI-compatible backend over ``langchain_openai.ChatOpenAI``.

    ``base_url`` and ``api_key_env`` point it at compatible providers
    (DeepSeek, Z.ai, Groq). Provider exceptions are translated into the
    transient/request/timeout taxonomy used by ``GenerationClient``.
    """

    def __init__(
        self,
        *,
        model_name: str | None = None,
        base_url: str | None = None,
        api_key_env: str = "OPENAI_API_KEY",
        repo_root: Path | None = None,
    ) -> None:
        self.model_name = model_name
        self.base_url = base_url
        self.api_key_env = api_key_env
        self.repo_root = repo_root

    async def complete(self, request: GenerationRequest) -> BackendResponse:
        params = request.parameters
        model = get_chat_model(
            model_name=self.model_name or request.backend_id,
            temperature=params.temperature,
            timeout=params.timeout_seconds,
            max_completion_tokens=params.max_tokens,
            top_p=params.top_p,
            frequency_penalty=params.frequency_penalty,
            presence_penalty=params.presence_penalty,
            base_url=self.base_url,
            api_key_env=self.api_key_env,
            repo_root=self.repo_root,
        )
        messages = [SystemMessage(content=request.system_instruction), HumanMessage(content=request.prompt)]
        try:
            message = await model.ainvoke(messages)
        except openai.RateLimitError as exc:
            raise RateLimitError(f"Rate limit exceeded: {exc}") from exc
        except openai.APITimeoutError as exc:
            raise GenerationTimeoutError(params.timeout_seconds) from exc
        except openai.APIConnectionError as exc:
            raise TransientBackendError(f"Connection error: {exc}") from exc
        except openai.InternalServerError as exc:
            raise TransientBackendError(f"Backend error {exc.status_code}: {exc}") from exc
        except openai.APIStatusError as exc:
            raise BackendRequestError(f"Backend rejected request ({exc.status_code}): {exc}") from exc

        metadata = dict(getattr(message, "response_metadata", None) or {})
        usage = {
            key: value
            for key, value in dict(getattr(message, "usage_metadata", None) or {}).items()
            if isinstance(value, int)
        }
        reasoning = (getattr(message, "additional_kwargs", None) or {}).get("reasoning_content")
        return BackendResponse(
            text=_content_to_text(message.content),
            finish_reason=metadata.get("finish_reason"),
            usage=usage,
            reasoning=reasoning if isinstance(reasoning, str) else None,
            model=metadata.get("model_name"),
        )


# ---------------------------------------------------------------------------
# Generation client
# ---------------------------------------------------------------------------


def build_system_instruction(base: str, context_docs: Sequence[str] | None = None) -> str:
    docs = [doc for doc in (context_docs or ()) if doc.strip()]
    if not docs:
        return base
    sections = [f"--- Context Document {index} ---\n{doc}" for index, doc in enumerate(docs, start=1)]
    return f"{base}\n\nUse the following context documents:\n\n" + "\n\n".join(sections)


class GenerationClient:
    """Uniform generation capability with parameter resolution, timeout and retry."""

    def __init__(
        self,
        *,
        backend: GenerationBackend,
        resolver: ParameterResolver,
        backend_id: str,
        retry_policy: RetryPolicy | None = None,
        phase_overrides: Mapping[str, ParameterOverrides] | None = None,
        system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.resolver = resolver
        self.backend_id = backend_id
        self.retry_policy = retry_policy or RetryPolicy()
        self.phase_overrides = dict(phase_overrides or {})
        self.system_instruction = system_instruction
        self._sleep = sleep

    async def generate(
        self,
        prompt: str,
        context_docs: Sequence[str] | None = None,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        phase_tag: str | None = None,
    ) -> GenerationResult:
        """Generate text for ``prompt`` with bounded retries.

        Args:
            prompt: User prompt.
            context_docs: Documents appended to the system instruction.
            max_retries: Total attempts before failing terminally.
            phase_tag: Selects phase overrides and phase temperature.

        Returns:
            The final answer text with finish reason, usage and the resolved parameters.

        Raises:
            BackendNotFoundError: If the backend is not registered.
            GenerationTimeoutError: If an attempt exceeds the wall-clock timeout.
            BackendRequestError: If the backend rejects the request outright.
            BackendConfigurationError: If the backend is missing its API key or model name.
            GenerationFailedError: If every attempt failed with a transient error.
        """
        overrides = self.phase_overrides.get(phase_tag) if phase_tag else None
        parameters = self.resolver.resolve(self.backend_id, phase_tag, overrides)
        if overrides is not None and overrides.max_tokens is not None and parameters.max_tokens < overrides.max_tokens:
            logger.info(
                "Capped output length for %s from %d to backend maximum %d",
                self.backend_id,
                overrides.max_tokens,
                parameters.max_tokens,
            )
        request = GenerationRequest(
            backend_id=self.backend_id,
            prompt=prompt,
            system_instruction=build_system_instruction(self.system_instruction, context_docs),
            parameters=parameters,
        )

        attempts = max(1, max_retries)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = await call_with_timeout(self.backend.complete(request), parameters.timeout_seconds)
            except GenerationTimeoutError:
                logger.error("Generation timed out for %s after %ss (phase=%s)", self.backend_id, parameters.timeout_seconds, phase_tag)
                raise
            except Exception as exc:  # noqa: BLE001 - classified by the retry policy below.
                if not self.retry_policy.is_retryable(exc):
                    raise
                last_error = exc
            else:
                return self._to_result(response, parameters, attempt)

            if attempt < attempts:
                delay = self.retry_policy.delay_for(last_error, attempt)
                logger.warning(
                    "Generation attempt %d/%d for %s failed (%s); retrying in %.2fs",
                    attempt,
                    attempts,
                    self.backend_id,
                    last_error,
                    delay,
                )
                await self._sleep(delay)

        raise GenerationFailedError(
            f"Generation failed after {attempts} attempts: {last_error}",
            attempts=attempts,
            last_error=last_error,
        )

    def _to_result(self, response: BackendResponse, parameters: ResolvedParameters, attempt: int) -> GenerationResult:
        content = response.text
        if not content.strip() and response.reasoning:
            logger.info("Final answer empty for %s; using reasoning payload", self.backend_id)
            content = response.reasoning
        if response.finish_reason in TRUNCATION_FINISH_REASONS:
            logger.warning(
                "Response from %s truncated at max_tokens=%d; output may be incomplete",
                self.backend_id,
                parameters.max_tokens,
            )
        return GenerationResult(
            content=content,
            finish_reason=response.finish_reason,
            usage=dict(response.usage),
            model=response.model or self.backend_id,
            parameters=parameters,
            attempts=attempt,
        )

    async def test_connectivity(self) -> bool:
        """Send a minimal request; returns False instead of raising on backend failure."""
        parameters = self.resolver.resolve(
            self.backend_id, overrides=ParameterOverrides(max_tokens=16, timeout_seconds=30)
        )
        request = GenerationRequest(
            backend_id=self.backend_id,
            prompt="Reply with the single word OK.",
            system_instruction=self.system_instruction,
            parameters=parameters,
        )
        try:
            response = await call_with_timeout(self.backend.complete(request), parameters.timeout_seconds)
        except Exception as exc:  # noqa: BLE001 - any backend failure reads as unreachable.
            logger.warning("Connectivity check for %s failed: %s", self.backend_id, exc)
            return False
        return bool(response.text.strip() or response.reasoning)
