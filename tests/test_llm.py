from __future__ import annotations

import asyncio

import httpx
import openai
import pytest
from conftest import DEMO_BACKEND, FakeBackend, RecordingSleep, demo_registry, make_client
from langchain_core.messages import AIMessage

from specflow import llm
from specflow.errors import (
    BackendConfigurationError,
    BackendRequestError,
    GenerationFailedError,
    GenerationTimeoutError,
    RateLimitError,
    TransientBackendError,
)
from specflow.llm import (
    ChatOpenAIBackend,
    GenerationClient,
    RetryPolicy,
    build_system_instruction,
    call_with_timeout,
    ensure_api_key,
)
from specflow.models import BackendResponse, ParameterOverrides
from specflow.parameters import ParameterResolver


def test_generate_returns_content_and_resolved_parameters() -> None:
    backend = FakeBackend(script=[BackendResponse(text="hello", finish_reason="stop", usage={"total_tokens": 7})])
    result = asyncio.run(make_client(backend).generate("Say hello"))
    assert result.content == "hello"
    assert result.usage == {"total_tokens": 7}
    assert result.attempts == 1
    assert result.model == DEMO_BACKEND
    assert backend.requests[0].parameters.max_tokens == 8192


def test_rate_limits_back_off_exponentially() -> None:
    sleep = RecordingSleep()
    backend = FakeBackend(script=[RateLimitError("slow down"), RateLimitError("slow down"), "done"])
    result = asyncio.run(make_client(backend, sleep=sleep).generate("prompt", max_retries=3))
    assert result.content == "done"
    assert result.attempts == 3
    assert sleep.delays == [1.0, 2.0]


def test_transient_errors_back_off_linearly() -> None:
    sleep = RecordingSleep()
    backend = FakeBackend(script=[TransientBackendError("reset"), ConnectionError("refused"), "ok"])
    asyncio.run(make_client(backend, sleep=sleep).generate("prompt", max_retries=3))
    assert sleep.delays == [2.0, 4.0]


def test_backoff_is_capped() -> None:
    policy = RetryPolicy(max_backoff=5.0)
    assert policy.delay_for(RateLimitError("x"), 10) == 5.0
    assert policy.delay_for(TransientBackendError("x"), 10) == 5.0


def test_exhausted_retries_raise_with_attempt_count_and_last_message() -> None:
    backend = FakeBackend(script=[TransientBackendError("boom-1"), TransientBackendError("boom-2")])
    with pytest.raises(GenerationFailedError, match="Generation failed after 2 attempts: boom-2") as excinfo:
        asyncio.run(make_client(backend).generate("prompt", max_retries=2))
    assert excinfo.value.attempts == 2
    assert len(backend.requests) == 2


def test_timeout_is_not_retried() -> None:
    sleep = RecordingSleep()
    backend = FakeBackend(script=[GenerationTimeoutError(30), "never reached"])
    with pytest.raises(GenerationTimeoutError, match="timed out after 30s"):
        asyncio.run(make_client(backend, sleep=sleep).generate("prompt", max_retries=3))
    assert len(backend.requests) == 1
    assert sleep.delays == []


def test_request_errors_are_not_retried() -> None:
    backend = FakeBackend(script=[BackendRequestError("bad key"), "never reached"])
    with pytest.raises(BackendRequestError):
        asyncio.run(make_client(backend).generate("prompt"))
    assert len(backend.requests) == 1


def test_call_with_timeout_cancels_slow_calls() -> None:
    async def slow() -> str:
        await asyncio.sleep(1.0)
        return "late"

    with pytest.raises(GenerationTimeoutError) as excinfo:
        asyncio.run(call_with_timeout(slow(), 0.01))
    assert excinfo.value.timeout_seconds == 0.01


def test_empty_answer_falls_back_to_reasoning() -> None:
    backend = FakeBackend(script=[BackendResponse(text="  ", reasoning="thought it through", finish_reason="stop")])
    result = asyncio.run(make_client(backend).generate("prompt"))
    assert result.content == "thought it through"


def test_truncation_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    backend = FakeBackend(script=[BackendResponse(text="partial", finish_reason="length")])
    with caplog.at_level("WARNING", logger="specflow.llm"):
        result = asyncio.run(make_client(backend).generate("prompt"))
    assert result.finish_reason == "length"
    assert any("truncated" in record.message for record in caplog.records)


def test_context_documents_are_appended_to_system_instruction() -> None:
    backend = FakeBackend(script=["ok"])
    asyncio.run(make_client(backend).generate("prompt", context_docs=["first doc", "", "second doc"]))
    instruction = backend.requests[0].system_instruction
    assert "Use the following context documents:" in instruction
    assert "--- Context Document 1 ---\nfirst doc" in instruction
    assert "--- Context Document 2 ---\nsecond doc" in instruction
    assert build_system_instruction("base") == "base"


def test_phase_overrides_are_capped_at_backend_maximum() -> None:
    backend = FakeBackend(script=["ok"])
    client = GenerationClient(
        backend=backend,
        resolver=ParameterResolver(demo_registry()),
        backend_id=DEMO_BACKEND,
        phase_overrides={"solutioning": ParameterOverrides(max_tokens=100_000)},
        sleep=RecordingSleep(),
    )
    result = asyncio.run(client.generate("prompt", phase_tag="solutioning"))
    assert result.parameters.max_tokens == 8192
    assert result.parameters.source == "override"


def test_connectivity_check_reports_failure_without_raising() -> None:
    assert asyncio.run(make_client(FakeBackend(script=["OK"])).test_connectivity()) is True
    failing = FakeBackend(script=[BackendRequestError("unauthorized")])
    assert asyncio.run(make_client(failing).test_connectivity()) is False
    assert failing.requests[0].parameters.max_tokens == 16


@pytest.mark.parametrize("error", [ConnectionResetError("peer reset"), ValueError("bad model settings")])
def test_connectivity_check_absorbs_unmapped_errors(error: Exception) -> None:
    assert asyncio.run(make_client(FakeBackend(script=[error])).test_connectivity()) is False


def test_ensure_api_key_reads_dotenv(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Recorded as unset so teardown removes what load_dotenv writes.
    monkeypatch.setenv("SPECFLOW_TEST_KEY", "placeholder")
    monkeypatch.delenv("SPECFLOW_TEST_KEY")
    with pytest.raises(BackendConfigurationError, match="SPECFLOW_TEST_KEY is required"):
        ensure_api_key("SPECFLOW_TEST_KEY", repo_root=tmp_path)
    (tmp_path / ".env").write_text("SPECFLOW_TEST_KEY=sk-test\n", encoding="utf-8")
    assert ensure_api_key("SPECFLOW_TEST_KEY", repo_root=tmp_path) == "sk-test"


# ---------------------------------------------------------------------------
# ChatOpenAIBackend
# ---------------------------------------------------------------------------

_REQUEST = httpx.Request("POST", "https://api.openai.test/v1/chat/completions")


def _status_error(error_type: type[openai.APIStatusError], status: int) -> openai.APIStatusError:
    return error_type(f"status {status}", response=httpx.Response(status, request=_REQUEST), body=None)


class StubChatModel:
    def __init__(self, outcome: object) -> None:
        self.outcome = outcome
        self.calls = 0

    async def ainvoke(self, messages: object) -> object:
        self.calls += 1
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


def _openai_client(
    monkeypatch: pytest.MonkeyPatch, outcome: object, sleep: RecordingSleep
) -> tuple[GenerationClient, StubChatModel]:
    model = StubChatModel(outcome)
    monkeypatch.setattr(llm, "get_chat_model", lambda **kwargs: model)
    return make_client(ChatOpenAIBackend(model_name="gpt-test"), sleep=sleep), model  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("error", "mapped", "retried"),
    [
        (_status_error(openai.RateLimitError, 429), RateLimitError, True),
        (openai.APITimeoutError(request=_REQUEST), GenerationTimeoutError, False),
        (openai.APIConnectionError(request=_REQUEST), TransientBackendError, True),
        (_status_error(openai.InternalServerError, 500), TransientBackendError, True),
        (_status_error(openai.BadRequestError, 400), BackendRequestError, False),
    ],
)
def test_openai_errors_map_onto_retry_taxonomy(
    monkeypatch: pytest.MonkeyPatch, error: Exception, mapped: type[Exception], retried: bool
) -> None:
    sleep = RecordingSleep()
    client, model = _openai_client(monkeypatch, error, sleep)

    with pytest.raises((GenerationFailedError, mapped)) as excinfo:
        asyncio.run(client.generate("prompt", max_retries=2))

    if retried:
        assert isinstance(excinfo.value, GenerationFailedError)
        assert isinstance(excinfo.value.last_error, mapped)
        assert model.calls == 2
        assert len(sleep.delays) == 1
    else:
        assert isinstance(excinfo.value, mapped)
        assert excinfo.value.__cause__ is error
        assert model.calls == 1
        assert sleep.delays == []


def test_openai_reasoning_and_usage_are_extracted(monkeypatch: pytest.MonkeyPatch) -> None:
    message = AIMessage(
        content="",
        additional_kwargs={"reasoning_content": "worked it out"},
        usage_metadata={"input_tokens": 3, "output_tokens": 5, "total_tokens": 8},
        response_metadata={"finish_reason": "stop", "model_name": "gpt-test-2025"},
    )
    client, _ = _openai_client(monkeypatch, message, RecordingSleep())

    result = asyncio.run(client.generate("prompt"))

    assert result.content == "worked it out"
    assert result.usage == {"input_tokens": 3, "output_tokens": 5, "total_tokens": 8}
    assert result.finish_reason == "stop"
    assert result.model == "gpt-test-2025"


def test_missing_api_key_fails_fast_without_retry(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    lookups: list[str] = []
    real_ensure_api_key = llm.ensure_api_key

    def counting_ensure_api_key(env_var: str = "OPENAI_API_KEY", repo_root=None) -> str:
        lookups.append(env_var)
        return real_ensure_api_key(env_var, repo_root=repo_root)

    monkeypatch.setattr(llm, "ensure_api_key", counting_ensure_api_key)
    sleep = RecordingSleep()
    backend = ChatOpenAIBackend(model_name="gpt-test", repo_root=tmp_path)
    client = make_client(backend, sleep=sleep)  # type: ignore[arg-type]

    with pytest.raises(BackendConfigurationError, match="OPENAI_API_KEY is required"):
        asyncio.run(client.generate("prompt", max_retries=3))
    assert lookups == ["OPENAI_API_KEY"]
    assert sleep.delays == []


def test_blank_model_name_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    sleep = RecordingSleep()
    client = make_client(ChatOpenAIBackend(model_name="   "), sleep=sleep)  # type: ignore[arg-type]
    with pytest.raises(BackendConfigurationError, match="model_name must be a non-empty string"):
        asyncio.run(client.generate("prompt"))
    assert sleep.delays == []
    assert RetryPolicy().is_retryable(BackendConfigurationError("x")) is False
