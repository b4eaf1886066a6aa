from __future__ import annotations

import pytest

from accounts.settings import update_settings
from db.models import LLMResponseLog
from db.repository import find_many
from llm.gateway import LLMGateway
from llm.postprocess import looks_truncated, strip_code_fence
from llm.providers import CompletionResult, LLMError, get_provider

from conftest import count, transient_error


def test_transient_errors_are_retried_with_backoff(tenant, fake_llm, gateway, sleeps) -> None:
    fake_llm.script = [transient_error(), transient_error()]

    result = gateway.generate("blog_post", "Write.", "Be brief.", {}, tenant)

    assert result.attempts == 3
    assert sleeps == [0.25, 1.0]
    rows = find_many(LLMResponseLog, tenant, order_by=LLMResponseLog.id)
    assert [row.attempt for row in rows] == [1, 2, 3]
    assert [row.stop_reason for row in rows] == ["ERROR", "ERROR", "STOP"]
    assert rows[0].error.startswith("http_503(fake/blog_post)")
    assert rows[2].is_complete is True
    assert result.log_id == rows[2].id


def test_retries_are_exhausted_after_three_attempts(tenant, fake_llm, gateway, sleeps) -> None:
    fake_llm.script = [transient_error(), transient_error(), transient_error()]

    with pytest.raises(LLMError) as excinfo:
        gateway.generate("blog_post", "Write.", None, {}, tenant)

    assert excinfo.value.code == "http_503"
    assert count(LLMResponseLog, account_id=tenant) == 3
    assert sleeps == [0.25, 1.0]


def test_non_retryable_error_fails_after_one_attempt(tenant, fake_llm, gateway, sleeps) -> None:
    fake_llm.script = [LLMError(code="http_401", message="bad key", provider="fake", category="blog_post")]

    with pytest.raises(LLMError):
        gateway.generate("blog_post", "Write.", None, {}, tenant)

    assert count(LLMResponseLog, account_id=tenant) == 1
    assert sleeps == []


def test_unexpected_provider_exception_is_wrapped(tenant, fake_llm, gateway) -> None:
    fake_llm.script = [RuntimeError("socket closed")]

    with pytest.raises(LLMError) as excinfo:
        gateway.generate("blog_post", "Write.", None, {}, tenant)

    assert excinfo.value.code == "provider_error"
    assert excinfo.value.retryable is False


def test_max_tokens_stop_is_logged_as_truncated(tenant, fake_llm, gateway) -> None:
    fake_llm.script = [CompletionResult(text="The story begins", stop_reason="MAX_TOKENS", tokens_in=5, tokens_out=3)]

    result = gateway.generate("blog_post", "Write.", None, {"max_tokens": 3}, tenant)

    assert result.is_truncated is True
    row = find_many(LLMResponseLog, tenant)[0]
    assert (row.is_truncated, row.is_complete, row.max_output_tokens) == (True, False, 3)


def test_template_identity_is_recorded_on_log_rows(tenant, fake_llm, gateway) -> None:
    gateway.generate("devotional", "Reflect.", None, {"temperature": 0.2}, tenant, template_id=None, version_id=None)

    row = find_many(LLMResponseLog, tenant)[0]
    assert row.category == "devotional"
    assert row.provider == "fake"
    assert row.model == "fake-model"
    assert row.temperature == pytest.approx(0.2)
    assert fake_llm.requests[0].temperature == pytest.approx(0.2)


def test_provider_resolution_order(tenant, fake_llm, monkeypatch) -> None:
    gateway = LLMGateway()
    monkeypatch.setenv("LLM_ROUTE_BLOG_POST_PROVIDER", "gemini")

    assert gateway.resolve_provider("blog_post", {"provider": "OpenAI"}, tenant) == "openai"
    assert gateway.resolve_provider("blog_post", {}, tenant) == "gemini"
    assert gateway.resolve_provider("devotional", {}, tenant) == "fake"

    update_settings(tenant, "generation", {"default_provider": "fake"})
    assert gateway.resolve_provider("blog_post", {}, tenant) == "fake"


def test_unknown_provider_is_not_retryable(tenant) -> None:
    with pytest.raises(LLMError) as excinfo:
        get_provider("nope", "blog_post")

    assert excinfo.value.code == "unknown_provider"
    assert excinfo.value.retryable is False


def test_missing_api_key_is_reported_without_calling_out(tenant, gateway, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(LLMError) as excinfo:
        gateway.generate("blog_post", "Write.", None, {"provider": "openai"}, tenant)

    assert excinfo.value.code == "missing_api_key"
    assert count(LLMResponseLog, account_id=tenant) == 1


def test_strip_code_fence_unwraps_json() -> None:
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence("  plain text  ") == "plain text"
    assert strip_code_fence(None) == ""


def test_looks_truncated_heuristics() -> None:
    assert looks_truncated("done.", "STOP") is False
    assert looks_truncated("done.", "MAX_TOKENS") is True
    assert looks_truncated("and then...", "STOP") is True
    assert looks_truncated('{"a": "open', "STOP") is True
    assert looks_truncated("```json\n{}", "STOP") is True


def test_unknown_provider_still_writes_a_log_row(tenant, gateway) -> None:
    with pytest.raises(LLMError) as excinfo:
        gateway.generate("blog_post", "Write.", None, {"provider": "nope"}, tenant)

    assert excinfo.value.code == "unknown_provider"
    rows = find_many(LLMResponseLog, tenant)
    assert [(row.provider, row.stop_reason, row.attempt) for row in rows] == [("nope", "ERROR", 1)]
    assert rows[0].error.startswith("unknown_provider(nope/blog_post)")


def test_negative_retry_count_still_makes_one_attempt(tenant, fake_llm, sleeps) -> None:
    fake_llm.script = [LLMError(code="http_400", message="bad request", provider="fake", category="blog_post")]

    with pytest.raises(LLMError) as excinfo:
        LLMGateway(retries=-1, sleep=sleeps.append).generate("blog_post", "Write.", None, {}, tenant)

    assert excinfo.value.code == "http_400"
    assert sleeps == []
    assert count(LLMResponseLog, account_id=tenant) == 1
