"""Single entry point for LLM calls.

Selects a provider, applies generation parameters, retries transient
failures and appends one ``llm_response_log`` row per attempt. The gateway
never writes content tables.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
import time
from typing import Any, Callable
from uuid import UUID

from core.logger import get_logger
from db.models import LLMResponseLog
from db.repository import insert_with_tenant

from .postprocess import looks_truncated
from .providers import CompletionRequest, LLMError, get_provider

__all__ = ["GenerationResult", "LLMError", "LLMGateway", "get_gateway"]

logger = get_logger(__name__)

BACKOFF_SECONDS = (0.25, 1.0)


@dataclass(frozen=True)
class GenerationResult:
    text: str
    stop_reason: str
    is_truncated: bool
    tokens_in: int
    tokens_out: int
    provider: str
    model: str
    log_id: int | None
    attempts: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "stopReason": self.stop_reason,
            "isTruncated": self.is_truncated,
            "tokensIn": self.tokens_in,
            "tokensOut": self.tokens_out,
            "provider": self.provider,
            "model": self.model,
            "logId": self.log_id,
            "attempts": self.attempts,
        }


def _timeout_seconds() -> float:
    return float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))


def _tenant_provider(account_id: UUID) -> str | None:
    from accounts.settings import get_settings

    value = get_settings(account_id, "generation").get("default_provider")
    return str(value).strip().lower() if value else None


class LLMGateway:
    def __init__(
        self,
        *,
        retries: int = 2,
        backoff: tuple[float, ...] = BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.retries = max(0, retries)
        self.backoff = backoff
        self._sleep = sleep

    def resolve_provider(self, category: str, params: dict[str, Any], account_id: UUID) -> str:
        explicit = params.get("provider")
        if explicit:
            return str(explicit).strip().lower()
        tenant_choice = _tenant_provider(account_id)
        if tenant_choice:
            return tenant_choice
        routed = os.getenv(f"LLM_ROUTE_{category.upper()}_PROVIDER", "").strip().lower()
        if routed:
            return routed
        return os.getenv("LLM_DEFAULT_PROVIDER", "openai").strip().lower()

    def generate(
        self,
        category: str,
        prompt: str,
        system: str | None,
        params: dict[str, Any] | None,
        account_id: UUID,
        gen_article_id: int | None = None,
        *,
        template_id: int | None = None,
        version_id: int | None = None,
    ) -> GenerationResult:
        params = dict(params or {})
        provider_name = self.resolve_provider(category, params, account_id)
        try:
            adapter = get_provider(provider_name, category)
        except LLMError as exc:
            insert_with_tenant(
                LLMResponseLog,
                account_id,
                {
                    "gen_article_id": gen_article_id,
                    "template_id": template_id,
                    "version_id": version_id,
                    "category": category,
                    "provider": provider_name,
                    "model": params.get("model"),
                    "attempt": 1,
                    "prompt_text": prompt,
                    "system_message": system,
                    "response_text": None,
                    "stop_reason": "ERROR",
                    "error": str(exc),
                },
            )
            logger.warning("llm_provider_unavailable", category=category, provider=provider_name, code=exc.code)
            raise
        model = (
            params.get("model")
            or os.getenv(f"LLM_ROUTE_{category.upper()}_MODEL", "").strip()
            or adapter.default_model()
        )
        temperature = float(params.get("temperature", os.getenv("LLM_TEMPERATURE", "0.7")))
        max_output_tokens = int(
            params.get("max_output_tokens")
            or params.get("max_tokens")
            or os.getenv("LLM_MAX_OUTPUT_TOKENS", "2000")
        )
        request = CompletionRequest(
            model=model,
            prompt=prompt,
            system=system,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            category=category,
            timeout_s=_timeout_seconds(),
        )
        log_fields = {
            "gen_article_id": gen_article_id,
            "template_id": template_id,
            "version_id": version_id,
            "category": category,
            "provider": provider_name,
            "model": model,
            "prompt_text": prompt,
            "system_message": system,
            "max_output_tokens": max_output_tokens,
            "temperature": temperature,
        }

        last_error: LLMError | None = None
        for attempt in range(1, self.retries + 2):
            start = time.perf_counter()
            try:
                completion = adapter.complete(request)
            except LLMError as exc:
                last_error = exc
            except Exception as exc:
                last_error = LLMError(
                    code="provider_error",
                    message=str(exc)[:300],
                    provider=provider_name,
                    category=category,
                )
            else:
                elapsed_ms = int((time.perf_counter() - start) * 1000)
                truncated = looks_truncated(completion.text, completion.stop_reason)
                row = insert_with_tenant(
                    LLMResponseLog,
                    account_id,
                    {
                        **log_fields,
                        "attempt": attempt,
                        "response_text": completion.text,
                        "stop_reason": completion.stop_reason,
                        "is_complete": completion.stop_reason == "STOP" and not truncated,
                        "is_truncated": truncated,
                        "tokens_in": completion.tokens_in,
                        "tokens_out": completion.tokens_out,
                        "generation_time_ms": elapsed_ms,
                    },
                )
                if truncated:
                    logger.warning(
                        "llm_response_truncated",
                        category=category,
                        provider=provider_name,
                        stop_reason=completion.stop_reason,
                    )
                return GenerationResult(
                    text=completion.text,
                    stop_reason=completion.stop_reason,
                    is_truncated=truncated,
                    tokens_in=completion.tokens_in,
                    tokens_out=completion.tokens_out,
                    provider=provider_name,
                    model=model,
                    log_id=row.id,
                    attempts=attempt,
                )

            insert_with_tenant(
                LLMResponseLog,
                account_id,
                {
                    **log_fields,
                    "attempt": attempt,
                    "response_text": None,
                    "stop_reason": "ERROR",
                    "is_complete": False,
                    "is_truncated": False,
                    "generation_time_ms": int((time.perf_counter() - start) * 1000),
                    "error": str(last_error),
                },
            )
            logger.warning(
                "llm_attempt_failed",
                category=category,
                provider=provider_name,
                attempt=attempt,
                code=last_error.code,
                retryable=last_error.retryable,
            )
            if not last_error.retryable or attempt > self.retries:
                raise last_error
            self._sleep(self.backoff[min(attempt - 1, len(self.backoff) - 1)])


_GATEWAY = LLMGateway()


def get_gateway() -> LLMGateway:
    return _GATEWAY
