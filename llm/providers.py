from __future__ import annotations

from dataclasses import dataclass
import json
import os
from typing import Any, Callable, Protocol
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError

STOP_REASONS = ("STOP", "MAX_TOKENS", "SAFETY", "OTHER")


@dataclass(eq=False)
class LLMError(Exception):
    code: str
    message: str
    provider: str
    category: str
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.code}({self.provider}/{self.category}): {self.message}"


@dataclass(frozen=True)
class CompletionRequest:
    model: str
    prompt: str
    system: str | None
    temperature: float
    max_output_tokens: int
    category: str = "default"
    timeout_s: float = 60.0


@dataclass(frozen=True)
class CompletionResult:
    text: str
    stop_reason: str
    tokens_in: int
    tokens_out: int


class ProviderAdapter(Protocol):
    name: str

    def default_model(self) -> str: ...

    def complete(self, request: CompletionRequest) -> CompletionResult: ...


def _sanitize_error_message(message: str) -> str:
    text = (message or "").replace("\n", " ")
    text = text.replace("Bearer ", "Bearer [redacted]")
    return text[:300]


def _post_json(
    *,
    provider: str,
    category: str,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout_s: float,
) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    req = urlrequest.Request(
        url=url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json", **headers},
    )
    try:
        with urlrequest.urlopen(req, timeout=max(1.0, timeout_s)) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise LLMError(
            code=f"http_{exc.code}",
            message=_sanitize_error_message(detail),
            provider=provider,
            category=category,
            retryable=exc.code >= 500 or exc.code == 429,
        ) from exc
    except TimeoutError as exc:
        raise LLMError(
            code="timeout",
            message=f"provider call exceeded {timeout_s}s",
            provider=provider,
            category=category,
            retryable=True,
        ) from exc
    except URLError as exc:
        raise LLMError(
            code="network_error",
            message=_sanitize_error_message(str(exc)),
            provider=provider,
            category=category,
            retryable=True,
        ) from exc
    except json.JSONDecodeError as exc:
        raise LLMError(
            code="invalid_response",
            message="provider returned non-JSON body",
            provider=provider,
            category=category,
        ) from exc


def _require_key(provider: str, category: str, env_name: str) -> str:
    api_key = os.getenv(env_name, "").strip()
    if not api_key:
        raise LLMError(
            code="missing_api_key",
            message=f"Missing API key (env: {env_name})",
            provider=provider,
            category=category,
        )
    return api_key


class OpenAIAdapter:
    name = "openai"

    _FINISH = {"stop": "STOP", "length": "MAX_TOKENS", "content_filter": "SAFETY"}

    def default_model(self) -> str:
        return os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip()

    def complete(self, request: CompletionRequest) -> CompletionResult:
        api_key = _require_key(self.name, request.category, "OPENAI_API_KEY")
        base_url = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip().rstrip("/")
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})
        response = _post_json(
            provider=self.name,
            category=request.category,
            url=f"{base_url}/chat/completions",
            payload={
                "model": request.model,
                "messages": messages,
                "temperature": request.temperature,
                "max_tokens": max(1, request.max_output_tokens),
            },
            headers={"Authorization": f"Bearer {api_key}"},
            timeout_s=request.timeout_s,
        )
        try:
            choice = response["choices"][0]
            text = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError(
                code="invalid_response",
                message="missing choices[0].message.content",
                provider=self.name,
                category=request.category,
            ) from exc
        usage = response.get("usage") or {}
        return CompletionResult(
            text=text,
            stop_reason=self._FINISH.get(choice.get("finish_reason") or "", "OTHER"),
            tokens_in=int(usage.get("prompt_tokens", 0) or 0),
            tokens_out=int(usage.get("completion_tokens", 0) or 0),
        )


class GeminiAdapter:
    name = "gemini"

    def default_model(self) -> str:
        return os.getenv("GEMINI_MODEL", "gemini-1.5-flash").strip()

    def complete(self, request: CompletionRequest) -> CompletionResult:
        api_key = _require_key(self.name, request.category, "GEMINI_API_KEY")
        base_url = os.getenv(
            "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
        ).strip().rstrip("/")
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": max(1, request.max_output_tokens),
            },
        }
        if request.system:
            payload["systemInstruction"] = {"parts": [{"text": request.system}]}
        response = _post_json(
            provider=self.name,
            category=request.category,
            url=f"{base_url}/models/{request.model}:generateContent",
            payload=payload,
            headers={"x-goog-api-key": api_key},
            timeout_s=request.timeout_s,
        )
        candidates = response.get("candidates") or []
        if not candidates:
            blocked = (response.get("promptFeedback") or {}).get("blockReason")
            if blocked:
                return CompletionResult(text="", stop_reason="SAFETY", tokens_in=0, tokens_out=0)
            raise LLMError(
                code="invalid_response",
                message="no candidates in response",
                provider=self.name,
                category=request.category,
            )
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        finish = str(candidate.get("finishReason") or "OTHER").upper()
        usage = response.get("usageMetadata") or {}
        return CompletionResult(
            text=text,
            stop_reason=finish if finish in STOP_REASONS else "OTHER",
            tokens_in=int(usage.get("promptTokenCount", 0) or 0),
            tokens_out=int(usage.get("candidatesTokenCount", 0) or 0),
        )


_FACTORIES: dict[str, Callable[[], ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "gemini": GeminiAdapter,
}


def register_provider(name: str, factory: Callable[[], ProviderAdapter]) -> None:
    _FACTORIES[name.strip().lower()] = factory


def available_providers() -> list[str]:
    return sorted(_FACTORIES)


def get_provider(name: str, category: str = "default") -> ProviderAdapter:
    key = (name or "").strip().lower()
    factory = _FACTORIES.get(key)
    if factory is None:
        raise LLMError(
            code="unknown_provider",
            message=f"Unknown LLM provider: {name}",
            provider=key or "unknown",
            category=category,
        )
    return factory()
