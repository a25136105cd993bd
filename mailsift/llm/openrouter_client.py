"""OpenRouter HTTP client for structured-extraction chat completions.

Responsibilities:
- Send chat-completions requests to an OpenAI-compatible REST API.
- Normalize response extraction to the first assistant message text.
- Raise `ProviderError` with a failure kind that invokers can classify.
"""

from __future__ import annotations

import json
import re
import socket
from typing import Any, Protocol

import requests

from ..errors import ProviderError
from ..telemetry.logger import log_event

JSON_ONLY_SYSTEM_PROMPT = (
    "Output ONLY a valid JSON object. No explanations, no reasoning text, no markdown. "
    "Start with { and end with }."
)

_SIZE_OVERFLOW_PATTERNS = (
    re.compile(r"context[ _]length", re.IGNORECASE),
    re.compile(r"maximum.*tokens", re.IGNORECASE),
    re.compile(r"too long", re.IGNORECASE),
    re.compile(r"too many tokens", re.IGNORECASE),
)


class ChatBackend(Protocol):
    """Blocking generation backend: one prompt in, raw assistant text out."""

    def complete(self, prompt: str) -> str:
        """Return the raw assistant text for `prompt`."""


def looks_like_size_overflow(message: str) -> bool:
    """Return whether an error message describes an input-length rejection."""

    return any(pattern.search(message) for pattern in _SIZE_OVERFLOW_PATTERNS)


class OpenRouterChatClient:
    """Minimal requests-based chat-completions client."""

    _MAX_PROVIDER_MESSAGE_CHARS = 180

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout_seconds: float = 300.0,
        temperature: float = 0.1,
        max_tokens: int | None = None,
        app_title: str = "mailsift",
    ) -> None:
        """Initialize HTTP settings for one backend/model pair."""

        self.api_key = api_key.strip() if isinstance(api_key, str) else ""
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.app_title = app_title

    def complete(self, prompt: str) -> str:
        """Send one user prompt and return the first assistant message text."""

        if not self.api_key:
            raise ProviderError(
                "Missing API key. Set `OPENROUTER_API_KEY` or pass `--api-key`.",
                failure_kind="invalid_api_key",
            )

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": JSON_ONLY_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens

        log_event("DEBUG", "backend", "request", prompt_chars=len(prompt), model=self.model)
        raw_payload = self._post_json(endpoint_path="/chat/completions", payload=payload)
        return self._extract_message_text(raw_payload)

    def _post_json(self, *, endpoint_path: str, payload: dict[str, Any]) -> str:
        """POST a JSON payload and return the decoded response body."""

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": self.app_title,
        }
        try:
            response = requests.post(
                f"{self.base_url}{endpoint_path}",
                headers=headers,
                json=payload,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise self._http_error_to_provider_error(exc) from exc
        except requests.RequestException as exc:
            failure_kind = self._classify_transport_failure(exc)
            if failure_kind == "timeout":
                detail = "Backend request timed out."
            else:
                detail = f"Backend transport error: {self._short_message(str(exc))}"
            raise ProviderError(detail, failure_kind=failure_kind) from exc
        return bytes(response.content).decode("utf-8", errors="replace")

    @classmethod
    def _extract_message_text(cls, raw_payload: str) -> str:
        """Extract the first assistant message text from a chat-completions payload."""

        try:
            payload = json.loads(raw_payload)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                "Backend returned an invalid JSON envelope.", failure_kind="malformed"
            ) from exc

        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            message, code = cls._extract_provider_message(raw_payload)
            failure_kind = "size_overflow" if looks_like_size_overflow(message) else "http_error"
            raise ProviderError(
                f"Backend reported an error: {message}",
                failure_kind=failure_kind,
                provider_code=code,
            )

        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not isinstance(choices, list) or not choices:
            raise ProviderError(
                "Backend response missing non-empty `choices` list.", failure_kind="malformed"
            )
        first_choice = choices[0]
        message = first_choice.get("message") if isinstance(first_choice, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        text = cls._message_content_to_text(content).strip()
        if not text:
            usage = payload.get("usage") if isinstance(payload, dict) else None
            reasoning_tokens = 0
            if isinstance(usage, dict):
                details = usage.get("completion_tokens_details")
                if isinstance(details, dict):
                    reasoning_tokens = int(details.get("reasoning_tokens") or 0)
            raise ProviderError(
                f"Backend response content is empty (reasoning tokens: {reasoning_tokens}).",
                failure_kind="empty_response",
            )
        return text

    @staticmethod
    def _message_content_to_text(content: Any) -> str:
        """Convert message content variants into a plain text string."""

        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                part["text"]
                for part in content
                if isinstance(part, dict)
                and part.get("type") == "text"
                and isinstance(part.get("text"), str)
            )
        return ""

    @classmethod
    def _redact_sensitive_tokens(cls, text: str) -> str:
        """Redact API-key-like tokens from provider error content."""

        redacted = re.sub(r"\bsk-[A-Za-z0-9_-]{8,}\b", "[redacted-key]", text)
        return re.sub(
            r"(?i)bearer\s+[A-Za-z0-9._-]{12,}",
            "Bearer [redacted-token]",
            redacted,
        )

    @classmethod
    def _short_message(cls, text: str) -> str:
        """Normalize and cap user-facing provider message length."""

        compact = " ".join(text.split())
        if len(compact) <= cls._MAX_PROVIDER_MESSAGE_CHARS:
            return compact
        return f"{compact[: cls._MAX_PROVIDER_MESSAGE_CHARS - 1]}..."

    @classmethod
    def _extract_provider_message(cls, body: str) -> tuple[str, str | None]:
        """Extract a concise provider message and optional provider error code."""

        if not body:
            return "", None
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return cls._short_message(cls._redact_sensitive_tokens(body)), None

        provider_code: str | None = None
        message: str | None = None
        error_payload = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error_payload, dict):
            code_value = error_payload.get("code")
            if code_value is not None and str(code_value).strip():
                provider_code = str(code_value).strip()
            message_value = error_payload.get("message")
            if isinstance(message_value, str) and message_value.strip():
                message = message_value.strip()
        if message is None:
            message = body
        return cls._short_message(cls._redact_sensitive_tokens(message)), provider_code

    @staticmethod
    def _classify_http_failure(status_code: int, provider_message: str) -> str:
        """Classify HTTP errors into failure kinds used by invokers."""

        message_lower = provider_message.lower()
        if status_code == 401 or "api key" in message_lower:
            return "invalid_api_key"
        if looks_like_size_overflow(provider_message) or status_code == 413:
            return "size_overflow"
        if status_code == 429:
            return "rate_limited"
        if status_code in {408, 504} or "timeout" in message_lower or "timed out" in message_lower:
            return "timeout"
        if 500 <= status_code < 600:
            return "server_error"
        return "http_error"

    @staticmethod
    def _classify_transport_failure(reason: object) -> str:
        """Classify network-layer failures."""

        if isinstance(reason, TimeoutError | socket.timeout | requests.Timeout):
            return "timeout"
        return "transport"

    @classmethod
    def _http_error_to_provider_error(cls, exc: requests.HTTPError) -> ProviderError:
        """Convert HTTP errors into provider exceptions with classification metadata."""

        response = exc.response
        status_code = response.status_code if response is not None else 0
        body = ""
        if response is not None:
            body = bytes(response.content).decode("utf-8", errors="replace").strip()
        provider_message, provider_code = cls._extract_provider_message(body)
        failure_kind = cls._classify_http_failure(status_code, provider_message)
        if provider_message:
            detail = f"Backend request failed (HTTP {status_code}): {provider_message}"
        else:
            detail = f"Backend request failed (HTTP {status_code})."
        return ProviderError(
            detail,
            failure_kind=failure_kind,
            status_code=status_code,
            provider_code=provider_code,
        )
