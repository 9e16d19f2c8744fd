from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from .crypto_vault import CryptoVault
from .errors import CryptoError, ProviderError

logger = logging.getLogger("meyaml.providers")

DEFAULT_TIMEOUT_SECONDS = 60.0
OPENAI_BASE_URL = "https://api.openai.com/v1"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
OLLAMA_BASE_URL = "http://localhost:11434"
TEST_PROMPT = "Respond with exactly: OK"

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "custom": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-20250514",
    "ollama": "llama3.2",
}
PROVIDER_LABELS = {
    "openai": "OpenAI",
    "custom": "OpenAI-compatible",
    "anthropic": "Anthropic",
    "ollama": "Ollama",
}


def _log_provider_error(*, provider_type: str, status: int | None, body: str) -> None:
    logger.warning(
        json.dumps(
            {
                "event": "provider.error",
                "provider_type": provider_type,
                "status": status,
                "body_excerpt": body[:300],
            },
            ensure_ascii=False,
        )
    )


class ProviderAdapter:
    """One pooled HTTP client shared by every provider call."""

    def __init__(
        self,
        vault: CryptoVault,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.vault = vault
        self.timeout_seconds = timeout_seconds
        self._client = httpx.Client(timeout=timeout_seconds, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _build_request(self, provider: dict[str, Any], prompt: str, api_key: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        provider_type = provider["type"]
        model = provider.get("model") or DEFAULT_MODELS.get(provider_type, "")
        base_url = (provider.get("base_url") or "").rstrip("/")

        if provider_type in {"openai", "custom"}:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            body = {
                "model": model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": 0.7,
            }
            return f"{base_url or OPENAI_BASE_URL}/chat/completions", headers, body

        if provider_type == "anthropic":
            headers = {
                "Content-Type": "application/json",
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            }
            body = {
                "model": model,
                "max_tokens": 2048,
                "messages": [{"role": "user", "content": prompt}],
            }
            return ANTHROPIC_URL, headers, body

        if provider_type == "ollama":
            body = {"model": model, "prompt": prompt, "stream": False}
            return f"{base_url or OLLAMA_BASE_URL}/api/generate", {"Content-Type": "application/json"}, body

        raise ProviderError(f"unsupported provider type: {provider_type}")

    @staticmethod
    def _extract_text(provider_type: str, payload: Any) -> str:
        if not isinstance(payload, dict):
            return ""
        if provider_type in {"openai", "custom"}:
            choices = payload.get("choices")
            if not isinstance(choices, list) or not choices:
                return ""
            message = choices[0].get("message") if isinstance(choices[0], dict) else None
            return str((message or {}).get("content") or "").strip()
        if provider_type == "anthropic":
            content = payload.get("content")
            if not isinstance(content, list) or not content or not isinstance(content[0], dict):
                return ""
            return str(content[0].get("text") or "").strip()
        return str(payload.get("response") or "").strip()

    def call(self, provider: dict[str, Any], prompt: str, *, timeout: float | None = None) -> str:
        provider_type = provider.get("type", "")
        label = PROVIDER_LABELS.get(provider_type, provider_type or "provider")

        try:
            api_key = self.vault.decrypt(provider.get("api_key_encrypted", ""))
        except CryptoError as exc:
            raise ProviderError(
                f"{label} credentials could not be decrypted",
                user_action="Re-enter the API key for this provider.",
            ) from exc

        url, headers, body = self._build_request(provider, prompt, api_key)
        effective_timeout = self.timeout_seconds if timeout is None else max(0.1, min(timeout, self.timeout_seconds))

        try:
            response = self._client.post(url, headers=headers, json=body, timeout=effective_timeout)
        except httpx.TimeoutException as exc:
            _log_provider_error(provider_type=provider_type, status=None, body=str(exc))
            raise ProviderError(f"{label} request timed out", body=str(exc)) from exc
        except httpx.HTTPError as exc:
            _log_provider_error(provider_type=provider_type, status=None, body=str(exc))
            raise ProviderError(f"{label} request failed", body=str(exc)) from exc

        if response.status_code < 200 or response.status_code >= 300:
            _log_provider_error(provider_type=provider_type, status=response.status_code, body=response.text)
            raise ProviderError(
                f"{label} API error: {response.status_code}",
                status=response.status_code,
                body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            _log_provider_error(provider_type=provider_type, status=response.status_code, body=response.text)
            raise ProviderError(
                f"{label} returned an unreadable response",
                status=response.status_code,
                body=response.text,
            ) from exc

        text = self._extract_text(provider_type, payload)
        if not text:
            raise ProviderError(
                f"{label} returned an empty response",
                status=response.status_code,
                body=response.text,
            )
        return text

    def test_connection(self, provider: dict[str, Any]) -> tuple[bool, str | None]:
        try:
            self.call(provider, TEST_PROMPT, timeout=30)
        except ProviderError as exc:
            return False, exc.message
        return True, None
