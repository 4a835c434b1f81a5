"""
Interchangeable text-generation backends.

Each backend exposes ``complete(prompt, model=...)`` and maps its
provider's failures onto the generation error taxonomy:

- missing key, 401, 403           -> AuthError
- 429, 5xx, network, timeout      -> BackendUnavailableError
- anything else                   -> GenerationError

Backends never retry on their own; the dispatcher owns retry and fallback.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import openai
import structlog
from openai import AsyncOpenAI

from vulnintel.core.config import BackendSettings, Settings, get_settings
from vulnintel.core.errors import (
    AuthError,
    BackendUnavailableError,
    FetchError,
    GenerationError,
    TransportError,
)
from vulnintel.models.records import TokenUsage
from vulnintel.services.http_client import ResilientHttpClient
from vulnintel.utils.token_budget import estimate_tokens

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = "You are a security expert analyzing vulnerabilities."

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


@dataclass
class Completion:
    text: str
    model: str
    usage: TokenUsage


def estimated_usage(prompt: str, text: str, system: str = "") -> TokenUsage:
    return TokenUsage(
        input_tokens=estimate_tokens(system + prompt),
        output_tokens=estimate_tokens(text),
        estimated=True,
    )


class LLMBackend:
    name: str = ""

    def __init__(
        self,
        settings: BackendSettings,
        *,
        temperature: float = 0.7,
        max_tokens: int = 4000,
    ) -> None:
        self.settings = settings
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def has_credentials(self) -> bool:
        return self.settings.has_credentials

    def model_for(self, phase: str) -> str:
        return self.settings.extract_model if phase == "extract" else self.settings.synthesize_model

    def _require_key(self, model: str) -> str:
        if not self.settings.api_key:
            raise AuthError(f"No API key configured for {self.name}", backend=self.name, model=model)
        return self.settings.api_key

    async def complete(self, prompt: str, *, model: str, system: str = SYSTEM_PROMPT) -> Completion:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def _from_fetch_error(self, e: FetchError, model: str) -> GenerationError:
        message = f"{self.name} request failed: {e.message}"
        if e.status in (401, 403):
            return AuthError(message, backend=self.name, model=model)
        if isinstance(e, TransportError):
            return BackendUnavailableError(message, backend=self.name, model=model)
        return GenerationError(message, backend=self.name, model=model)

    def _empty(self, model: str) -> GenerationError:
        return GenerationError(f"{self.name} returned an empty completion", backend=self.name, model=model)


# ────────────────────────────────────────────────────────────
#  OpenAI (SDK)
# ────────────────────────────────────────────────────────────


class OpenAIBackend(LLMBackend):
    name = "openai"

    def __init__(self, settings: BackendSettings, *, client: Optional[AsyncOpenAI] = None, **kwargs: Any):
        super().__init__(settings, **kwargs)
        self._client = client

    def _get_client(self, model: str) -> AsyncOpenAI:
        if self._client is None:
            kwargs: Dict[str, Any] = {
                "api_key": self._require_key(model),
                "timeout": self.settings.timeout,
                "max_retries": 0,
            }
            if self.settings.base_url:
                kwargs["base_url"] = self.settings.base_url
            self._client = AsyncOpenAI(**kwargs)
            logger.info("OpenAI client initialized", base_url=self.settings.base_url)
        return self._client

    async def complete(self, prompt: str, *, model: str, system: str = SYSTEM_PROMPT) -> Completion:
        client = self._get_client(model)
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise AuthError(f"openai rejected credentials: {e}", backend=self.name, model=model) from e
        except (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise BackendUnavailableError(f"openai unavailable: {e}", backend=self.name, model=model) from e
        except openai.OpenAIError as e:
            raise GenerationError(f"openai request failed: {e}", backend=self.name, model=model) from e

        text = ""
        if getattr(response, "choices", None):
            text = response.choices[0].message.content or ""
        if not text.strip():
            raise self._empty(model)

        usage = getattr(response, "usage", None)
        if usage is not None and getattr(usage, "prompt_tokens", None) is not None:
            token_usage = TokenUsage(
                input_tokens=usage.prompt_tokens or 0,
                output_tokens=usage.completion_tokens or 0,
            )
        else:
            token_usage = estimated_usage(prompt, text, system)
        return Completion(text=text, model=getattr(response, "model", None) or model, usage=token_usage)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


# ────────────────────────────────────────────────────────────
#  Anthropic Messages API (REST)
# ────────────────────────────────────────────────────────────


class ClaudeBackend(LLMBackend):
    name = "claude"

    def __init__(self, settings: BackendSettings, *, http: ResilientHttpClient, **kwargs: Any):
        super().__init__(settings, **kwargs)
        self.http = http

    async def complete(self, prompt: str, *, model: str, system: str = SYSTEM_PROMPT) -> Completion:
        api_key = self._require_key(model)
        body = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            payload = await self.http.post_json(
                self.settings.base_url or ANTHROPIC_MESSAGES_URL,
                json_body=body,
                headers={
                    "x-api-key": api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "content-type": "application/json",
                },
                timeout=self.settings.timeout,
                max_retries=0,
            )
        except FetchError as e:
            raise self._from_fetch_error(e, model) from e

        payload = payload or {}
        text = "".join(
            block.get("text", "")
            for block in payload.get("content") or []
            if block.get("type", "text") == "text"
        )
        if not text.strip():
            raise self._empty(model)

        usage = payload.get("usage") or {}
        if "input_tokens" in usage:
            token_usage = TokenUsage(
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
            )
        else:
            token_usage = estimated_usage(prompt, text, system)
        return Completion(text=text, model=payload.get("model") or model, usage=token_usage)


# ────────────────────────────────────────────────────────────
#  Google Generative Language API (REST)
# ────────────────────────────────────────────────────────────


class GeminiBackend(LLMBackend):
    """Usage is always estimated from character counts."""

    name = "gemini"

    def __init__(self, settings: BackendSettings, *, http: ResilientHttpClient, **kwargs: Any):
        super().__init__(settings, **kwargs)
        self.http = http

    async def complete(self, prompt: str, *, model: str, system: str = SYSTEM_PROMPT) -> Completion:
        api_key = self._require_key(model)
        body = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
            },
        }
        try:
            payload = await self.http.post_json(
                (self.settings.base_url or GEMINI_URL).format(model=model),
                json_body=body,
                headers={"x-goog-api-key": api_key},
                timeout=self.settings.timeout,
                max_retries=0,
            )
        except FetchError as e:
            raise self._from_fetch_error(e, model) from e

        candidates = (payload or {}).get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
        text = "".join(p.get("text", "") for p in parts)
        if not text.strip():
            raise self._empty(model)
        return Completion(text=text, model=model, usage=estimated_usage(prompt, text, system))


BACKEND_CLASSES = {
    "openai": OpenAIBackend,
    "claude": ClaudeBackend,
    "gemini": GeminiBackend,
}


def create_backends(
    http: ResilientHttpClient,
    settings: Optional[Settings] = None,
) -> Dict[str, LLMBackend]:
    """Every enabled backend named in the preference list, keyed by name."""
    settings = settings or get_settings()
    backends: Dict[str, LLMBackend] = {}
    for name in settings.backend_preference:
        cfg = settings.backend(name)
        if not cfg.enabled:
            logger.info("Generation backend disabled", backend=name)
            continue
        common = {"temperature": settings.llm_temperature, "max_tokens": settings.llm_max_tokens}
        if name == "openai":
            backends[name] = OpenAIBackend(cfg, **common)
        else:
            backends[name] = BACKEND_CLASSES[name](cfg, http=http, **common)
    return backends
