from types import SimpleNamespace

import pytest

from vulnintel.core.config import BackendSettings, load_settings
from vulnintel.core.errors import AuthError, BackendUnavailableError, GenerationError
from vulnintel.services.http_client import ResilientHttpClient
from vulnintel.services.llm_backends import (
    ANTHROPIC_VERSION,
    ClaudeBackend,
    GeminiBackend,
    OpenAIBackend,
    create_backends,
)

from fakes import DummyResponse, DummySession


def http_for(settings, session, metrics, sleeps):
    return ResilientHttpClient(settings, metrics=metrics, sleep=sleeps, session=session)


class FakeCompletions:
    def __init__(self, response):
        self.response = response
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.response


class FakeOpenAIClient:
    def __init__(self, response):
        self.chat = SimpleNamespace(completions=FakeCompletions(response))
        self.closed = False

    async def close(self):
        self.closed = True


def openai_response(text, usage=None, model="gpt-4o-mini-2024-07-18"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=usage,
        model=model,
    )


@pytest.mark.asyncio
async def test_openai_reports_provider_usage():
    client = FakeOpenAIClient(
        openai_response("digest", SimpleNamespace(prompt_tokens=321, completion_tokens=45))
    )
    backend = OpenAIBackend(BackendSettings(name="openai", api_key="sk"), client=client, max_tokens=256)

    completion = await backend.complete("prompt", model="gpt-4o-mini")

    assert completion.text == "digest"
    assert completion.model == "gpt-4o-mini-2024-07-18"
    assert completion.usage.input_tokens == 321 and not completion.usage.estimated
    assert client.chat.completions.kwargs["max_tokens"] == 256
    assert client.chat.completions.kwargs["messages"][1] == {"role": "user", "content": "prompt"}

    await backend.close()
    assert client.closed


@pytest.mark.asyncio
async def test_openai_empty_completion_is_an_error():
    backend = OpenAIBackend(
        BackendSettings(name="openai", api_key="sk"), client=FakeOpenAIClient(openai_response("  "))
    )
    with pytest.raises(GenerationError):
        await backend.complete("prompt", model="gpt-4o")


@pytest.mark.asyncio
async def test_openai_without_key_raises_auth_error():
    backend = OpenAIBackend(BackendSettings(name="openai"))
    assert not backend.has_credentials
    with pytest.raises(AuthError):
        await backend.complete("prompt", model="gpt-4o")


@pytest.mark.asyncio
async def test_claude_request_shape_and_usage(settings, metrics_facade, sleeps):
    session = DummySession(
        [
            DummyResponse(
                json_data={
                    "model": "claude-3-opus-20240229",
                    "content": [{"type": "text", "text": "# Post"}, {"type": "text", "text": " body"}],
                    "usage": {"input_tokens": 1200, "output_tokens": 800},
                }
            )
        ]
    )
    backend = ClaudeBackend(settings.backend("claude"), http=http_for(settings, session, metrics_facade, sleeps))

    completion = await backend.complete("write", model="claude-3-opus-20240229")

    assert completion.text == "# Post body"
    assert completion.usage.output_tokens == 800
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["headers"]["x-api-key"] == "claude-test"
    assert call["headers"]["anthropic-version"] == ANTHROPIC_VERSION
    assert call["json"]["messages"] == [{"role": "user", "content": "write"}]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,expected",
    [(401, AuthError), (403, AuthError), (503, BackendUnavailableError), (400, GenerationError)],
)
async def test_claude_maps_http_failures(settings, metrics_facade, sleeps, status, expected):
    session = DummySession([DummyResponse(status=status, text_data="error")])
    backend = ClaudeBackend(settings.backend("claude"), http=http_for(settings, session, metrics_facade, sleeps))

    with pytest.raises(expected) as exc_info:
        await backend.complete("write", model="claude-3-haiku-20240307")

    assert exc_info.value.backend == "claude"
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_gemini_usage_is_estimated(settings, metrics_facade, sleeps):
    settings = load_settings({"GOOGLE_API_KEY": "g-key"})
    session = DummySession(
        [DummyResponse(json_data={"candidates": [{"content": {"parts": [{"text": "Gemini says hi"}]}}]})]
    )
    backend = GeminiBackend(settings.backend("gemini"), http=http_for(settings, session, metrics_facade, sleeps))

    completion = await backend.complete("prompt", model="gemini-2.0-flash")

    assert completion.text == "Gemini says hi"
    assert completion.usage.estimated
    assert completion.usage.output_tokens > 0
    assert "models/gemini-2.0-flash:generateContent" in session.calls[0]["url"]
    assert session.calls[0]["headers"] == {"x-goog-api-key": "g-key"}


@pytest.mark.asyncio
async def test_gemini_without_candidates_is_an_error(settings, metrics_facade, sleeps):
    settings = load_settings({"GEMINI_API_KEY": "g-key"})
    session = DummySession([DummyResponse(json_data={"promptFeedback": {"blockReason": "SAFETY"}})])
    backend = GeminiBackend(settings.backend("gemini"), http=http_for(settings, session, metrics_facade, sleeps))

    with pytest.raises(GenerationError):
        await backend.complete("prompt", model="gemini-2.0-pro")


def test_create_backends_follows_preference_and_enable_flags():
    settings = load_settings({"LLM_BACKENDS": "claude,openai,gemini", "GEMINI_ENABLED": "false"})

    backends = create_backends(http=None, settings=settings)

    assert list(backends) == ["claude", "openai"]
    assert backends["claude"].model_for("extract") == "claude-3-haiku-20240307"
    assert backends["openai"].model_for("synthesize") == "gpt-4-turbo"
