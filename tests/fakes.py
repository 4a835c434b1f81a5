"""Test doubles shared across the test modules."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from vulnintel.models.records import PartialRecord, TokenUsage
from vulnintel.services.fetchers.base import BaseFetcher
from vulnintel.services.llm_backends import Completion


class DummyResponse:
    def __init__(self, status=200, json_data=None, text_data=None, headers=None):
        self.status = status
        self._headers = {k.lower(): v for k, v in (headers or {}).items()}
        if text_data is None:
            text_data = json.dumps(json_data) if json_data is not None else ""
        self._text = text_data

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    @property
    def headers(self):
        return self._headers

    async def text(self):
        return self._text


class RaisingResponse:
    """Context manager that raises on entry, like a refused connection."""

    def __init__(self, exc: BaseException):
        self._exc = exc

    async def __aenter__(self):
        raise self._exc

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummySession:
    def __init__(self, responses):
        self._responses = list(responses)
        self._index = 0
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        resp = self._responses[min(self._index, len(self._responses) - 1)]
        self._index += 1
        return resp

    async def close(self):
        self.closed = True


class RoutingSession(DummySession):
    """Chooses a response by URL substring instead of call order."""

    def __init__(self, routes: Dict[str, Any], default=None):
        super().__init__([])
        self.routes = routes
        self.default = default or DummyResponse(status=404, text_data="not found")

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        for needle, resp in self.routes.items():
            if needle in url:
                return resp
        return self.default


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class StaticFetcher(BaseFetcher):
    """Fetcher returning a canned partial (or raising / hanging)."""

    def __init__(
        self,
        name: str,
        tier: str,
        *,
        record: Optional[PartialRecord] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        settings=None,
    ):
        self.name = name
        self._tier = tier
        self._record = record
        self._error = error
        self._delay = delay
        self.calls = 0
        super().__init__(client=None, settings=settings)

    @property
    def tier(self) -> str:
        return self._tier

    @property
    def enabled(self) -> bool:
        return True

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._record


class FakeBackend:
    """Scriptable generation backend.

    ``script`` is consumed one item per call: a string is returned as the
    completion text, an exception instance is raised.
    """

    def __init__(self, name: str, script=None, *, has_credentials: bool = True, usage=None):
        self.name = name
        self.script = list(script or ["ok"])
        self.has_credentials = has_credentials
        self.usage = usage
        self.calls: List[Dict[str, str]] = []
        self.closed = False

    def model_for(self, phase: str) -> str:
        return f"{self.name}-{'small' if phase == 'extract' else 'large'}"

    async def complete(self, prompt: str, *, model: str, system: str = "") -> Completion:
        self.calls.append({"prompt": prompt, "model": model})
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        usage = self.usage or TokenUsage(input_tokens=100, output_tokens=50)
        return Completion(text=item, model=model, usage=usage)

    async def close(self) -> None:
        self.closed = True
