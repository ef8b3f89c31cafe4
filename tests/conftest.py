"""Shared fakes for the upstream client."""

import json
from types import SimpleNamespace

import pytest

import provider as provider_module
from config import get_settings


def make_chunk(content=None, reasoning=None, tool_calls=None, finish_reason=None):
    delta = SimpleNamespace(content=content, reasoning_content=reasoning, tool_calls=tool_calls)
    choice = SimpleNamespace(delta=delta, finish_reason=finish_reason)
    return SimpleNamespace(id="chunk-1", choices=[choice], usage=None)


def make_usage_chunk(prompt_tokens, completion_tokens):
    usage = SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return SimpleNamespace(id="chunk-1", choices=[], usage=usage)


def make_tool_call(index, arguments="", name=None, call_id=None):
    return SimpleNamespace(
        index=index,
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


def parse_events(events):
    """Turn rendered SSE strings into (event, data) pairs."""
    parsed = []
    for event in events:
        lines = event.strip().split("\n")
        parsed.append((lines[0][len("event: "):], json.loads(lines[1][len("data: "):])))
    return parsed


class FakeResponse:
    def __init__(self, data):
        self._data = data

    def model_dump(self):
        return self._data


class FakeCompletions:
    def __init__(self):
        self.chunks = []
        self.response = None
        self.error = None
        self.calls = []

    async def create(self, **body):
        self.calls.append(body)
        if self.error:
            raise self.error
        if body.get("stream"):
            return self._stream()
        return FakeResponse(self.response)

    async def _stream(self):
        for chunk in self.chunks:
            yield chunk


class FakeClient:
    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self):
        self.closed = True


class FakeRateLimiter:
    def __init__(self):
        self.blocked = None

    async def wait(self):
        return False

    def block(self, seconds=60):
        self.blocked = seconds


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    monkeypatch.setenv("UPSTREAM_API_KEY", "test-key")
    monkeypatch.setenv("MODEL", "test-model")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def provider(fake_client, monkeypatch):
    monkeypatch.setattr(provider_module.RateLimiter, "get", staticmethod(lambda: FakeRateLimiter()))
    upstream = provider_module.UpstreamProvider()
    upstream._client = fake_client
    return upstream
