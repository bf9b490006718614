import copy

import pytest

from langxlang.cache import MemoryCacheStore
from langxlang.client import CompletionService
from langxlang.providers.base import BaseLLMProvider


class StubProvider(BaseLLMProvider):
    """Adapter that replays scripted responses and records every request."""

    provider_name = "stub"

    def __init__(self, responses=(), **kwargs):
        super().__init__("stub-key", **kwargs)
        self.responses = list(responses)
        self.calls = []

    async def request_chat_complete(self, model, messages, options=None, functions=None, on_chunk=None):
        self.calls.append(copy.deepcopy({
            "model": model,
            "messages": messages,
            "options": options,
            "functions": functions,
        }))
        self.check_guidance(messages)
        await self.wait_for_rate_limit(model, options)

        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(messages)
        self.emit(on_chunk, 0, response.get("text", ""))
        self.emit_done(on_chunk)
        return [response]


@pytest.fixture
def mock_env(monkeypatch):
    """Mock environment variables for API keys."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("GEMINI_API_KEY", "AIza-test-gemini")
    monkeypatch.delenv("OPENAI_API_BASE", raising=False)


@pytest.fixture
def make_service():
    """Build a CompletionService whose 'openai' provider is a StubProvider."""
    def _make(*responses, **kwargs):
        stub = StubProvider(responses)
        kwargs.setdefault("cache", MemoryCacheStore())
        service = CompletionService(providers={"openai": stub}, **kwargs)
        return service, stub
    return _make


@pytest.fixture
def text_response():
    def _make(text, **extra):
        return {"kind": "text", "text": text, "parts": [{"type": "text", "text": text}],
                "function_calls": [], "provider": "stub", "meta": {}, **extra}
    return _make


@pytest.fixture
def function_response():
    def _make(*calls):
        function_calls = [
            {"id": f"call_{i}", "name": name, "arguments": arguments}
            for i, (name, arguments) in enumerate(calls)
        ]
        return {"kind": "function", "text": "", "function_calls": function_calls,
                "parts": [{"type": "function_call", **c} for c in function_calls],
                "provider": "stub", "meta": {}}
    return _make
