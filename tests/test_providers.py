from types import SimpleNamespace

import httpx
import openai
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from langxlang.errors import ConfigurationError, ProtocolViolation, ProviderError, SafetyError
from langxlang.providers.gemini import GeminiProvider, merge_consecutive_roles
from langxlang.providers.openai import OpenAIProvider


async def _stream(chunks):
    for chunk in chunks:
        yield chunk


def openai_chunk(content=None, finish_reason=None, tool_calls=None, index=0, usage=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = SimpleNamespace(index=index, finish_reason=finish_reason, delta=delta)
    return SimpleNamespace(choices=[choice], model="gpt-4o-2024", usage=usage)


def tool_fragment(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


def gemini_chunk(text=None, function_call=None, finish_reason=None, safety_ratings=None, index=0):
    part = SimpleNamespace(text=text, function_call=function_call)
    candidate = SimpleNamespace(
        index=index,
        finish_reason=finish_reason,
        safety_ratings=safety_ratings,
        content=SimpleNamespace(parts=[part]),
    )
    return SimpleNamespace(candidates=[candidate], prompt_feedback=None, usage_metadata=None)


@pytest.fixture
def openai_provider():
    with patch("langxlang.providers.openai.AsyncOpenAI") as mock_openai_cls:
        mock_openai_cls.return_value = MagicMock()
        yield OpenAIProvider(api_key="fake-key")


@pytest.fixture
def gemini_provider():
    with patch("langxlang.providers.gemini.genai") as mock_genai:
        mock_genai.Client.return_value = MagicMock()
        yield GeminiProvider(api_key="fake-key")


class TestOpenAIProvider:

    def test_convert_messages_text(self, openai_provider):
        converted = openai_provider._convert_messages([{"role": "user", "content": "hello"}])
        assert converted == [{"role": "user", "content": "hello"}]

    def test_convert_messages_functions_and_guidance(self, openai_provider):
        messages = [
            {"role": "user", "content": "Weather in Paris?"},
            {"role": "assistant", "content": [
                {"type": "function_call", "id": "call_1", "name": "get_weather", "arguments": {"location": "Paris"}},
            ]},
            {"role": "function", "content": [
                {"type": "function_response", "id": "call_1", "name": "get_weather", "result": '{"temp": 21}'},
            ]},
            {"role": "guidance", "content": "It is"},
        ]
        converted = openai_provider._convert_messages(messages)
        assert converted[1] == {
            "role": "assistant",
            "content": None,
            "tool_calls": [{
                "id": "call_1",
                "type": "function",
                "function": {"name": "get_weather", "arguments": '{"location": "Paris"}'},
            }],
        }
        assert converted[2] == {"role": "tool", "tool_call_id": "call_1", "content": '{"temp": 21}'}
        assert converted[3] == {"role": "assistant", "content": "It is"}

    def test_convert_messages_images(self, openai_provider):
        converted = openai_provider._convert_messages([{"role": "user", "content": [
            {"type": "text", "text": "What is this?"},
            {"type": "image", "url": "https://example.com/cat.jpg", "detail": "low"},
            {"type": "image", "data": b"hi", "mime_type": "image/png"},
        ]}])
        content = converted[0]["content"]
        assert content[1] == {"type": "image_url", "image_url": {"url": "https://example.com/cat.jpg", "detail": "low"}}
        assert content[2]["image_url"]["url"] == "data:image/png;base64,aGk="

    @pytest.mark.asyncio
    async def test_streamed_text(self, openai_provider):
        usage = SimpleNamespace(prompt_tokens=10, completion_tokens=2, total_tokens=12)
        openai_provider.client.chat.completions.create = AsyncMock(return_value=_stream([
            openai_chunk("Hel"),
            openai_chunk("lo"),
            openai_chunk(finish_reason="stop"),
            SimpleNamespace(choices=[], model="gpt-4o-2024", usage=usage),
        ]))
        chunks = []
        [response] = await openai_provider.request_chat_complete(
            "gpt-4o", [{"role": "user", "content": "hi"}], {"max_tokens": 5, "stop_sequences": ["\n"]},
            on_chunk=chunks.append,
        )

        kwargs = openai_provider.client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}
        assert kwargs["max_tokens"] == 5
        assert kwargs["stop"] == ["\n"]
        assert response["kind"] == "text"
        assert response["text"] == "Hello"
        assert response["meta"]["usage"]["total_tokens"] == 12
        assert [c["text_delta"] for c in chunks] == ["Hel", "lo", ""]
        assert chunks[0]["content"] == "Hel"
        assert chunks[-1]["done"] is True

    @pytest.mark.asyncio
    async def test_tool_call_fragments_are_joined(self, openai_provider):
        openai_provider.client.chat.completions.create = AsyncMock(return_value=_stream([
            openai_chunk(tool_calls=[tool_fragment(0, id="call_1", name="get_weather", arguments='{"loc')]),
            openai_chunk(tool_calls=[tool_fragment(0, arguments='ation": "Paris"}')]),
            openai_chunk(tool_calls=[tool_fragment(1, id="call_2", name="", arguments="")]),
            openai_chunk(tool_calls=[tool_fragment(1, name="get_time", arguments="{}")]),
            openai_chunk(finish_reason="tool_calls"),
        ]))
        functions = [{"name": "get_weather", "description": "Weather",
                      "parameters": {"type": "object", "properties": {"location": {"type": "string"}}}}]
        [response] = await openai_provider.request_chat_complete(
            "gpt-4o", [{"role": "user", "content": "hi"}], functions=functions,
        )
        kwargs = openai_provider.client.chat.completions.create.call_args.kwargs
        assert kwargs["tools"][0]["function"]["name"] == "get_weather"
        assert response["kind"] == "function"
        assert response["function_calls"] == [
            {"id": "call_1", "name": "get_weather", "arguments": {"location": "Paris"}},
            {"id": "call_2", "name": "get_time", "arguments": {}},
        ]

    @pytest.mark.asyncio
    async def test_malformed_tool_arguments(self, openai_provider):
        openai_provider.client.chat.completions.create = AsyncMock(return_value=_stream([
            openai_chunk(tool_calls=[tool_fragment(0, id="call_1", name="get_weather", arguments='{"loc')]),
            openai_chunk(finish_reason="tool_calls"),
        ]))
        with pytest.raises(ProtocolViolation):
            await openai_provider.request_chat_complete("gpt-4o", [{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_blocked_candidates_are_dropped(self, openai_provider):
        openai_provider.client.chat.completions.create = AsyncMock(return_value=_stream([
            openai_chunk("ok", index=0),
            openai_chunk(finish_reason="content_filter", index=1),
            openai_chunk(finish_reason="stop", index=0),
        ]))
        candidates = await openai_provider.request_chat_complete(
            "gpt-4o", [{"role": "user", "content": "hi"}], {"n": 2}
        )
        assert [c["text"] for c in candidates] == ["ok"]

    @pytest.mark.asyncio
    async def test_all_candidates_blocked(self, openai_provider):
        openai_provider.client.chat.completions.create = AsyncMock(return_value=_stream([
            openai_chunk(finish_reason="content_filter"),
        ]))
        with pytest.raises(SafetyError) as exc:
            await openai_provider.request_chat_complete("gpt-4o", [{"role": "user", "content": "hi"}])
        assert exc.value.safety_ratings == [{"finish_reason": "content_filter"}]

    @pytest.mark.asyncio
    async def test_no_choices(self, openai_provider):
        openai_provider.client.chat.completions.create = AsyncMock(return_value=_stream([]))
        with pytest.raises(ProviderError, match="no choices"):
            await openai_provider.request_chat_complete("gpt-4o", [{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_status_error_is_wrapped(self, openai_provider):
        response = httpx.Response(429, request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
        openai_provider.client.chat.completions.create = AsyncMock(
            side_effect=openai.APIStatusError("Too many requests", response=response, body={"error": "rate"})
        )
        with pytest.raises(ProviderError) as exc:
            await openai_provider.request_chat_complete("gpt-4o", [{"role": "user", "content": "hi"}])
        assert exc.value.status_code == 429
        assert exc.value.body == {"error": "rate"}
        assert exc.value.provider == "openai"

    @pytest.mark.asyncio
    async def test_guidance_must_be_last(self, openai_provider):
        with pytest.raises(ProtocolViolation, match="last"):
            await openai_provider.request_chat_complete("gpt-4o", [
                {"role": "guidance", "content": "Sure"},
                {"role": "user", "content": "hi"},
            ])

    @pytest.mark.asyncio
    async def test_missing_key(self):
        provider = OpenAIProvider(api_key=None)
        with pytest.raises(ConfigurationError):
            await provider.request_chat_complete("gpt-4o", [{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_count_tokens_estimate(self, openai_provider):
        assert await openai_provider.count_tokens("gpt-4o", "abcdefgh") == 2
        assert await openai_provider.count_tokens("gpt-4o", [{"role": "user", "content": "abcd"}]) == 1


class TestGeminiProvider:

    def test_merge_consecutive_roles(self):
        merged = merge_consecutive_roles([("user", [1]), ("user", [2]), ("model", [3]), ("user", [4])])
        assert merged == [("user", [1, 2]), ("model", [3]), ("user", [4])]

    @pytest.mark.asyncio
    async def test_convert_messages_roles(self, gemini_provider):
        system, contents = await gemini_provider._convert_messages("gemini-1.5-pro", [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "im helper"},
            {"role": "guidance", "content": "And"},
        ])
        assert system == "Be brief"
        assert [c.role for c in contents] == ["user", "model"]
        # assistant and guidance turns merge into one model turn
        assert [p.text for p in contents[1].parts] == ["im helper", "And"]

    @pytest.mark.asyncio
    async def test_system_folded_into_user_for_old_models(self, gemini_provider):
        system, contents = await gemini_provider._convert_messages("gemini-1.0-pro", [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "hi"},
        ])
        assert system is None
        assert len(contents) == 1
        assert contents[0].role == "user"
        assert [p.text for p in contents[0].parts] == ["Be brief", "hi"]

    @pytest.mark.asyncio
    async def test_function_turns(self, gemini_provider):
        _, contents = await gemini_provider._convert_messages("gemini-2.0-flash", [
            {"role": "user", "content": "Weather?"},
            {"role": "assistant", "content": [
                {"type": "function_call", "id": "c1", "name": "get_weather", "arguments": {"location": "Paris"}},
            ]},
            {"role": "function", "content": [
                {"type": "function_response", "id": "c1", "name": "get_weather", "result": '{"temp": 21}'},
            ]},
        ])
        assert [c.role for c in contents] == ["user", "model", "user"]
        assert contents[1].parts[0].function_call.args == {"location": "Paris"}
        fr = contents[2].parts[0].function_response
        assert fr.name == "get_weather"
        assert fr.response == {"name": "get_weather", "content": {"temp": 21}}

    @pytest.mark.asyncio
    async def test_streamed_text(self, gemini_provider):
        gemini_provider.client.aio.models.generate_content_stream = AsyncMock(return_value=_stream([
            gemini_chunk("Hi "),
            gemini_chunk("there", finish_reason="STOP"),
        ]))
        chunks = []
        [response] = await gemini_provider.request_chat_complete(
            "gemini-1.5-flash", [{"role": "user", "content": "hi"}], {"temperature": 0.2}, on_chunk=chunks.append,
        )
        config = gemini_provider.client.aio.models.generate_content_stream.call_args.kwargs["config"]
        assert config.temperature == 0.2
        assert response["kind"] == "text"
        assert response["text"] == "Hi there"
        assert [c["text_delta"] for c in chunks] == ["Hi ", "there", ""]

    @pytest.mark.asyncio
    async def test_function_call(self, gemini_provider):
        call = SimpleNamespace(id=None, name="get_weather", args={"location": "Paris"})
        gemini_provider.client.aio.models.generate_content_stream = AsyncMock(return_value=_stream([
            gemini_chunk(function_call=call, finish_reason="STOP"),
        ]))
        [response] = await gemini_provider.request_chat_complete("gemini-1.5-flash", [{"role": "user", "content": "hi"}])
        assert response["kind"] == "function"
        assert response["function_calls"] == [
            {"id": "gemini_get_weather_0", "name": "get_weather", "arguments": {"location": "Paris"}},
        ]

    @pytest.mark.asyncio
    async def test_max_tokens_is_truncated_text(self, gemini_provider):
        gemini_provider.client.aio.models.generate_content_stream = AsyncMock(return_value=_stream([
            gemini_chunk("Once upon", finish_reason="MAX_TOKENS"),
        ]))
        [response] = await gemini_provider.request_chat_complete("gemini-1.5-flash", [{"role": "user", "content": "hi"}])
        assert response["kind"] == "text"
        assert response["truncated"] is True

    @pytest.mark.asyncio
    async def test_safety_block(self, gemini_provider):
        ratings = [SimpleNamespace(category="HARM_CATEGORY_HARASSMENT", probability="HIGH", blocked=True)]
        gemini_provider.client.aio.models.generate_content_stream = AsyncMock(return_value=_stream([
            gemini_chunk(finish_reason="SAFETY", safety_ratings=ratings),
        ]))
        with pytest.raises(SafetyError) as exc:
            await gemini_provider.request_chat_complete("gemini-1.5-flash", [{"role": "user", "content": "hi"}])
        assert exc.value.safety_ratings == [
            [{"category": "HARM_CATEGORY_HARASSMENT", "probability": "HIGH", "blocked": True}],
        ]

    @pytest.mark.asyncio
    async def test_blocked_prompt(self, gemini_provider):
        feedback = SimpleNamespace(block_reason="SAFETY", safety_ratings=[])
        gemini_provider.client.aio.models.generate_content_stream = AsyncMock(return_value=_stream([
            SimpleNamespace(candidates=None, prompt_feedback=feedback, usage_metadata=None),
        ]))
        with pytest.raises(SafetyError, match="blocked the prompt"):
            await gemini_provider.request_chat_complete("gemini-1.5-flash", [{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_no_candidates(self, gemini_provider):
        gemini_provider.client.aio.models.generate_content_stream = AsyncMock(return_value=_stream([]))
        with pytest.raises(ProviderError, match="candidates"):
            await gemini_provider.request_chat_complete("gemini-1.5-flash", [{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_default_safety_settings(self, gemini_provider):
        config = gemini_provider._build_config({}, None, None)
        thresholds = {_name(s.category): _name(s.threshold) for s in config.safety_settings}
        assert thresholds["HARM_CATEGORY_HARASSMENT"] == "BLOCK_NONE"
        assert thresholds["HARM_CATEGORY_HATE_SPEECH"] == "BLOCK_ONLY_HIGH"


def _name(value):
    return getattr(value, "name", None) or str(value)
