import asyncio

import aiohttp
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

from langxlang.errors import BridgeBusyError, ProtocolViolation, ProviderError
from langxlang.providers.bridge import BridgeServer
from langxlang.providers.browser import (
    ASSISTANT_TOKEN,
    FUNCTION_OUTPUT_TOKEN,
    ROLE_TOKENS,
    SYSTEM_TOKEN,
    USER_TOKEN,
    BrowserBridgeProvider,
    format_function_call,
    parse_function_calls,
    trim_at_role_token,
)

WEATHER_DECL = {
    "name": "get_weather",
    "description": "Current weather for a city",
    "parameters": {
        "type": "object",
        "properties": {"location": {"type": "string"}, "unit": {"type": "string"}},
        "required": ["location"],
    },
}


class TestFunctionCallMarkers:

    def test_parse_single_call(self):
        text, calls = parse_function_calls(
            'Let me check.\n<FUNCTION_CALL>get_weather("Paris (FR)", "celsius")</FUNCTION_CALL>'
        )
        assert text == "Let me check."
        assert calls == [("get_weather", ["Paris (FR)", "celsius"])]

    def test_parse_nested_and_escaped_arguments(self):
        _, calls = parse_function_calls(
            '<FUNCTION_CALL>save({"tags": [1, 2], "note": "a \\" ) quote"}, [])</FUNCTION_CALL>'
        )
        assert calls == [("save", [{"tags": [1, 2], "note": 'a " ) quote'}, []])]

    def test_parse_several_calls_and_no_arguments(self):
        _, calls = parse_function_calls(
            "<FUNCTION_CALL>now()</FUNCTION_CALL>\n<FUNCTION_CALL>get_weather(\"Oslo\")</FUNCTION_CALL>"
        )
        assert calls == [("now", []), ("get_weather", ["Oslo"])]

    def test_closing_tag_cut_by_stop_sequence(self):
        _, calls = parse_function_calls('<FUNCTION_CALL>get_weather("Oslo")')
        assert calls == [("get_weather", ["Oslo"])]

    @pytest.mark.parametrize("text", [
        '<FUNCTION_CALL>get_weather("Paris"',
        "<FUNCTION_CALL>get_weather(Paris)</FUNCTION_CALL>",
        "<FUNCTION_CALL>123()</FUNCTION_CALL>",
        '<FUNCTION_CALL>get_weather("Paris"] </FUNCTION_CALL>',
        '<FUNCTION_CALL>get_weather("Paris") trailing text',
    ])
    def test_malformed_markers(self, text):
        with pytest.raises(ProtocolViolation):
            parse_function_calls(text)

    def test_plain_text_is_untouched(self):
        assert parse_function_calls("Just an answer.") == ("Just an answer.", [])

    def test_format_uses_declared_order(self):
        marker = format_function_call("get_weather", {"unit": "celsius", "location": "Paris"}, WEATHER_DECL)
        assert marker == '<FUNCTION_CALL>get_weather("Paris", "celsius")</FUNCTION_CALL>'
        assert parse_function_calls(marker)[1] == [("get_weather", ["Paris", "celsius"])]

    def test_trim_at_role_token(self):
        assert trim_at_role_token(f"Hello{USER_TOKEN}\nignore me") == "Hello"
        assert trim_at_role_token("Hello") == "Hello"


def scripted_bridge(text, deltas=()):
    bridge = MagicMock()

    async def request(payload, on_chunk):
        for delta in deltas:
            on_chunk({"text_delta": delta})
        return {"text": text}

    bridge.request = AsyncMock(side_effect=request)
    return bridge


class TestBrowserBridgeProvider:

    @pytest.mark.asyncio
    async def test_transcript(self):
        bridge = scripted_bridge("Blue.")
        provider = BrowserBridgeProvider(bridge)
        await provider.request_chat_complete("browser-model", [
            {"role": "system", "content": "Talk like a pirate"},
            {"role": "user", "content": "Why is the sky blue?"},
            {"role": "assistant", "content": [
                {"type": "function_call", "id": "c1", "name": "get_weather", "arguments": {"location": "Paris"}},
            ]},
            {"role": "function", "content": [
                {"type": "function_response", "id": "c1", "name": "get_weather", "result": '{"sky": "blue"}'},
            ]},
            {"role": "guidance", "content": "Arr,"},
        ], {"max_tokens": 50}, functions=[WEATHER_DECL])

        payload = bridge.request.call_args.args[0]
        prompt = payload["prompt"]
        assert payload["model"] == "browser-model"
        assert payload["max_tokens"] == 50
        assert set(ROLE_TOKENS) <= set(payload["stop_sequences"])
        assert prompt.startswith(f"\n{SYSTEM_TOKEN}\n")
        assert prompt.index("Talk like a pirate") < prompt.index(f"\n{USER_TOKEN}\nWhy is the sky blue?")
        assert "- get_weather(location: string, unit?: string)" in prompt
        assert '<FUNCTION_CALL>get_weather("Paris")</FUNCTION_CALL>' in prompt
        assert f'{FUNCTION_OUTPUT_TOKEN}\nget_weather: {{"sky": "blue"}}' in prompt
        assert prompt.endswith(f"{ASSISTANT_TOKEN}\nArr,")

    @pytest.mark.asyncio
    async def test_streamed_text_is_trimmed(self):
        bridge = scripted_bridge(f"Hello there{USER_TOKEN}\nmore", deltas=["Hello", " there"])
        provider = BrowserBridgeProvider(bridge)
        chunks = []
        [response] = await provider.request_chat_complete(
            "browser-model", [{"role": "user", "content": "hi"}], on_chunk=chunks.append
        )
        assert response["kind"] == "text"
        assert response["text"] == "Hello there"
        assert [c["text_delta"] for c in chunks] == ["Hello", " there", ""]
        assert chunks[-1]["done"] is True

    @pytest.mark.asyncio
    async def test_function_call_arguments_mapped_by_position(self):
        bridge = scripted_bridge('<FUNCTION_CALL>get_weather("Paris")</FUNCTION_CALL>')
        provider = BrowserBridgeProvider(bridge)
        [response] = await provider.request_chat_complete(
            "browser-model", [{"role": "user", "content": "Weather?"}], functions=[WEATHER_DECL]
        )
        assert response["kind"] == "function"
        assert response["function_calls"] == [
            {"id": "browser_get_weather_0", "name": "get_weather", "arguments": {"location": "Paris"}},
        ]

    @pytest.mark.asyncio
    async def test_too_many_arguments(self):
        bridge = scripted_bridge('<FUNCTION_CALL>get_weather("Paris", "celsius", 3)</FUNCTION_CALL>')
        provider = BrowserBridgeProvider(bridge)
        with pytest.raises(ProtocolViolation, match="takes 2 arguments"):
            await provider.request_chat_complete(
                "browser-model", [{"role": "user", "content": "Weather?"}], functions=[WEATHER_DECL]
            )

    @pytest.mark.asyncio
    async def test_inline_images(self):
        bridge = scripted_bridge("A cat.")
        provider = BrowserBridgeProvider(bridge)
        await provider.request_chat_complete("browser-model", [{"role": "user", "content": [
            {"type": "text", "text": "What is this?"},
            {"type": "image", "data": b"hi", "mime_type": "image/png"},
        ]}])
        payload = bridge.request.call_args.args[0]
        assert payload["images"] == [{"mime_type": "image/png", "data": "aGk="}]
        assert "[image #1]" in payload["prompt"]

    @pytest.mark.asyncio
    async def test_list_models(self):
        provider = BrowserBridgeProvider(MagicMock(), models=["local-1"])
        assert await provider.list_models() == ["local-1"]


@pytest_asyncio.fixture
async def bridge():
    server = BridgeServer(port=0)
    await server.start()
    yield server
    await server.stop()


async def _connect(http, server):
    ws = await http.ws_connect(f"http://127.0.0.1:{server.port}/")
    welcome = await ws.receive_json()
    assert welcome["type"] == "success"
    await server.wait_for_client(timeout=1)
    return ws


class TestBridgeServer:

    @pytest.mark.asyncio
    async def test_request_round_trip(self, bridge):
        async with aiohttp.ClientSession() as http:
            ws = await _connect(http, bridge)

            async def browser():
                request = await ws.receive_json()
                assert request["type"] == "completionRequest"
                assert request["payload"]["prompt"] == "hi"
                await ws.send_json({"type": "completionChunk", "payload": {"text_delta": "Hel"}})
                await ws.send_json({"type": "completionResponse", "payload": {"text": "Hello"}})

            task = asyncio.create_task(browser())
            chunks = []
            result = await bridge.request({"prompt": "hi"}, chunks.append)
            await task
            await ws.close()

        assert result == {"text": "Hello"}
        assert chunks == [{"text_delta": "Hel"}]
        assert not bridge.busy

    @pytest.mark.asyncio
    async def test_second_request_is_rejected(self, bridge):
        async with aiohttp.ClientSession() as http:
            ws = await _connect(http, bridge)
            first = asyncio.create_task(bridge.request({"prompt": "one"}))
            await ws.receive_json()

            with pytest.raises(BridgeBusyError):
                await bridge.request({"prompt": "two"})

            await ws.send_json({"type": "completionResponse", "payload": {"text": "done"}})
            assert await first == {"text": "done"}
            await ws.close()

    @pytest.mark.asyncio
    async def test_client_error(self, bridge):
        async with aiohttp.ClientSession() as http:
            ws = await _connect(http, bridge)
            pending = asyncio.create_task(bridge.request({"prompt": "x"}))
            await ws.receive_json()
            await ws.send_json({"type": "error", "payload": {"message": "model not loaded"}})
            with pytest.raises(ProviderError, match="model not loaded"):
                await pending
            await ws.close()

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_request(self, bridge):
        async with aiohttp.ClientSession() as http:
            ws = await _connect(http, bridge)
            pending = asyncio.create_task(bridge.request({"prompt": "x"}))
            await ws.receive_json()
            await ws.close()
            with pytest.raises(ProviderError, match="disconnected"):
                await pending

    @pytest.mark.asyncio
    async def test_second_client_is_refused(self, bridge):
        async with aiohttp.ClientSession() as http:
            first = await _connect(http, bridge)
            second = await http.ws_connect(f"http://127.0.0.1:{bridge.port}/")
            message = await second.receive_json()
            assert message["type"] == "error"
            assert bridge.connected
            await second.close()
            await first.close()

    @pytest.mark.asyncio
    async def test_request_without_client(self, bridge):
        with pytest.raises(ProviderError, match="No browser client"):
            await bridge.request({"prompt": "x"})

    @pytest.mark.asyncio
    async def test_chunk_callback_error_keeps_client(self, bridge):
        def broken(chunk):
            raise ValueError("callback bug")

        async with aiohttp.ClientSession() as http:
            ws = await _connect(http, bridge)
            pending = asyncio.create_task(bridge.request({"prompt": "x"}, broken))
            await ws.receive_json()
            await ws.send_json({"type": "completionChunk", "payload": {"text_delta": "Hel"}})
            with pytest.raises(ValueError, match="callback bug"):
                await pending
            assert bridge.connected

            follow_up = asyncio.create_task(bridge.request({"prompt": "y"}))
            request = await ws.receive_json()
            assert request["payload"]["prompt"] == "y"
            await ws.send_json({"type": "completionResponse", "payload": {"text": "again"}})
            assert await follow_up == {"text": "again"}
            await ws.close()


def test_bridge_built_outside_event_loop():
    server = BridgeServer(port=0)

    async def run():
        await server.start()
        try:
            with pytest.raises(ProviderError, match="No browser client"):
                await server.wait_for_client(timeout=0.01)
        finally:
            await server.stop()

    asyncio.run(run())
