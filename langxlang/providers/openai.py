import json
import logging
import time
from typing import Dict, Any, List, Optional

import openai
from openai import AsyncOpenAI

from .base import BaseLLMProvider, ChunkCallback
from ..errors import ConfigurationError, ProtocolViolation, ProviderError
from ..functions import to_openai_tools
from ..types import FunctionCall, FunctionDeclaration, Message, Part, Response
from ..utils import get_text, image_to_data_url, message_parts

log = logging.getLogger(__name__)

# finish_reason -> response kind
FINISH_REASONS = {
    "stop": "text",
    "length": "text",
    "tool_calls": "function",
    "function_call": "function",
    "content_filter": "safety",
}


class OpenAIProvider(BaseLLMProvider):
    """
    Provider for OpenAI-compatible chat completion APIs.
    """

    provider_name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        provider_name: str = "openai",
        **kwargs,
    ):
        super().__init__(api_key, **kwargs)
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url) if api_key else None
        self.provider_name = provider_name

    async def request_chat_complete(
        self,
        model: str,
        messages: List[Message],
        options: Optional[Dict[str, Any]] = None,
        functions: Optional[List[FunctionDeclaration]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> List[Response]:
        """
        Stream a chat completion from an OpenAI-compatible API.

        Handles:
        - Message conversion to OpenAI format (tool_calls / tool messages, images).
        - Option mapping (max_tokens, stop_sequences, temperature, top_p).
        - Per-choice aggregation of streamed text and tool-call fragments.
        - Finish reason classification and safety filtering.

        Returns:
            List[Response]: One Response per surviving choice.
        """
        if not self.client:
            raise ConfigurationError(f"{self.provider_name.title()} API key not set")

        self.check_guidance(messages)
        converted_messages = self._convert_messages(messages)

        request_kwargs: Dict[str, Any] = {
            "model": model,
            "messages": converted_messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        params = self.generation_params(options)
        optional_params = {
            "max_tokens": params.get("max_tokens"),
            "stop": params.get("stop_sequences"),
            "temperature": params.get("temperature"),
            "top_p": params.get("top_p"),
            "n": params.get("n"),
            "seed": params.get("seed"),
            "frequency_penalty": params.get("frequency_penalty"),
            "presence_penalty": params.get("presence_penalty"),
            "response_format": params.get("response_format"),
            "user": params.get("user"),
        }
        request_kwargs.update({k: v for k, v in optional_params.items() if v is not None})

        if functions:
            request_kwargs["tools"] = to_openai_tools(functions)
            request_kwargs["tool_choice"] = "auto"

        await self.wait_for_rate_limit(model, options)
        log.debug("[%s] chat.completions payload: %s", self.provider_name, request_kwargs)

        start = time.perf_counter()
        choices: Dict[int, Dict[str, Any]] = {}
        last_chunk = None
        try:
            stream = await self.client.chat.completions.create(**request_kwargs)
            async for chunk in stream:
                last_chunk = chunk
                self._process_chunk(chunk, choices, on_chunk)
        except openai.APIStatusError as e:
            raise ProviderError(
                f"{self.provider_name} returned status {e.status_code}: {e.message}",
                status_code=e.status_code,
                body=e.body,
                provider=self.provider_name,
            ) from e
        except openai.APIError as e:
            raise ProviderError(
                f"{self.provider_name} request failed: {e.message}",
                body=getattr(e, "body", None),
                provider=self.provider_name,
            ) from e
        self.emit_done(on_chunk)
        latency_ms = (time.perf_counter() - start) * 1000.0

        if not choices:
            raise ProviderError(f"{self.provider_name} returned no choices", provider=self.provider_name)

        meta = {
            "model": getattr(last_chunk, "model", None) or model,
            "usage": self._usage(last_chunk),
            "latency_ms": latency_ms,
        }
        candidates = [self._build_response(choices[i], meta) for i in sorted(choices)]
        log.debug("[%s] result: %s", self.provider_name, candidates)
        return self.filter_candidates(candidates)

    def _process_chunk(self, chunk, choices: Dict[int, Dict[str, Any]], on_chunk: Optional[ChunkCallback]) -> None:
        """
        Fold one streamed chunk into the running per-choice buffers.

        Tool-call fragments are keyed by their index: the id and name arrive on
        the first fragment only, the arguments are spread over many.
        """
        for choice in chunk.choices or []:
            index = choice.index or 0
            entry = choices.setdefault(index, {"content": "", "calls": {}, "finish_reason": None})
            if choice.finish_reason:
                entry["finish_reason"] = choice.finish_reason

            delta = choice.delta
            if delta is None:
                continue

            for call in delta.tool_calls or []:
                slot = entry["calls"].setdefault(call.index, {"id": None, "name": "", "arguments": ""})
                if call.id:
                    slot["id"] = call.id
                if call.function is not None:
                    if call.function.name:
                        slot["name"] = call.function.name
                    if call.function.arguments:
                        slot["arguments"] += call.function.arguments

            content = delta.content
            if content:
                # Handle both list and string content
                if isinstance(content, list):
                    piece = "".join(part.get("text", "") for part in content if isinstance(part, dict))
                else:
                    piece = str(content)
                entry["content"] += piece
                self.emit(on_chunk, index, piece)

    def _build_response(self, entry: Dict[str, Any], meta: Dict[str, Any]) -> Response:
        finish_reason = entry["finish_reason"]
        function_calls = self._parse_tool_calls(entry["calls"])
        kind = FINISH_REASONS.get(finish_reason, "unknown")
        if kind == "unknown" and function_calls:
            kind = "function"

        parts: List[Part] = []
        if entry["content"]:
            parts.append({"type": "text", "text": entry["content"]})
        for call in function_calls:
            parts.append({"type": "function_call", **call})

        return {
            "kind": kind,
            "text": entry["content"],
            "parts": parts,
            "function_calls": function_calls,
            "truncated": finish_reason == "length",
            "safety_ratings": {"finish_reason": finish_reason} if kind == "safety" else None,
            "provider": self.provider_name,
            "meta": {**meta, "finish_reason": finish_reason},
            "raw": entry,
        }

    def _parse_tool_calls(self, calls: Dict[int, Dict[str, Any]]) -> List[FunctionCall]:
        """
        Decode aggregated tool calls.

        Raises:
            ProtocolViolation: If the arguments are not a JSON object.
        """
        parsed: List[FunctionCall] = []
        for index in sorted(calls):
            call = calls[index]
            raw_args = call["arguments"] or "{}"
            try:
                args = json.loads(raw_args)
            except json.JSONDecodeError as e:
                raise ProtocolViolation(
                    f"{self.provider_name} returned malformed arguments for '{call['name']}': {raw_args!r}"
                ) from e
            if not isinstance(args, dict):
                raise ProtocolViolation(
                    f"{self.provider_name} returned non-object arguments for '{call['name']}': {raw_args!r}"
                )
            parsed.append({
                "id": call["id"] or f"call_{index}",
                "name": call["name"],
                "arguments": args,
            })
        return parsed

    def _usage(self, last_chunk) -> Optional[Dict[str, Any]]:
        u = getattr(last_chunk, "usage", None) if last_chunk is not None else None
        if u is None:
            return None
        return self.normalize_usage(
            self.provider_name,
            input_tokens=u.prompt_tokens,
            output_tokens=u.completion_tokens,
            total_tokens=u.total_tokens,
            raw={
                "prompt_tokens": u.prompt_tokens,
                "completion_tokens": u.completion_tokens,
                "total_tokens": u.total_tokens,
            },
        )

    def _convert_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        """
        Convert internal messages to OpenAI's expected format.

        Handles:
        - Role mapping (guidance -> assistant)
        - Function turns (one "tool" message per result)
        - Assistant function call announcements (tool_calls field)
        - Multimodal content (text + images; remote URLs are passed through)

        Args:
            messages (List[Message]): Internal message list.

        Returns:
            List[Dict]: OpenAI-compatible message list.
        """
        converted = []
        for msg in messages:
            role = msg["role"]
            parts = message_parts(msg["content"])

            # Function results: OpenAI expects each as a separate "tool" message
            if role == "function":
                for part in parts:
                    if part["type"] == "function_response":
                        converted.append({
                            "role": "tool",
                            "tool_call_id": part["id"],
                            "content": part["result"],
                        })
                continue

            if role == "guidance":
                role = "assistant"

            content = []
            tool_calls = []
            for part in parts:
                if part["type"] == "text":
                    content.append({"type": "text", "text": part["text"]})
                elif part["type"] == "image":
                    url = image_to_data_url(part) or part["url"]
                    image_url = {"url": url}
                    if part.get("detail"):
                        image_url["detail"] = part["detail"]
                    content.append({"type": "image_url", "image_url": image_url})
                elif part["type"] == "function_call":
                    tool_calls.append({
                        "id": part["id"],
                        "type": "function",
                        "function": {
                            "name": part["name"],
                            "arguments": json.dumps(part["arguments"]),
                        },
                    })

            # Text-only content is sent as a plain string
            if all(c["type"] == "text" for c in content):
                content = get_text(parts)

            if not content and not tool_calls:
                continue

            entry: Dict[str, Any] = {"role": role, "content": content or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            converted.append(entry)

        return converted

    async def list_models(self) -> List[str]:
        """
        Get list of available models from the provider API.

        Returns:
            List[str]: Model ids. Empty if the client is not configured.
        """
        if not self.client:
            return []
        models = await self.client.models.list()
        return [m.id for m in models.data]
