import asyncio
import base64
import json
import logging
import time
from typing import Dict, Any, List, Optional, Tuple

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .base import BaseLLMProvider, ChunkCallback
from ..config import supports_system_instruction
from ..errors import ConfigurationError, ProviderError, SafetyError
from ..functions import to_gemini_declarations
from ..types import FunctionCall, FunctionDeclaration, Message, Part, Response
from ..utils import get_text, message_parts, resolve_image_to_base64

log = logging.getLogger(__name__)

DEFAULT_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_ONLY_HIGH"},
]

SAFETY_FINISH_REASONS = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "IMAGE_SAFETY"}
TEXT_FINISH_REASONS = {"STOP", "MAX_TOKENS"}

ROLE_MAP = {
    "user": "user",
    "assistant": "model",
    "guidance": "model",
    "function": "user",
}


def _enum_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "name", None) or str(value)


def merge_consecutive_roles(contents: List[Tuple[str, List[Any]]]) -> List[Tuple[str, List[Any]]]:
    """
    Merge adjacent turns that share a role by concatenating their parts.

    Gemini rejects multi-turn requests with two consecutive turns of the same role.
    """
    merged: List[Tuple[str, List[Any]]] = []
    for role, parts in contents:
        if merged and merged[-1][0] == role:
            merged[-1][1].extend(parts)
        else:
            merged.append((role, list(parts)))
    return merged


class GeminiProvider(BaseLLMProvider):
    """
    Provider for Google Gemini API (using google-genai SDK).
    """

    provider_name = "gemini"

    def __init__(self, api_key: Optional[str], **kwargs):
        super().__init__(api_key, **kwargs)
        if api_key:
            self.client = genai.Client(api_key=api_key)
        else:
            self.client = None

    async def request_chat_complete(
        self,
        model: str,
        messages: List[Message],
        options: Optional[Dict[str, Any]] = None,
        functions: Optional[List[FunctionDeclaration]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> List[Response]:
        """
        Stream a chat response from Gemini.

        Handles:
        - Role mapping (assistant/guidance -> model) and same-role merging.
        - System instruction placement (dedicated field only where supported).
        - Function call / function response parts.
        - Remote image download to inline data.
        - Safety settings and finish reason classification.

        Returns:
            List[Response]: Surviving candidates.
        """
        if not self.client:
            raise ConfigurationError("Gemini API key not set")

        self.check_guidance(messages)
        system_instruction, contents = await self._convert_messages(model, messages)
        config = self._build_config(options, system_instruction, functions)

        await self.wait_for_rate_limit(model, options)
        log.debug("[gemini] generate_content_stream model=%s contents=%s config=%s", model, contents, config)

        start = time.perf_counter()
        candidates: Dict[int, Dict[str, Any]] = {}
        prompt_feedback = None
        usage_metadata = None
        try:
            async for chunk in await self.client.aio.models.generate_content_stream(
                model=model,
                contents=contents,
                config=config,
            ):
                if getattr(chunk, "prompt_feedback", None) is not None:
                    prompt_feedback = chunk.prompt_feedback
                if getattr(chunk, "usage_metadata", None) is not None:
                    usage_metadata = chunk.usage_metadata
                self._process_chunk(chunk, candidates, on_chunk)
        except genai_errors.APIError as e:
            raise ProviderError(
                f"Gemini returned status {e.code}: {e.message}",
                status_code=e.code,
                body=e.details,
                provider="gemini",
            ) from e
        self.emit_done(on_chunk)
        latency_ms = (time.perf_counter() - start) * 1000.0

        if not candidates:
            block_reason = _enum_name(getattr(prompt_feedback, "block_reason", None))
            if block_reason:
                raise SafetyError(
                    f"Gemini blocked the prompt: {block_reason}",
                    safety_ratings=[getattr(prompt_feedback, "safety_ratings", None)],
                )
            raise ProviderError("Gemini did not return any candidates", provider="gemini")

        meta = {
            "model": model,
            "usage": self._usage(usage_metadata),
            "latency_ms": latency_ms,
        }
        results = [self._build_response(candidates[i], meta) for i in sorted(candidates)]
        log.debug("[gemini] result: %s", results)
        return self.filter_candidates(results)

    def _build_config(
        self,
        options: Optional[Dict[str, Any]],
        system_instruction: Optional[str],
        functions: Optional[List[FunctionDeclaration]],
    ) -> types.GenerateContentConfig:
        options = options or {}
        params = self.generation_params(options)
        config_kwargs: Dict[str, Any] = {
            "safety_settings": options.get("safety_settings") or DEFAULT_SAFETY_SETTINGS,
        }
        optional_params = {
            "max_output_tokens": params.get("max_tokens"),
            "temperature": params.get("temperature"),
            "top_p": params.get("top_p"),
            "top_k": params.get("top_k"),
            "stop_sequences": params.get("stop_sequences"),
            "candidate_count": params.get("n"),
            "system_instruction": system_instruction,
        }
        config_kwargs.update({k: v for k, v in optional_params.items() if v is not None})
        if functions:
            config_kwargs["tools"] = self._convert_tools(functions)
        return types.GenerateContentConfig(**config_kwargs)

    def _process_chunk(self, chunk, candidates: Dict[int, Dict[str, Any]], on_chunk: Optional[ChunkCallback]) -> None:
        for position, candidate in enumerate(chunk.candidates or []):
            index = candidate.index if candidate.index is not None else position
            entry = candidates.setdefault(
                index, {"text": "", "calls": [], "finish_reason": None, "safety_ratings": None}
            )
            if candidate.finish_reason is not None:
                entry["finish_reason"] = _enum_name(candidate.finish_reason)
            if candidate.safety_ratings:
                entry["safety_ratings"] = [
                    {"category": _enum_name(r.category), "probability": _enum_name(r.probability),
                     "blocked": getattr(r, "blocked", None)}
                    for r in candidate.safety_ratings
                ]
            content = candidate.content
            for part in (content.parts if content is not None and content.parts else []):
                if part.function_call is not None:
                    entry["calls"].append(part.function_call)
                elif part.text and not getattr(part, "thought", None):
                    entry["text"] += part.text
                    self.emit(on_chunk, index, part.text)

    def _build_response(self, entry: Dict[str, Any], meta: Dict[str, Any]) -> Response:
        finish_reason = entry["finish_reason"]
        function_calls: List[FunctionCall] = []
        for fc in entry["calls"]:
            function_calls.append({
                # Gemini doesn't always provide call IDs
                "id": fc.id or f"gemini_{fc.name}_{len(function_calls)}",
                "name": fc.name,
                "arguments": dict(fc.args or {}),
            })

        if finish_reason in SAFETY_FINISH_REASONS:
            kind = "safety"
        elif function_calls:
            kind = "function"
        elif finish_reason in TEXT_FINISH_REASONS or (finish_reason is None and entry["text"]):
            kind = "text"
        else:
            kind = "unknown"

        parts: List[Part] = []
        if entry["text"]:
            parts.append({"type": "text", "text": entry["text"]})
        for call in function_calls:
            parts.append({"type": "function_call", **call})

        return {
            "kind": kind,
            "text": entry["text"],
            "parts": parts,
            "function_calls": function_calls,
            "truncated": finish_reason == "MAX_TOKENS",
            "safety_ratings": entry["safety_ratings"],
            "provider": "gemini",
            "meta": {**meta, "finish_reason": finish_reason},
            "raw": entry,
        }

    def _usage(self, um) -> Optional[Dict[str, Any]]:
        if um is None:
            return None
        return self.normalize_usage(
            "gemini",
            input_tokens=um.prompt_token_count,
            output_tokens=um.candidates_token_count,
            total_tokens=um.total_token_count,
            raw={
                "prompt_token_count": um.prompt_token_count,
                "candidates_token_count": um.candidates_token_count,
                "total_token_count": um.total_token_count,
            },
        )

    async def _convert_part(self, part: Part) -> Optional[types.Part]:
        if part["type"] == "text":
            return types.Part.from_text(text=part["text"]) if part["text"] else None
        if part["type"] == "image":
            # Gemini takes neither remote URLs nor data URLs: send inline bytes
            b64_data, mime_type = await resolve_image_to_base64(part)
            return types.Part.from_bytes(data=base64.b64decode(b64_data), mime_type=mime_type)
        if part["type"] == "function_call":
            return types.Part(function_call=types.FunctionCall(
                id=part["id"], name=part["name"], args=part["arguments"]
            ))
        if part["type"] == "function_response":
            try:
                content = json.loads(part["result"])
            except json.JSONDecodeError:
                content = part["result"]
            return types.Part(function_response=types.FunctionResponse(
                id=part["id"], name=part["name"], response={"name": part["name"], "content": content}
            ))
        return None

    async def _convert_messages(
        self,
        model: str,
        messages: List[Message],
    ) -> Tuple[Optional[str], List[types.Content]]:
        """
        Convert messages to Gemini contents.

        Returns:
            Tuple of (system instruction or None, contents). When the model does
            not support system instructions the system turn is sent as a user
            turn and merged into the first user turn.
        """
        system_instruction = None
        use_instruction = supports_system_instruction(model)
        translated: List[Tuple[str, List[types.Part]]] = []

        for msg in messages:
            role = msg["role"]
            if role == "system" and use_instruction:
                text = get_text(msg["content"])
                system_instruction = f"{system_instruction}\n{text}" if system_instruction else text
                continue

            gemini_role = "user" if role == "system" else ROLE_MAP[role]
            parts = []
            for part in message_parts(msg["content"]):
                converted = await self._convert_part(part)
                if converted is not None:
                    parts.append(converted)
            if parts:
                translated.append((gemini_role, parts))

        contents = [
            types.Content(role=role, parts=parts)
            for role, parts in merge_consecutive_roles(translated)
        ]
        return system_instruction, contents

    @staticmethod
    def _convert_tools(functions: List[FunctionDeclaration]) -> List[types.Tool]:
        """
        Convert function declarations to Gemini tools (google-genai SDK).
        """
        function_declarations = [
            types.FunctionDeclaration(**decl) for decl in to_gemini_declarations(functions)
        ]
        return [types.Tool(function_declarations=function_declarations)]

    async def count_tokens(self, model: str, content: Any) -> int:
        """Count tokens with the Gemini count_tokens endpoint."""
        if not self.client:
            raise ConfigurationError("Gemini API key not set")
        if isinstance(content, str):
            content = [{"role": "user", "content": content}]
        _, contents = await self._convert_messages(model, content)
        resp = await self.client.aio.models.count_tokens(model=model, contents=contents)
        return resp.total_tokens or 0

    async def list_models(self) -> List[str]:
        """
        Get list of models that support generateContent.
        """
        if not self.client:
            return []

        def _list():
            names = []
            for m in self.client.models.list():
                actions = getattr(m, "supported_actions", None)
                if not actions or "generateContent" in actions:
                    names.append(m.name.replace("models/", "", 1))
            return names

        # client.models.list is synchronous and paginates lazily
        return await asyncio.to_thread(_list)
