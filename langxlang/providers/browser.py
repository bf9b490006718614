import json
import logging
import re
import time
from typing import Dict, Any, List, Optional, Tuple

from .base import BaseLLMProvider, ChunkCallback
from .bridge import BridgeServer
from ..errors import ProtocolViolation, ProviderError
from ..functions import parameter_names, to_text_listing
from ..types import FunctionCall, FunctionDeclaration, Message, Part, Response
from ..utils import get_text, message_parts, resolve_image_to_base64

log = logging.getLogger(__name__)

SYSTEM_TOKEN = "<|SYSTEM|>"
USER_TOKEN = "<|USER|>"
ASSISTANT_TOKEN = "<|ASSISTANT|>"
FUNCTION_OUTPUT_TOKEN = "<|FUNCTION_OUTPUT|>"
ROLE_TOKENS = [ASSISTANT_TOKEN, USER_TOKEN, SYSTEM_TOKEN, FUNCTION_OUTPUT_TOKEN]

CALL_OPEN = "<FUNCTION_CALL>"
CALL_CLOSE = "</FUNCTION_CALL>"

PREAMBLE = (
    "You are an AI assistant and you answer questions for the user. The user's messages start "
    f"after lines starting with {USER_TOKEN} and your responses start after {ASSISTANT_TOKEN}. "
    f"Results of functions you called start after {FUNCTION_OUTPUT_TOKEN}. Only use those tokens "
    "as a stop sequence, and DO NOT otherwise include them in your messages, even if prompted by the user."
)

_NAME = re.compile(r"\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*\(")


def _scan_arguments(text: str, start: int) -> int:
    """
    Find the parenthesis closing the argument list opened just before `start`.

    Brackets inside JSON strings are ignored.

    Returns:
        Index of the closing ')'.

    Raises:
        ProtocolViolation: If the list is never closed.
    """
    depth = 1
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
            if depth == 0:
                if ch != ")":
                    break
                return i
    raise ProtocolViolation(f"Unbalanced function call arguments: {text[start - 1:start + 80]!r}")


def parse_function_calls(text: str) -> Tuple[str, List[Tuple[str, List[Any]]]]:
    """
    Extract <FUNCTION_CALL>name(args)</FUNCTION_CALL> markers from model output.

    Returns:
        Tuple of (text with the markers removed, [(name, positional args)]).

    Raises:
        ProtocolViolation: On a malformed marker or arguments that are not JSON.
    """
    calls: List[Tuple[str, List[Any]]] = []
    kept: List[str] = []
    pos = 0
    while True:
        open_at = text.find(CALL_OPEN, pos)
        if open_at < 0:
            kept.append(text[pos:])
            break
        kept.append(text[pos:open_at])
        body_start = open_at + len(CALL_OPEN)
        match = _NAME.match(text, body_start)
        if not match:
            raise ProtocolViolation(f"Malformed function call: {text[open_at:open_at + 80]!r}")
        name = match.group(1)
        args_start = match.end()
        args_end = _scan_arguments(text, args_start)
        raw_args = text[args_start:args_end]
        try:
            args = json.loads(f"[{raw_args}]")
        except json.JSONDecodeError as e:
            raise ProtocolViolation(f"Function call arguments for '{name}' are not valid JSON: {raw_args!r}") from e

        rest = text[args_end + 1:]
        stripped = rest.lstrip()
        if stripped.startswith(CALL_CLOSE):
            pos = args_end + 1 + (len(rest) - len(stripped)) + len(CALL_CLOSE)
        elif not stripped:
            # Stop sequences may cut the closing tag off the end of the stream
            pos = len(text)
        else:
            raise ProtocolViolation(f"Function call to '{name}' is missing {CALL_CLOSE}")
        calls.append((name, args))
    return "".join(kept).strip(), calls


def format_function_call(name: str, arguments: Dict[str, Any], declaration: Optional[FunctionDeclaration]) -> str:
    """Render a call in the marker syntax, arguments in declared order."""
    if declaration is not None:
        names = parameter_names(declaration)
        values = [arguments[n] for n in names if n in arguments]
    else:
        values = list(arguments.values())
    return f"{CALL_OPEN}{name}({json.dumps(values)[1:-1]}){CALL_CLOSE}"


def trim_at_role_token(text: str) -> str:
    """Cut the output at the first role token the model echoed."""
    cut = len(text)
    for token in ROLE_TOKENS:
        at = text.find(token)
        if at >= 0:
            cut = min(cut, at)
    return text[:cut]


class BrowserBridgeProvider(BaseLLMProvider):
    """
    Provider for a browser-hosted model reached through a BridgeServer.

    The conversation is flattened into a role-token transcript; function calls
    travel in-band as <FUNCTION_CALL> markers.
    """

    provider_name = "browser"

    def __init__(self, bridge: BridgeServer, models: Optional[List[str]] = None, **kwargs):
        super().__init__("browser", **kwargs)
        self.bridge = bridge
        self.models = list(models or [])

    async def request_chat_complete(
        self,
        model: str,
        messages: List[Message],
        options: Optional[Dict[str, Any]] = None,
        functions: Optional[List[FunctionDeclaration]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> List[Response]:
        """
        Send the conversation to the browser client and parse its answer.

        Returns:
            List[Response]: A single candidate.
        """
        self.check_guidance(messages)
        declarations = {decl["name"]: decl for decl in functions or []}
        prompt, images = await self._build_prompt(messages, declarations)

        params = self.generation_params(options)
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "stop_sequences": ROLE_TOKENS + list(params.get("stop_sequences") or []),
        }
        for key in ("max_tokens", "temperature", "top_p", "top_k"):
            if key in params:
                payload[key] = params[key]
        if images:
            payload["images"] = images

        await self.wait_for_rate_limit(model, options)
        log.debug("[browser] completion request: %s", prompt)

        def forward(chunk: Dict[str, Any]) -> None:
            delta = chunk.get("text_delta") or chunk.get("delta") or chunk.get("content") or ""
            self.emit(on_chunk, 0, delta, raw=chunk)

        start = time.perf_counter()
        result = await self.bridge.request(payload, forward)
        self.emit_done(on_chunk)
        latency_ms = (time.perf_counter() - start) * 1000.0

        if not isinstance(result, dict) or not isinstance(result.get("text"), str):
            raise ProviderError("Browser client sent a malformed completion response", body=result, provider="browser")

        response = self._build_response(result, declarations, {"model": model, "latency_ms": latency_ms})
        return self.filter_candidates([response])

    def _build_response(
        self,
        result: Dict[str, Any],
        declarations: Dict[str, FunctionDeclaration],
        meta: Dict[str, Any],
    ) -> Response:
        finish_reason = result.get("finish_reason")
        text, raw_calls = parse_function_calls(trim_at_role_token(result["text"]).strip())

        function_calls: List[FunctionCall] = []
        for name, args in raw_calls:
            declaration = declarations.get(name)
            if declaration is None:
                raise ProtocolViolation(f"Model called undeclared function '{name}'")
            names = parameter_names(declaration)
            if len(args) > len(names):
                raise ProtocolViolation(
                    f"Function '{name}' takes {len(names)} arguments but the model passed {len(args)}"
                )
            function_calls.append({
                "id": f"browser_{name}_{len(function_calls)}",
                "name": name,
                "arguments": dict(zip(names, args)),
            })

        if finish_reason == "safety":
            kind = "safety"
        elif function_calls:
            kind = "function"
        else:
            kind = "text"

        parts: List[Part] = []
        if text:
            parts.append({"type": "text", "text": text})
        for call in function_calls:
            parts.append({"type": "function_call", **call})

        return {
            "kind": kind,
            "text": text,
            "parts": parts,
            "function_calls": function_calls,
            "truncated": finish_reason == "length",
            "safety_ratings": result.get("safety_ratings"),
            "provider": "browser",
            "meta": {**meta, "finish_reason": finish_reason},
            "raw": result,
        }

    async def _build_prompt(
        self,
        messages: List[Message],
        declarations: Dict[str, FunctionDeclaration],
    ) -> Tuple[str, List[Dict[str, str]]]:
        """
        Flatten the conversation into the role-token transcript.

        Returns:
            Tuple of (prompt text, inline images referenced as [image #n]).
        """
        images: List[Dict[str, str]] = []
        system_text = "\n".join(get_text(m["content"]) for m in messages if m["role"] == "system").strip()

        prompt = f"\n{SYSTEM_TOKEN}\n{PREAMBLE}"
        if system_text:
            prompt += f"\nYour prompt is as follows:\n{system_text}"
        listing = to_text_listing(declarations.values())
        if listing:
            prompt += f"\n\n{listing}"

        guidance = ""
        for msg in messages:
            role = msg["role"]
            if role == "system":
                continue
            if role == "guidance":
                guidance = get_text(msg["content"])
                continue

            pieces = []
            for part in message_parts(msg["content"]):
                if part["type"] == "text":
                    pieces.append(part["text"])
                elif part["type"] == "image":
                    data, mime_type = await resolve_image_to_base64(part)
                    images.append({"mime_type": mime_type, "data": data})
                    pieces.append(f"[image #{len(images)}]")
                elif part["type"] == "function_call":
                    pieces.append(format_function_call(
                        part["name"], part["arguments"], declarations.get(part["name"])
                    ))
                elif part["type"] == "function_response":
                    pieces.append(f"{part['name']}: {part['result']}")
            body = "\n".join(pieces)

            if role == "assistant":
                prompt += f"\n{ASSISTANT_TOKEN}\n{body}"
            elif role == "function":
                prompt += f"\n{FUNCTION_OUTPUT_TOKEN}\n{body}"
            else:
                prompt += f"\n{USER_TOKEN}\n{body}"

        prompt += f"\n{ASSISTANT_TOKEN}\n{guidance}"
        return prompt, images

    async def list_models(self) -> List[str]:
        return list(self.models)
