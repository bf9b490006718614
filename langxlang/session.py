"""
Chat session: conversation history plus the function-call loop.

A session keeps the ordered turns of one conversation and drives it one
`send_message` at a time:

    Idle -> AwaitingResponse -> (FunctionPending -> AwaitingResponse)* -> Idle

Each model round either asks for local functions (the calls are invoked, an
assistant announcement turn and a function result turn are appended, and the
loop continues) or answers with text (appended, loop ends).

Guidance is a caller-supplied prefix of the assistant's answer. It is sent
as the last turn of every round of the call, emitted once to the chunk
callback, and merged into the final assistant turn; history never keeps a
separate guidance turn.
"""
import copy
import logging
from typing import Iterable, List, Mapping, Optional, Union

from .client import CompletionService
from .errors import ProtocolViolation
from .functions import FunctionRegistry, FunctionSpec
from .providers.base import BaseLLMProvider, ChunkCallback
from .types import GenerationOptions, Message, MessageContent, Part, Response, SessionResult
from .utils import clean_message, create_function_call, create_function_response, create_message

log = logging.getLogger(__name__)

Functions = Union[FunctionRegistry, Iterable[FunctionSpec], Mapping[str, FunctionSpec]]


class ChatSession:
    """
    A multi-turn conversation with one model.

    Args:
        service: CompletionService used for every round.
        provider: Provider id, or None to infer it from the model name.
        model: Model identifier.
        system_message: Optional system prompt, stored as the first turn.
        functions: Local functions the model may call.
        generation_options: Per-session generation options.
        enable_caching: Cache text responses keyed by the full history.
        max_rounds: Upper bound on model rounds in one send_message.
    """

    def __init__(
        self,
        service: CompletionService,
        provider: Optional[str],
        model: str,
        system_message: Optional[str] = None,
        *,
        functions: Optional[Functions] = None,
        generation_options: Optional[GenerationOptions] = None,
        enable_caching: bool = False,
        max_rounds: int = 10,
    ):
        self.service = service
        self.provider = provider
        self.model = model
        self.generation_options: GenerationOptions = dict(generation_options or {})
        self.enable_caching = enable_caching
        self.max_rounds = max_rounds

        if functions is None:
            self.functions = FunctionRegistry()
        elif isinstance(functions, FunctionRegistry):
            self.functions = functions
        else:
            self.functions = FunctionRegistry.from_functions(functions)

        self._messages: List[Message] = []
        if system_message is not None:
            self._messages.append({"role": "system", "content": clean_message(system_message)})

    @property
    def messages(self) -> List[Message]:
        """A copy of the conversation history."""
        return copy.deepcopy(self._messages)

    def set_system_message(self, system_message: str) -> None:
        """Replace the system turn (inserting one if the session has none)."""
        turn: Message = {"role": "system", "content": clean_message(system_message)}
        if self._messages and self._messages[0]["role"] == "system":
            self._messages[0] = turn
        else:
            self._messages.insert(0, turn)

    async def send_message(
        self,
        content: MessageContent,
        on_chunk: Optional[ChunkCallback] = None,
        *,
        guidance: Optional[str] = None,
    ) -> SessionResult:
        """
        Send a user turn and run rounds until the model answers with text.

        Args:
            content: Plain text or a list of parts.
            on_chunk: Receives streamed chunks of every round.
            guidance: Optional prefix for the assistant's answer.

        Returns:
            {"text", "called_functions"}: the final text (guidance included) and
            one list of invoked function names per round, the final text round
            contributing an empty list.

        Raises:
            ProtocolViolation: A function round without calls, a response of
                unexpected kind, or more than `max_rounds` rounds.
        """
        if isinstance(content, str):
            content = clean_message(content)
        self._messages.append(create_message("user", content))

        guidance_turn: Optional[Message] = None
        if guidance:
            guidance_turn = {"role": "guidance", "content": guidance}
            BaseLLMProvider.emit(on_chunk, 0, guidance)

        called_functions: List[List[str]] = []
        for _ in range(self.max_rounds):
            request_messages = list(self._messages)
            if guidance_turn is not None:
                # Call/result turns go before the guidance turn so it stays last
                request_messages.append(guidance_turn)

            response = await self.service.request_chat_completion(
                self.provider,
                self.model,
                {
                    "messages": request_messages,
                    "functions": self.functions.declarations() or None,
                    "enable_caching": self.enable_caching,
                    "generation_options": self.generation_options,
                },
                on_chunk,
            )

            kind = response.get("kind")
            if kind == "function":
                called_functions.append(await self._run_functions(response))
                continue
            if kind != "text":
                raise ProtocolViolation(f"Unexpected response kind '{kind}' from {self.model}")

            text = response.get("text") or ""
            if guidance:
                text = guidance + text
            self._messages.append({"role": "assistant", "content": text})
            called_functions.append([])
            return {"text": text, "called_functions": called_functions}

        raise ProtocolViolation(f"No text answer after {self.max_rounds} rounds of function calls")

    async def _run_functions(self, response: Response) -> List[str]:
        calls = response.get("function_calls") or []
        if not calls:
            raise ProtocolViolation("Model returned a function response without any function calls")

        announcement: List[Part] = []
        if response.get("text"):
            announcement.append({"type": "text", "text": response["text"]})
        results: List[Part] = []
        names = []
        for call in calls:
            log.info("Model called %s(%s)", call["name"], call.get("arguments"))
            result = await self.functions.invoke(call["name"], call.get("arguments"))
            announcement.append(create_function_call(call["id"], call["name"], call.get("arguments") or {}))
            results.append(create_function_response(call["id"], call["name"], result))
            names.append(call["name"])

        self._messages.append({"role": "assistant", "content": announcement})
        self._messages.append({"role": "function", "content": results})
        return names
