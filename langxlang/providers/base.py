import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Callable, Hashable

from ..config import NON_GENERATION_KEYS, get_rate_limit
from ..errors import ProtocolViolation, SafetyError
from ..rate_limit import RateLimiter
from ..types import Chunk, FunctionDeclaration, Message, Part, Response
from ..utils import get_text

log = logging.getLogger(__name__)

ChunkCallback = Callable[[Chunk], Any]
TokenCounter = Callable[[str, str], int]


def estimate_tokens(model: str, text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return max(1, (len(text) + 3) // 4) if text else 0


class BaseLLMProvider(ABC):
    """
    Abstract base class for provider adapters.

    Adapters translate the shared message model to a provider's wire format,
    aggregate its stream into candidate Responses and classify finish reasons.

    Args:
        api_key: Credential; also half of the rate-limit key.
        rate_limiter: Shared cooldown gate (one per CompletionService).
        rate_limits: Cooldown in seconds per model name.
    """

    provider_name = "base"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        rate_limits: Optional[Dict[str, float]] = None,
        token_counter: Optional[TokenCounter] = None,
    ):
        self.api_key = api_key
        self.rate_limiter = rate_limiter or RateLimiter()
        self.rate_limits = rate_limits
        self.token_counter = token_counter or estimate_tokens

    @abstractmethod
    async def request_chat_complete(
        self,
        model: str,
        messages: List[Message],
        options: Optional[Dict[str, Any]] = None,
        functions: Optional[List[FunctionDeclaration]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> List[Response]:
        """
        Send a chat request and stream the answer.

        Args:
            model (str): The model identifier.
            messages (List[Message]): Conversation history.
            options (dict): Generation options (max_tokens, temperature, ...).
            functions (list): Function declarations the model may call.
            on_chunk (callable): Receives each streamed Chunk, then a final done chunk.

        Returns:
            List[Response]: Surviving candidates, in candidate order.
        """

    async def request_completion(
        self,
        model: str,
        text: str,
        options: Optional[Dict[str, Any]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> List[Response]:
        """Single-turn convenience: send `text` as the only user turn."""
        messages: List[Message] = [{"role": "user", "content": text}]
        return await self.request_chat_complete(model, messages, options, None, on_chunk)

    async def count_tokens(self, model: str, content: Any) -> int:
        """
        Count tokens in a string or a message list.
        """
        if isinstance(content, str):
            return self.token_counter(model, content)
        return sum(self.token_counter(model, get_text(msg["content"])) for msg in content)

    async def list_models(self) -> List[str]:
        return []

    # ==========================================================================
    # Shared helpers
    # ==========================================================================

    def rate_limit_key(self, model: str) -> Hashable:
        return (self.api_key, model)

    async def wait_for_rate_limit(self, model: str, options: Optional[Dict[str, Any]] = None) -> None:
        """Wait on the shared cooldown for (credential, model)."""
        interval = (options or {}).get("rate_limit")
        if interval is None:
            interval = get_rate_limit(model, self.rate_limits)
        await self.rate_limiter.wait(self.rate_limit_key(model), interval)

    @staticmethod
    def generation_params(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Generation options with unset values and non-sampling keys removed."""
        return {
            k: v for k, v in (options or {}).items()
            if v is not None and k not in NON_GENERATION_KEYS
        }

    @staticmethod
    def check_guidance(messages: List[Message]) -> Optional[str]:
        """
        Validate guidance placement and return the guidance text, if any.

        Raises:
            ProtocolViolation: More than one guidance turn, or one that is not last.
        """
        positions = [i for i, msg in enumerate(messages) if msg["role"] == "guidance"]
        if not positions:
            return None
        if len(positions) > 1:
            raise ProtocolViolation("Only one guidance turn is allowed per request")
        if positions[0] != len(messages) - 1:
            raise ProtocolViolation("The guidance turn must be the last turn")
        return get_text(messages[-1]["content"])

    @staticmethod
    def emit(on_chunk: Optional[ChunkCallback], index: int, text: str, raw: Any = None) -> None:
        if on_chunk is None or not text:
            return
        parts: List[Part] = [{"type": "text", "text": text}]
        chunk: Chunk = {
            "index": index,
            "text_delta": text,
            "content": text,
            "parts": parts,
            "done": False,
        }
        if raw is not None:
            chunk["raw"] = raw
        on_chunk(chunk)

    @staticmethod
    def emit_done(on_chunk: Optional[ChunkCallback]) -> None:
        if on_chunk is not None:
            on_chunk({"index": 0, "text_delta": "", "content": "", "parts": [], "done": True})

    def filter_candidates(self, candidates: List[Response]) -> List[Response]:
        """
        Drop safety-blocked candidates.

        Raises:
            SafetyError: If every candidate was blocked.
        """
        blocked = [c for c in candidates if c.get("kind") == "safety"]
        if not blocked:
            return candidates
        survivors = [c for c in candidates if c.get("kind") != "safety"]
        if not survivors:
            raise SafetyError(
                f"All {len(blocked)} {self.provider_name} completion candidates were blocked by the safety filter",
                safety_ratings=[c.get("safety_ratings") for c in blocked],
            )
        log.warning("Dropping %d safety-blocked candidate(s) from %s", len(blocked), self.provider_name)
        return survivors

    @staticmethod
    def normalize_usage(
        provider: str,
        *,
        input_tokens: Optional[int],
        output_tokens: Optional[int],
        total_tokens: Optional[int],
        raw: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """
        Normalize token usage information across providers.

        Args:
            provider (str): Name of the provider.
            input_tokens (int, optional): Number of prompt tokens.
            output_tokens (int, optional): Number of generated tokens.
            total_tokens (int, optional): Total token count.
            raw (dict, optional): Raw usage data from the provider response.

        Returns:
            Dict[str, Any]: Standardized usage dictionary.
        """
        # Calculate total if not provided
        if total_tokens is None and input_tokens is not None and output_tokens is not None:
            total_tokens = input_tokens + output_tokens

        return {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": total_tokens,
            "raw": {
                "provider": provider,
                **(raw or {}),
            } if raw is not None else None,
        }
