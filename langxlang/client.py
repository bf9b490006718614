import copy
import logging
import time
from collections.abc import Mapping
from typing import Optional, Dict, List, Any

from .cache import CacheStore, JsonFileCacheStore, compute_cache_key, make_entry
from .config import BROWSER, GEMINI, OPENAI, get_model_family, load_api_keys
from .errors import ConfigurationError, ValidationError
from .providers.base import BaseLLMProvider, ChunkCallback
from .providers.bridge import BridgeServer
from .providers.browser import BrowserBridgeProvider
from .providers.gemini import GeminiProvider
from .providers.openai import OpenAIProvider
from .rate_limit import RateLimiter
from .types import ChatOptions, FunctionDeclaration, GenerationOptions, Message, Response

log = logging.getLogger(__name__)


def validate_functions(functions: Optional[List[FunctionDeclaration]]) -> None:
    """
    Check function declarations before anything is sent.

    Raises:
        ValidationError: If a declaration lacks a string name or description,
            or its parameters are not a mapping.
    """
    for i, decl in enumerate(functions or []):
        if not isinstance(decl, Mapping):
            raise ValidationError(f"Function declaration #{i} must be a mapping, got {type(decl).__name__}")
        if not isinstance(decl.get("name"), str) or not decl["name"]:
            raise ValidationError(f"Function declaration #{i} must have a string name")
        if not isinstance(decl.get("description"), str):
            raise ValidationError(f"Function '{decl['name']}' must have a string description")
        params = decl.get("parameters")
        if params is not None and not isinstance(params, Mapping):
            raise ValidationError(
                f"Parameters of function '{decl['name']}' must be a mapping, not {type(params).__name__}",
                hint="Describe parameters as a JSON Schema object with 'properties'.",
            )


class CompletionService:
    """
    Dispatches completion requests to provider adapters.

    Owns the response cache, the shared rate limiter, default generation
    options and the optional session log.
    """

    def __init__(
        self,
        keys: Optional[Dict[str, Optional[str]]] = None,
        *,
        generation_options: Optional[GenerationOptions] = None,
        cache: Optional[CacheStore] = None,
        rate_limits: Optional[Dict[str, float]] = None,
        providers: Optional[Dict[str, BaseLLMProvider]] = None,
        bridge: Optional[BridgeServer] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize the service.

        Args:
            keys: Credentials by provider id ('openai', 'openai_base_url',
                'gemini'). Defaults to the environment and a .env file.
            generation_options: Defaults merged under every request's options.
            cache: Response store; a JSON file in the app data dir by default.
            rate_limits: Cooldown in seconds per model name.
            providers: Adapters to register directly, by provider id.
            bridge: Browser bridge server; registers the 'browser' provider.
            rate_limiter: Shared cooldown gate handed to every adapter.
        """
        self.generation_options: GenerationOptions = dict(generation_options or {})
        self.cache = cache if cache is not None else JsonFileCacheStore()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.bridge = bridge
        self.providers: Dict[str, BaseLLMProvider] = {}
        self._session_log: Optional[List[Dict[str, Any]]] = None

        if keys is None and providers is None:
            keys = load_api_keys()
        keys = keys or {}

        shared = {"rate_limiter": self.rate_limiter, "rate_limits": rate_limits}
        # Register adapters for whichever credentials are available
        if keys.get(OPENAI):
            self.providers[OPENAI] = OpenAIProvider(
                api_key=keys[OPENAI], base_url=keys.get("openai_base_url"), **shared
            )
        if keys.get(GEMINI):
            self.providers[GEMINI] = GeminiProvider(api_key=keys[GEMINI], **shared)
        if bridge is not None:
            self.providers[BROWSER] = BrowserBridgeProvider(bridge, **shared)
        self.providers.update(providers or {})

    def get_provider(self, provider: Optional[str], model: str) -> BaseLLMProvider:
        """
        Resolve a provider id (or the model family when None) to its adapter.

        Raises:
            ConfigurationError: If the provider is unknown or not configured.
        """
        name = provider.lower() if provider else get_model_family(model)
        if name == "google":
            name = GEMINI
        if name not in self.providers:
            raise ConfigurationError(
                f"Provider '{name}' not configured or not supported.",
                hint="Set its API key in the environment or pass it in `keys`.",
            )
        return self.providers[name]

    # ==========================================================================
    # Completion requests
    # ==========================================================================

    async def request_chat_completion(
        self,
        provider: Optional[str],
        model: str,
        options: ChatOptions,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> Response:
        """
        Request a chat completion, consulting the cache first.

        Args:
            provider (str): Provider id ('openai', 'gemini', 'browser'), or None
                to infer it from the model name.
            model (str): The model identifier.
            options (dict): 'messages' (required), 'functions', 'enable_caching',
                'generation_options'.
            on_chunk (callable): Receives streamed Chunks and a final done chunk.

        Returns:
            Response: The first surviving candidate.

        Raises:
            ConfigurationError: Unknown or unconfigured provider.
            ValidationError: Empty messages or malformed function declarations.
            SafetyError: Every candidate was blocked.
            ProviderError: The provider failed.
        """
        adapter = self.get_provider(provider, model)
        messages = options.get("messages") or []
        if not messages:
            raise ValidationError("A chat completion needs at least one message")
        functions = options.get("functions") or None
        validate_functions(functions)
        enable_caching = bool(options.get("enable_caching"))
        generation_options = {**self.generation_options, **(options.get("generation_options") or {})}

        cache_key = compute_cache_key(model, messages) if enable_caching else None
        if cache_key is not None:
            try:
                entry = self.cache.get(cache_key)
            except Exception as e:
                log.warning("Failed to read response cache entry: %s", e)
                entry = None
            if entry is not None:
                log.debug("Cache hit for %s (%s)", model, cache_key)
                response = copy.deepcopy(entry["response"])
                BaseLLMProvider.emit(on_chunk, 0, response.get("text", ""))
                BaseLLMProvider.emit_done(on_chunk)
                self._record(adapter.provider_name, model, messages, functions, generation_options, response)
                return response

        candidates = await adapter.request_chat_complete(model, messages, generation_options, functions, on_chunk)
        response = candidates[0]

        if cache_key is not None and response.get("text"):
            try:
                self.cache.put(cache_key, make_entry(response))
            except Exception as e:
                log.warning("Failed to write response cache entry: %s", e)

        self._record(adapter.provider_name, model, messages, functions, generation_options, response)
        return response

    async def request_completion(
        self,
        provider: Optional[str],
        model: str,
        text: str,
        on_chunk: Optional[ChunkCallback] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Response:
        """
        Single-turn completion through the chat path.

        `options` may carry 'system' (a system prompt), 'enable_caching' and
        'generation_options'.
        """
        if not text:
            raise ValidationError("Prompt text is empty")
        options = options or {}
        messages: List[Message] = []
        if options.get("system"):
            messages.append({"role": "system", "content": options["system"]})
        messages.append({"role": "user", "content": text})
        return await self.request_chat_completion(
            provider,
            model,
            {
                "messages": messages,
                "enable_caching": options.get("enable_caching", False),
                "generation_options": options.get("generation_options") or {},
            },
            on_chunk,
        )

    # ==========================================================================
    # Session log
    # ==========================================================================

    def start_logging(self) -> None:
        self._session_log = []

    def stop_logging(self) -> List[Dict[str, Any]]:
        """Stop recording and return the recorded entries."""
        entries = self._session_log or []
        self._session_log = None
        return entries

    def _record(
        self,
        provider: str,
        model: str,
        messages: List[Message],
        functions: Optional[List[FunctionDeclaration]],
        generation_options: Dict[str, Any],
        response: Response,
    ) -> None:
        if self._session_log is None:
            return
        try:
            self._session_log.append(copy.deepcopy({
                "provider": provider,
                "model": model,
                "request": {
                    "messages": messages,
                    "functions": functions,
                    "generation_options": generation_options,
                },
                "response": {k: v for k, v in response.items() if k != "raw"},
                "timestamp": time.time(),
            }))
        except Exception as e:
            log.warning("Failed to record session log entry: %s", e)

    # ==========================================================================
    # Other
    # ==========================================================================

    async def list_models(self, provider: str) -> List[str]:
        """
        Get the list of available models for a configured provider.

        Raises:
            ConfigurationError: If the provider is not configured.
        """
        return await self.get_provider(provider, "").list_models()

    async def count_tokens(self, provider: Optional[str], model: str, content: Any) -> int:
        """Count tokens in a string or message list with the provider's counter."""
        return await self.get_provider(provider, model).count_tokens(model, content)

    async def close(self) -> None:
        """Stop the browser bridge, if one is attached."""
        if self.bridge is not None:
            await self.bridge.stop()
