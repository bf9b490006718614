import logging

from .client import CompletionService
from .session import ChatSession
from .functions import Arg, FunctionRegistry, FunctionSpec
from .cache import JsonFileCacheStore, MemoryCacheStore, compute_cache_key
from .rate_limit import RateLimiter
from .providers.bridge import BridgeServer
from .errors import (
    LangXLangError, ConfigurationError, ValidationError, SafetyError,
    ProviderError, BridgeBusyError, ProtocolViolation,
)
from .types import Message, Part, Response, Chunk, FunctionDeclaration, Provider
from .printer import RichPrinter, RichStreamPrinter
from .utils import create_message, create_text_content, create_image_content

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "CompletionService",
    "ChatSession",
    "Arg",
    "FunctionRegistry",
    "FunctionSpec",
    "JsonFileCacheStore",
    "MemoryCacheStore",
    "compute_cache_key",
    "RateLimiter",
    "BridgeServer",
    "LangXLangError",
    "ConfigurationError",
    "ValidationError",
    "SafetyError",
    "ProviderError",
    "BridgeBusyError",
    "ProtocolViolation",
    "Message",
    "Part",
    "Response",
    "Chunk",
    "FunctionDeclaration",
    "Provider",
    "RichPrinter",
    "RichStreamPrinter",
    "create_message",
    "create_text_content",
    "create_image_content",
]
