from typing import Literal, List, Dict, Any, Union, TypedDict, Optional

# =============================================================================
# Type Definitions
# =============================================================================

# Supported LLM providers
Provider = Literal["openai", "gemini", "browser"]

# Conversation roles. "guidance" is a transient assistant prefix that steers
# the continuation and is removed from history once the round completes.
Role = Literal["system", "user", "assistant", "function", "guidance"]

ResponseKind = Literal["text", "function", "safety", "unknown"]


# =============================================================================
# Content Parts (tagged by "type")
# =============================================================================

class TextPart(TypedDict):
    """
    Plain text content part.
    """
    type: Literal["text"]
    text: str


class ImagePart(TypedDict, total=False):
    """
    Image content part.

    Exactly one source is set:
    - url: a remote http(s) URL or a data URL
    - data + mime_type: inline base64 text, or raw bytes
    """
    type: Literal["image"]
    url: str
    data: Union[str, bytes]
    mime_type: str
    detail: Literal["auto", "low", "high"]  # OpenAI-specific


class FunctionCallPart(TypedDict):
    """
    A model's request to run a local function.
    """
    type: Literal["function_call"]
    id: str
    name: str
    arguments: Dict[str, Any]


class FunctionResponsePart(TypedDict):
    """
    The JSON-encoded result of a local function, sent back to the model.
    """
    type: Literal["function_response"]
    id: str
    name: str
    result: str


Part = Union[TextPart, ImagePart, FunctionCallPart, FunctionResponsePart]
MessageContent = Union[str, List[Part]]


# =============================================================================
# Function Calling Type Definitions
# =============================================================================

class FunctionParameters(TypedDict, total=False):
    """
    JSON Schema for function parameters.
    """
    type: Literal["object"]
    properties: Dict[str, Any]
    required: List[str]


class FunctionDeclaration(TypedDict, total=False):
    """
    Provider-neutral function declaration (OpenAI "function" shape).
    """
    name: str
    description: str
    parameters: FunctionParameters


class FunctionCall(TypedDict):
    """
    Function call parsed out of a provider response.
    """
    id: str
    name: str
    arguments: Dict[str, Any]


# =============================================================================
# Messages, Responses and Stream Chunks
# =============================================================================

class Message(TypedDict):
    """
    One conversation turn.

    Roles:
    - "system": System prompt / instructions
    - "user": User message
    - "assistant": Model response (text or function call announcements)
    - "function": Function results, following the announcing assistant turn
    - "guidance": Transient assistant prefix, always the last turn
    """
    role: Role
    content: MessageContent


class GenerationOptions(TypedDict, total=False):
    max_tokens: int
    temperature: float
    top_p: float
    top_k: int
    stop_sequences: List[str]
    rate_limit: float
    safety_settings: List[Dict[str, str]]


class Response(TypedDict, total=False):
    """
    Normalized completion candidate.
    """
    kind: ResponseKind
    text: str
    parts: List[Part]
    function_calls: List[FunctionCall]
    truncated: bool
    safety_ratings: Any
    provider: str
    meta: Dict[str, Any]
    raw: Any


class Chunk(TypedDict, total=False):
    """
    Streaming event handed to chunk callbacks.

    `content` mirrors `text_delta`. The final event of every request has
    done=True and empty text.
    """
    index: int
    text_delta: str
    content: str
    parts: List[Part]
    done: bool
    raw: Any


class CacheEntry(TypedDict):
    response: Response
    obtained_at: float


class ChatOptions(TypedDict, total=False):
    """
    Options accepted by CompletionService.request_chat_completion.
    """
    messages: List[Message]
    functions: Optional[List[FunctionDeclaration]]
    enable_caching: bool
    generation_options: GenerationOptions


class SessionResult(TypedDict):
    text: str
    called_functions: List[List[str]]
