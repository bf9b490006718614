import base64
import json
import httpx
from pathlib import Path
from typing import Union, List, Optional, Dict, Any, Literal, Tuple

from .types import (
    Message, MessageContent, Part, TextPart, ImagePart,
    FunctionCallPart, FunctionResponsePart, Role
)

# =============================================================================
# Image Helpers
# =============================================================================

def encode_image_file(image_path: Union[str, Path]) -> Tuple[str, str]:
    """
    Encode a local image file to base64 for LLM usage.

    Reads the file from the given path, determines its MIME type based on extension,
    and returns a tuple of the base64-encoded data and the MIME type.

    Args:
        image_path (Union[str, Path]): Path to the image file.

    Returns:
        Tuple[str, str]: A tuple containing:
            - b64_data (str): The base64-encoded string of the image content.
            - mime_type (str): The MIME type (e.g., 'image/png').

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {image_path}")

    # Map file extensions to MIME types
    mime_types = {
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png": "image/png",
        ".gif": "image/gif",
        ".webp": "image/webp",
        ".bmp": "image/bmp",
    }
    mime_type = mime_types.get(path.suffix.lower(), "image/jpeg")

    with open(path, "rb") as f:
        b64_data = base64.b64encode(f.read()).decode("utf-8")

    return b64_data, mime_type


async def encode_image_url(url: str) -> Tuple[str, str]:
    """
    Fetch an image from a URL and encode it to base64.

    Downloads the image with an async HTTP client, takes the MIME type from the
    response headers, and encodes the content.

    Args:
        url (str): The publicly accessible URL of the image.

    Returns:
        Tuple[str, str]: (base64 data, MIME type from the Content-Type header).

    Raises:
        httpx.HTTPError: If the download fails (timeout, 404, etc.).
    """
    # Use a browser-like User-Agent to avoid being blocked
    headers = {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    }

    async with httpx.AsyncClient(timeout=30.0, headers=headers, follow_redirects=True) as http_client:
        response = await http_client.get(url)
        response.raise_for_status()

        content_type = response.headers.get("content-type", "image/jpeg")
        mime_type = content_type.split(";")[0].strip()

        b64_data = base64.b64encode(response.content).decode("utf-8")

    return b64_data, mime_type


def split_data_url(url: str) -> Tuple[str, str]:
    """
    Split a data URL into (base64 data, MIME type).

    Args:
        url (str): A URL of the form data:[<mediatype>][;base64],<data>

    Raises:
        ValueError: If the URL is not a data URL.
    """
    if not url.startswith("data:") or "," not in url:
        raise ValueError(f"Not a data URL: {url[:50]}")
    header, data = url.split(",", 1)
    mime_type = header[len("data:"):].split(";")[0] or "application/octet-stream"
    return data, mime_type


async def resolve_image_to_base64(image: Union[str, ImagePart]) -> Tuple[str, str]:
    """
    Resolve any image reference to inline base64 data.

    Handles remote URLs (downloaded), data URLs (split), inline base64 text and
    raw bytes (encoded).

    Args:
        image: An image part, or a bare URL / data URL string.

    Returns:
        Tuple[str, str]: A tuple containing (base64_data, mime_type).
    """
    if isinstance(image, str):
        image = {"type": "image", "url": image}

    url = image.get("url")
    if url:
        if url.startswith("data:"):
            return split_data_url(url)
        return await encode_image_url(url)

    data = image.get("data")
    mime_type = image.get("mime_type")
    if data is None or not mime_type:
        raise ValueError("Image part needs either 'url' or both 'data' and 'mime_type'")
    if isinstance(data, (bytes, bytearray)):
        data = base64.b64encode(bytes(data)).decode("utf-8")
    elif data.startswith("data:"):
        return split_data_url(data)
    return data, mime_type


def image_to_data_url(image: ImagePart) -> Optional[str]:
    """
    Express an inline image part as a data URL without any network access.

    Returns None for remote http(s) URLs.
    """
    url = image.get("url")
    if url:
        return url if url.startswith("data:") else None
    data = image.get("data")
    if isinstance(data, (bytes, bytearray)):
        data = base64.b64encode(bytes(data)).decode("utf-8")
    if isinstance(data, str) and data.startswith("data:"):
        return data
    if not image.get("mime_type"):
        raise ValueError("Missing accompanying 'mime_type' for inline image data")
    return f"data:{image['mime_type']};base64,{data}"


def create_image_content(
    source: Union[str, bytes],
    *,
    mime_type: Optional[str] = None,
    detail: Optional[Literal["auto", "low", "high"]] = None,
) -> ImagePart:
    """
    Create an image content part for multimodal messages.

    Args:
        source: Can be:
            - A local file path (e.g., "/path/to/image.png")
            - A remote URL (e.g., "https://example.com/image.jpg")
            - A data URI (e.g., "data:image/png;base64,...")
            - Raw base64 data (requires `mime_type` kwarg)
            - Raw bytes (requires `mime_type` kwarg)
        mime_type (str, optional): Required for raw base64 data and bytes.
        detail (str, optional): Detail level for OpenAI vision ('auto', 'low', 'high').

    Returns:
        ImagePart: A tagged image part.

    Raises:
        ValueError: If the source type cannot be determined or requires explicit mime_type.
    """
    part: ImagePart = {"type": "image"}

    if isinstance(source, (bytes, bytearray)):
        if not mime_type:
            raise ValueError("mime_type is required for raw image bytes")
        part["data"] = bytes(source)
        part["mime_type"] = mime_type
    # Data URI or HTTP(S) URL - keep as-is (remote URLs are fetched by providers that need it)
    elif source.startswith(("data:", "http://", "https://")):
        part["url"] = source
    elif mime_type:
        part["data"] = source
        part["mime_type"] = mime_type
    # Local file path - check if it exists and encode
    elif len(source) < 260 and Path(source).exists():
        b64_data, detected_mime = encode_image_file(source)
        part["data"] = b64_data
        part["mime_type"] = detected_mime
    else:
        raise ValueError(
            f"Cannot determine image source type for: {source[:50]}... "
            "Provide mime_type for raw base64 data."
        )

    if detail:
        part["detail"] = detail

    return part


# =============================================================================
# Message Helpers
# =============================================================================

def create_text_content(text: str) -> TextPart:
    """
    Create a simple text content part.

    Args:
        text (str): The text message content.

    Returns:
        TextPart: A dictionary {"type": "text", "text": text}.
    """
    return {"type": "text", "text": text}


def create_message(
    role: Role,
    content: Union[str, List[Union[str, Part]]],
) -> Message:
    """
    Create a Message.

    Strings inside a content list are normalized to text parts.

    Args:
        role (str): The role of the turn ('system', 'user', 'assistant', 'function', 'guidance').
        content (Union[str, List]): The content of the message.

    Returns:
        Message: A dictionary matching the Message type definition.
    """
    if isinstance(content, str):
        return {"role": role, "content": content}

    normalized: List[Part] = []
    for item in content:
        if isinstance(item, str):
            normalized.append(create_text_content(item))
        else:
            normalized.append(item)

    return {"role": role, "content": normalized}


def clean_message(text: str) -> str:
    """Normalize Windows line endings."""
    return text.replace("\r\n", "\n")


def message_parts(content: MessageContent) -> List[Part]:
    """
    Return turn content as a list of parts.

    Plain string content becomes a single text part; empty strings become no parts.
    """
    if isinstance(content, str):
        return [create_text_content(content)] if content else []
    return list(content)


def get_text(content: MessageContent) -> str:
    """Concatenate the text parts of some turn content."""
    if isinstance(content, str):
        return content
    return "".join(part["text"] for part in content if part.get("type") == "text")


# =============================================================================
# Function Calling Helpers
# =============================================================================

def create_function_call(call_id: str, name: str, arguments: Dict[str, Any]) -> FunctionCallPart:
    """
    Create a function call part, announcing a call the model requested.

    Args:
        call_id (str): Provider call id (synthesized when the provider has none).
        name (str): Function name.
        arguments (Dict): Arguments by name.
    """
    return {
        "type": "function_call",
        "id": call_id,
        "name": name,
        "arguments": dict(arguments),
    }


def create_function_response(call_id: str, name: str, result: Any) -> FunctionResponsePart:
    """
    Create a function response part carrying a function's result.

    Non-string results are JSON-encoded.

    Args:
        call_id (str): The id of the call this result answers.
        name (str): Function name.
        result: The function's return value.
    """
    if not isinstance(result, str):
        result = json.dumps(result, default=str)
    return {
        "type": "function_response",
        "id": call_id,
        "name": name,
        "result": result,
    }
