from .base import BaseLLMProvider
from .openai import OpenAIProvider
from .gemini import GeminiProvider
from .bridge import BridgeServer
from .browser import BrowserBridgeProvider

__all__ = ["BaseLLMProvider", "OpenAIProvider", "GeminiProvider", "BridgeServer", "BrowserBridgeProvider"]
