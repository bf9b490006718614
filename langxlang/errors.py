"""
Exception hierarchy for langxlang.

Every error raised by the library derives from `LangXLangError`, so callers
can catch the whole family at once or branch on the specific classes below.
"""
from typing import Any, Dict, List, Optional


class LangXLangError(Exception):
    """Base exception for all langxlang errors."""

    def __init__(self, message: str, *, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class ConfigurationError(LangXLangError):
    """A credential is missing or a provider id is unknown."""


class ValidationError(LangXLangError):
    """The caller passed malformed input (function schemas, empty prompts, ...)."""


class SafetyError(LangXLangError):
    """
    Every candidate returned by the provider was blocked by a safety filter.

    Attributes:
        safety_ratings: One entry per blocked candidate, in candidate order.
    """

    def __init__(
        self,
        message: str,
        *,
        safety_ratings: Optional[List[Any]] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message, hint=hint)
        self.safety_ratings = safety_ratings or []


class ProviderError(LangXLangError):
    """
    The provider failed: non-success status, malformed body or no candidates.

    Attributes:
        status_code: HTTP status code when one is known.
        body: Raw error body returned by the provider, if any.
        provider: Provider id the request was sent to.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[Any] = None,
        provider: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.body = body
        self.provider = provider

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": str(self),
            "status_code": self.status_code,
            "body": self.body,
            "provider": self.provider,
        }


class BridgeBusyError(ProviderError):
    """A browser bridge request was issued while another one is outstanding."""


class ProtocolViolation(LangXLangError):
    """The contract between orchestrator, provider and caller was broken."""
