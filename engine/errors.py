"""
Tagged errors for turn processing.

Every failure inside a turn is surfaced as a TurnError carrying a kind,
so the transport layer can choose what to say without inspecting
exception types from the OpenAI SDK or json.
"""
from enum import Enum
from typing import Optional


class TurnErrorKind(str, Enum):
    """Why a turn failed."""
    PARSE = "PARSE"  # Model output was empty or not JSON
    VALIDATION = "VALIDATION"  # JSON did not match the reply contract
    UPSTREAM = "UPSTREAM"  # Completion service unreachable, timed out, rate limited
    INTERNAL = "INTERNAL"  # Anything else


class TurnError(Exception):
    """Base class for turn-processing failures."""

    kind: TurnErrorKind = TurnErrorKind.INTERNAL

    def __init__(self, message: str, raw_content: Optional[str] = None):
        super().__init__(message)
        self.raw_content = raw_content


class CompletionParseError(TurnError):
    """Model returned empty content or content that is not a JSON object."""
    kind = TurnErrorKind.PARSE


class CompletionValidationError(TurnError):
    """Model returned JSON that does not satisfy the reply contract."""
    kind = TurnErrorKind.VALIDATION


class CompletionUpstreamError(TurnError):
    """The completion service call itself failed."""
    kind = TurnErrorKind.UPSTREAM


class InternalTurnError(TurnError):
    """Wraps an unexpected exception raised while processing a turn."""
    kind = TurnErrorKind.INTERNAL
