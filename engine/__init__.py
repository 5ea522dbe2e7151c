"""
Conversation engine - store and turn controller.
"""
from .errors import (
    TurnErrorKind,
    TurnError,
    CompletionParseError,
    CompletionValidationError,
    CompletionUpstreamError,
    InternalTurnError,
)
from .store import (
    ConversationPhase,
    ConversationState,
    ConversationStore,
    HistoryMessage,
    run_reaper,
)
from .turn import (
    Directive,
    TurnController,
    TurnResult,
)

__all__ = [
    "TurnErrorKind",
    "TurnError",
    "CompletionParseError",
    "CompletionValidationError",
    "CompletionUpstreamError",
    "InternalTurnError",
    "ConversationPhase",
    "ConversationState",
    "ConversationStore",
    "HistoryMessage",
    "run_reaper",
    "Directive",
    "TurnController",
    "TurnResult",
]
