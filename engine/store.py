"""
In-memory conversation store.

Holds the state of every in-flight call, keyed by Twilio CallSid.
The store is owned by the TurnController; nothing else mutates it.

Concurrency:
- Twilio only posts the next utterance after the previous directive has
  been spoken, so turns for one call arrive sequentially. The per-call
  lock makes that single-writer assumption hold even if Twilio retries.
- Entries that never reach completion (caller hung up mid-script, or the
  turn failed) are reaped once idle for longer than ttl_seconds.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60


class ConversationPhase(str, Enum):
    """Lifecycle phase of a single call."""
    GATHERING = "GATHERING"
    FAILED_ABORT = "FAILED_ABORT"
    TERMINATED = "TERMINATED"


@dataclass
class HistoryMessage:
    """One entry of the history replayed to the model."""
    role: str  # "user" or "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationState:
    """In-memory state for a single call."""
    call_id: str
    history: List[HistoryMessage] = field(default_factory=list)
    collected_data: Dict[str, Any] = field(default_factory=dict)
    phase: ConversationPhase = ConversationPhase.GATHERING
    created_at: float = 0.0
    last_activity: float = 0.0

    def append(self, role: str, content: str) -> None:
        self.history.append(HistoryMessage(role=role, content=content))

    def merge(self, extracted: Dict[str, Any]) -> None:
        """
        Shallow-merge newly extracted fields.

        A None value never overwrites a collected field, so fields only
        grow or change and are never cleared mid-conversation.
        """
        for key, value in extracted.items():
            if value is None:
                continue
            self.collected_data[key] = value

    def truncate_history(self, length: int) -> None:
        """Drop history entries past `length` (used to undo a failed turn)."""
        del self.history[length:]

    def history_dicts(self) -> List[Dict[str, str]]:
        return [m.to_dict() for m in self.history]


class ConversationStore:
    """Keyed store of ConversationState with per-call locks and TTL expiry."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._states: Dict[str, ConversationState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def get_or_create(self, call_id: str) -> ConversationState:
        """Return the existing state for call_id, creating an empty one if absent."""
        now = self._clock()
        state = self._states.get(call_id)
        if state is None:
            state = ConversationState(call_id=call_id, created_at=now)
            self._states[call_id] = state
            logger.info(f"Conversation created: callSid={call_id}")
        state.last_activity = now
        return state

    def get(self, call_id: str) -> Optional[ConversationState]:
        return self._states.get(call_id)

    def remove(self, call_id: str) -> None:
        """Delete the entry for call_id. No-op if absent.

        The call's lock survives until the last turn holding or waiting
        on it has finished, so a waiter never races a newer arrival.
        """
        state = self._states.pop(call_id, None)
        self._discard_lock(call_id)
        if state is not None:
            logger.info(f"Conversation removed: callSid={call_id} phase={state.phase.value}")

    def lock(self, call_id: str) -> asyncio.Lock:
        """Get the lock serialising turns for call_id."""
        lock = self._locks.get(call_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[call_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, call_id: str) -> AsyncIterator[None]:
        """Hold the call's lock for one turn, waiting behind any turn in progress."""
        lock = self.lock(call_id)
        self._lock_users[call_id] = self._lock_users.get(call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[call_id] -= 1
            if not self._lock_users[call_id]:
                del self._lock_users[call_id]
            self._discard_lock(call_id)

    def in_use(self, call_id: str) -> bool:
        """Whether a turn for call_id is running or queued."""
        return self._lock_users.get(call_id, 0) > 0

    def _discard_lock(self, call_id: str) -> None:
        if call_id not in self._states and not self.in_use(call_id):
            self._locks.pop(call_id, None)

    def reap_expired(self, now: Optional[float] = None) -> List[str]:
        """
        Remove entries idle for longer than ttl_seconds.

        Entries with a turn running or queued are left alone.

        Returns:
            The call ids that were removed
        """
        if now is None:
            now = self._clock()
        cutoff = now - self.ttl_seconds
        expired: List[str] = []
        for call_id, state in list(self._states.items()):
            if state.last_activity >= cutoff:
                continue
            if self.in_use(call_id):
                continue
            expired.append(call_id)

        for call_id in expired:
            state = self._states.get(call_id)
            logger.warning(
                f"METRIC conversation_expired callSid={call_id} "
                f"phase={state.phase.value if state else 'unknown'} "
                f"fields={len(state.collected_data) if state else 0}"
            )
            self.remove(call_id)
        return expired

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._states

    def __len__(self) -> int:
        return len(self._states)


async def run_reaper(store: ConversationStore, interval_seconds: float) -> None:
    """Periodically reap expired conversations until cancelled."""
    logger.info(
        f"Conversation reaper started: ttl={store.ttl_seconds}s interval={interval_seconds}s"
    )
    while True:
        await asyncio.sleep(interval_seconds)
        removed = store.reap_expired()
        if removed:
            logger.info(f"Reaped {len(removed)} expired conversation(s)")
