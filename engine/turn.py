"""
Turn controller - runs one webhook turn end-to-end.

Per turn:
1. Fetch or create the call's state (under the call's lock)
2. Append the caller's utterance, if any
3. Ask the completion service for the next reply
4. Merge extracted fields, append the assistant reply
5. Either keep gathering, or persist and end the call

Every failure is returned as a TurnResult carrying a TurnError; the
transport layer decides what to say. Nothing in here raises to the
webhook handler.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from agents.specs import IntakeScript, PATIENT_INTAKE_SCRIPT
from app.database import PersistResult

from .errors import InternalTurnError, TurnError
from .store import ConversationPhase, ConversationState, ConversationStore

if TYPE_CHECKING:
    from app.database import PatientRepository
    from app.openai_service import CompletionService

logger = logging.getLogger(__name__)


class Directive(str, Enum):
    """What the telephony transport should do after speaking."""
    GATHER = "GATHER"  # Speak, then gather the next utterance
    HANGUP = "HANGUP"  # Speak, then end the call


@dataclass
class TurnResult:
    """Result of one turn."""
    directive: Directive
    text: Optional[str] = None  # None when error is set
    error: Optional[TurnError] = None
    persist: Optional[PersistResult] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _log_turn_summary(
    call_id: str,
    directive: Directive,
    history_len: int,
    fields_collected: int,
    missing: List[str],
) -> None:
    """Single-line summary for each turn."""
    logger.info(
        "[TURN-SUMMARY] "
        f"callSid={call_id} "
        f"directive={directive.value} "
        f"history={history_len} "
        f"fields_collected={fields_collected} "
        f"missing={','.join(missing) or 'none'}"
    )


class TurnController:
    """Orchestrates turns against the store, the model and the repository."""

    def __init__(
        self,
        store: ConversationStore,
        completion_service: "CompletionService",
        patient_repository: "PatientRepository",
        script: IntakeScript = PATIENT_INTAKE_SCRIPT,
    ):
        self.store = store
        self.completion_service = completion_service
        self.patient_repository = patient_repository
        self.script = script

    async def handle_turn(self, call_id: str, speech: str, called_number: str) -> TurnResult:
        """
        Process one caller utterance.

        Args:
            call_id: Twilio Call SID
            speech: Transcribed caller speech, empty on the first turn
            called_number: The number that was called (patient's phone)

        Returns:
            TurnResult with GATHER or HANGUP directive
        """
        async with self.store.hold(call_id):
            state = self.store.get_or_create(call_id)
            if state.phase == ConversationPhase.FAILED_ABORT:
                logger.info(f"Resuming conversation after failed turn callSid={call_id}")
            state.phase = ConversationPhase.GATHERING
            history_len_before = len(state.history)

            try:
                return await self._run_turn(state, speech, called_number)
            except TurnError as e:
                return self._fail(state, history_len_before, e)
            except Exception as e:
                logger.exception(f"Unexpected error processing turn callSid={call_id}")
                return self._fail(
                    state, history_len_before, InternalTurnError(f"{type(e).__name__}: {e}")
                )

    async def _run_turn(self, state: ConversationState, speech: str, called_number: str) -> TurnResult:
        call_id = state.call_id
        utterance = (speech or "").strip()
        if utterance:
            state.append("user", utterance)

        reply = await self.completion_service.complete(
            state.history_dicts(), dict(state.collected_data), call_id=call_id
        )

        state.merge(reply.extractedData)
        state.append("assistant", reply.responseText)
        logger.debug(f"Collected data callSid={call_id}: {state.collected_data}")

        missing = self.script.get_missing_fields(state.collected_data)

        if not reply.isComplete:
            _log_turn_summary(
                call_id, Directive.GATHER, len(state.history), len(state.collected_data), missing
            )
            return TurnResult(directive=Directive.GATHER, text=reply.responseText)

        if missing:
            logger.warning(
                f"Model reported completion with fields missing callSid={call_id} missing={missing}"
            )

        persist = await self._persist(call_id, called_number, dict(state.collected_data))
        state.phase = ConversationPhase.TERMINATED
        self.store.remove(call_id)
        _log_turn_summary(
            call_id, Directive.HANGUP, len(state.history), len(state.collected_data), missing
        )
        return TurnResult(directive=Directive.HANGUP, text=reply.responseText, persist=persist)

    async def _persist(self, call_id: str, called_number: str, data: Dict[str, Any]) -> PersistResult:
        """Save the collected fields. Failures are reported, never raised."""
        try:
            return await self.patient_repository.save_patient(called_number, data)
        except Exception as e:
            logger.exception(f"Repository raised while saving callSid={call_id}")
            return PersistResult(
                ok=False, phone_number=called_number, error=f"{type(e).__name__}: {e}"
            )

    def _fail(self, state: ConversationState, history_len_before: int, error: TurnError) -> TurnResult:
        """Undo the partial turn and keep the entry so a retried webhook resumes."""
        state.truncate_history(history_len_before)
        state.phase = ConversationPhase.FAILED_ABORT
        logger.error(
            f"METRIC turn_failed kind={error.kind.value} callSid={state.call_id} error={error}"
        )
        return TurnResult(directive=Directive.HANGUP, error=error)
