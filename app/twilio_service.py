"""
Twilio Service - outbound calls and TwiML directives.

This service:
1. Places outbound intake calls via the Twilio REST API
2. Renders TurnResults as TwiML (gather / hangup / apology)

Python 3.9 compatible - uses typing.Dict, typing.Optional
"""

import logging
import os
from typing import Dict, Optional

from fastapi.concurrency import run_in_threadpool
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import VoiceResponse

from engine.errors import TurnErrorKind
from engine.turn import Directive, TurnResult

logger = logging.getLogger(__name__)

VOICE_WEBHOOK_PATH = "/voice"

GENERIC_APOLOGY = "I apologize, but I encountered an error. Please try again later."

# Spoken apology per error kind; anything not listed gets GENERIC_APOLOGY
APOLOGY_BY_KIND: Dict[TurnErrorKind, str] = {
    TurnErrorKind.UPSTREAM: (
        "I'm sorry, our system is not responding right now. Please try again later."
    ),
    TurnErrorKind.PARSE: GENERIC_APOLOGY,
    TurnErrorKind.VALIDATION: GENERIC_APOLOGY,
    TurnErrorKind.INTERNAL: GENERIC_APOLOGY,
}


def apology_for(kind: Optional[TurnErrorKind]) -> str:
    if kind is None:
        return GENERIC_APOLOGY
    return APOLOGY_BY_KIND.get(kind, GENERIC_APOLOGY)


def gather_twiml(text: str, action: str = VOICE_WEBHOOK_PATH) -> str:
    """Speak text, then gather speech and post it back to action."""
    response = VoiceResponse()
    gather = response.gather(
        input="speech",
        speech_timeout="auto",
        action=action,
        method="POST",
    )
    gather.say(text)
    return str(response)


def hangup_twiml(text: str) -> str:
    """Speak text, then end the call."""
    response = VoiceResponse()
    response.say(text)
    response.hangup()
    return str(response)


def render_turn(result: TurnResult) -> str:
    """Render a TurnResult as TwiML."""
    if result.error is not None:
        return hangup_twiml(apology_for(result.error.kind))
    if result.directive == Directive.GATHER:
        return gather_twiml(result.text or "")
    return hangup_twiml(result.text or "")


def build_webhook_url(callback_base_url: str) -> str:
    """callback_base_url + /voice, without a doubled slash."""
    return f"{callback_base_url.rstrip('/')}{VOICE_WEBHOOK_PATH}"


class TwilioService:
    """Service for placing Twilio outbound calls."""

    def __init__(self):
        """Initialize Twilio client.

        Does NOT crash if Twilio not configured - allows graceful degradation.
        /initiate-call will return 500 if Twilio not configured.
        """
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN")
        self.phone_number = os.getenv("TWILIO_PHONE_NUMBER")

        self.client: Optional[TwilioClient] = None

        if self.account_sid and self.auth_token and self.phone_number:
            self.client = TwilioClient(self.account_sid, self.auth_token)
            logger.info(f"TwilioService configured with phone: {self.phone_number}")
        else:
            logger.warning("TwilioService: Twilio credentials not configured - calls will fail")

    @property
    def is_configured(self) -> bool:
        """Check if Twilio is properly configured."""
        return self.client is not None

    async def start_call(self, phone_number: str, callback_base_url: str) -> str:
        """Start an outbound intake call via Twilio.

        Args:
            phone_number: Number to call
            callback_base_url: Public base URL of this service

        Returns:
            Twilio Call SID

        Raises:
            RuntimeError: If Twilio not configured
            TwilioRestException: If Twilio API call fails
        """
        if not self.is_configured:
            raise RuntimeError("Twilio not configured")

        webhook_url = build_webhook_url(callback_base_url)
        logger.info(f"Attempting to call {phone_number} using webhook URL {webhook_url}")

        # The REST client is blocking
        call = await run_in_threadpool(
            self.client.calls.create,
            url=webhook_url,
            to=phone_number,
            from_=self.phone_number,
        )

        logger.info(f"Call initiated successfully. Call SID: {call.sid}")
        return call.sid


# Singleton instance (created lazily)
_twilio_service: Optional[TwilioService] = None


def get_twilio_service() -> TwilioService:
    """Get or create the TwilioService singleton."""
    global _twilio_service
    if _twilio_service is None:
        _twilio_service = TwilioService()
    return _twilio_service
