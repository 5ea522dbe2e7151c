"""
Completion service for the intake conversation.

Calls an OpenAI-compatible chat completions API (OpenRouter by default)
with the rendered intake script plus the call history, and turns the
reply into a validated CompletionReply.

ERROR CONTRACT:
- complete() returns a CompletionReply or raises a TurnError subclass
- CompletionUpstreamError: API unreachable, timed out, rate limited, non-2xx
- CompletionParseError: empty content or no JSON object in the content
- CompletionValidationError: JSON present but missing/mistyped keys
- Timeout and retry budget are handled by the OpenAI client itself

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from agents.specs import IntakeScript, PATIENT_INTAKE_SCRIPT
from engine.errors import (
    CompletionParseError,
    CompletionUpstreamError,
    CompletionValidationError,
)

from .models import CompletionReply
from .prompts import build_completion_messages

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "google/gemini-flash-1.5"

# Maximum chars to log from model output on error
MAX_ERROR_LOG_CHARS = 2000

REPLY_KEYS = {"responseText", "extractedData", "isComplete"}


def _truncate(content: str) -> str:
    return content[:MAX_ERROR_LOG_CHARS] if len(content) > MAX_ERROR_LOG_CHARS else content


def extract_json_object(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse a JSON object from model output.

    Tries the raw content first, then a markdown code block, then the
    span between the first "{" and the last "}".
    Returns None when no JSON object can be recovered.
    """
    if not content or not content.strip():
        return None

    candidates: List[str] = [content.strip()]
    for pattern in (r'```json\s*(\{.*?\})\s*```', r'```\s*(\{.*?\})\s*```'):
        candidates.extend(re.findall(pattern, content, re.DOTALL))

    first_brace = content.find('{')
    last_brace = content.rfind('}')
    if first_brace != -1 and last_brace > first_brace:
        candidates.append(content[first_brace:last_brace + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_completion_reply(content: Optional[str], call_id: str = "unknown") -> CompletionReply:
    """
    Turn raw model output into a CompletionReply.

    Raises:
        CompletionParseError: content empty or not a JSON object
        CompletionValidationError: JSON does not match the reply contract
    """
    data = extract_json_object(content)
    if data is None:
        logger.warning(
            f"METRIC model_parse_failed callSid={call_id} "
            f"raw={_truncate(content or '')}"
        )
        raise CompletionParseError("Model output is not a JSON object", raw_content=content)

    extra_keys = set(data.keys()) - REPLY_KEYS
    if extra_keys:
        logger.debug(f"Ignoring unknown reply keys {sorted(extra_keys)} callSid={call_id}")

    try:
        return CompletionReply.model_validate(data)
    except ValidationError as e:
        logger.warning(
            f"METRIC model_reply_invalid callSid={call_id} "
            f"errors={e.error_count()} raw={_truncate(json.dumps(data, default=str))}"
        )
        raise CompletionValidationError(
            f"Model reply does not match contract: {e.errors()[0]['msg'] if e.errors() else e}",
            raw_content=content,
        ) from e


class CompletionService:
    """Service for asking the model what to say next on a call."""

    def __init__(self, script: IntakeScript = PATIENT_INTAKE_SCRIPT):
        api_key = os.getenv("OPENROUTER_API_KEY")
        if not api_key:
            raise RuntimeError("OPENROUTER_API_KEY is required")

        self.script = script
        self.model = os.getenv("OPENROUTER_MODEL", DEFAULT_MODEL)
        self.timeout = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "20"))
        self.max_retries = int(os.getenv("COMPLETION_MAX_RETRIES", "2"))

        # Attribution headers are optional on OpenRouter
        default_headers: Dict[str, str] = {}
        app_url = os.getenv("YOUR_APP_URL")
        app_name = os.getenv("YOUR_APP_NAME")
        if app_url:
            default_headers["HTTP-Referer"] = app_url
        if app_name:
            default_headers["X-Title"] = app_name

        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=os.getenv("OPENROUTER_BASE_URL", DEFAULT_BASE_URL),
            default_headers=default_headers or None,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        logger.info(
            f"Completion service configured with model: {self.model} "
            f"(timeout={self.timeout}s, max_retries={self.max_retries})"
        )

    async def complete(
        self,
        history: List[Dict[str, str]],
        collected_data: Dict[str, Any],
        call_id: str = "unknown",
    ) -> CompletionReply:
        """
        Ask the model for the next turn.

        Args:
            history: Full call history as role/content dicts, oldest first
            collected_data: Fields collected so far
            call_id: Twilio Call SID (for logging)

        Returns:
            Validated CompletionReply

        Raises:
            TurnError subclass, see module docstring
        """
        messages = build_completion_messages(self.script, history, collected_data)
        logger.info(f"Calling model ({self.model}) with {len(messages)} messages callSid={call_id}")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.2,  # Low temperature for consistent JSON output
                max_tokens=500,
                response_format={"type": "json_object"},
            )
        except openai.APIError as e:
            logger.error(
                f"METRIC model_api_error error={type(e).__name__} callSid={call_id}"
            )
            raise CompletionUpstreamError(f"Completion request failed: {type(e).__name__}: {e}") from e

        if not response.choices:
            raise CompletionParseError("Completion response has no choices")

        raw_content = response.choices[0].message.content
        logger.debug(f"Model raw response: {raw_content[:500] if raw_content else 'None'}")

        return parse_completion_reply(raw_content, call_id)
