"""
Pydantic models for the intake API and the model reply contract.
Python 3.9 compatible - uses typing.Dict, typing.Optional
"""

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, Field, StrictBool, StrictStr, field_validator


# ============================================================
# Completion reply contract (what the model must return)
# ============================================================

class CompletionReply(BaseModel):
    """One turn of model output.

    All three keys are required. Unknown extra keys are ignored.
    """
    responseText: StrictStr = Field(..., min_length=1)
    extractedData: Dict[str, Any]
    isComplete: StrictBool

    @field_validator("extractedData", mode="before")
    @classmethod
    def _null_extracted_data(cls, value: Any) -> Any:
        # Models send null instead of {} when nothing was extracted
        if value is None:
            return {}
        return value


# ============================================================
# Call initiation (external trigger -> this service)
# ============================================================

class InitiateCallRequest(BaseModel):
    """Request to place an outbound intake call.

    Both fields are optional at the schema level so that a missing value
    produces the endpoint's own 400 message instead of a 422.
    """
    phoneNumber: Optional[str] = None
    callbackBaseUrl: Optional[str] = Field(
        None, validation_alias=AliasChoices("callbackBaseUrl", "ngrokUrl")
    )

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def _numeric_phone_number(cls, value: Any) -> Any:
        # JSON clients sometimes send the number unquoted
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class InitiateCallResponse(BaseModel):
    """Response with the Twilio Call SID."""
    message: str
    callSid: str


class InitiateCallError(BaseModel):
    """Error body for 400/500 responses from /initiate-call."""
    message: str
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    activeConversations: int
