"""
IntakeScript and FieldSpec definitions.

This module defines the declarative specification for each intake script.
The prompt renderer uses these specs to build the numbered script the
model follows, and the repository uses the `persisted` flags to decide
which collected fields map onto table columns.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Dict


@dataclass
class FieldSpec:
    """
    Specification for a single field to collect on the call.

    Attributes:
        name: The field key the model must use in extractedData (e.g., "full_name")
        instruction: What the agent should do when the field is missing
        persisted: Whether the field is stored as a column of the patients table
        description: Human-readable description for debugging
    """
    name: str
    instruction: str
    persisted: bool = False
    description: Optional[str] = None


@dataclass
class IntakeScript:
    """
    Complete specification for one scripted intake call.

    Drives prompt rendering without any per-script branching.
    """
    script_id: str
    agent_name: str
    program_name: str

    # Fields in collection order
    fields_in_order: List[FieldSpec]

    # Spoken when every field is collected
    closing_line: str

    rules: List[str] = field(default_factory=list)

    def get_field_names(self) -> List[str]:
        """Get all field names in order."""
        return [f.name for f in self.fields_in_order]

    def get_persisted_field_names(self) -> List[str]:
        """Get the field names that map onto storage columns."""
        return [f.name for f in self.fields_in_order if f.persisted]

    def get_missing_fields(self, collected: Dict[str, object]) -> List[str]:
        """Field names with no non-empty value in `collected`, in order."""
        missing: List[str] = []
        for spec in self.fields_in_order:
            value = collected.get(spec.name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(spec.name)
        return missing


# =============================================================================
# PATIENT INTAKE (ASHA Sahayak)
# =============================================================================

PATIENT_INTAKE_SCRIPT = IntakeScript(
    script_id="PATIENT_INTAKE",
    agent_name="Asha",
    program_name="ASHA Sahayak",
    fields_in_order=[
        FieldSpec(
            name="full_name",
            instruction="introduce yourself and ask for their full name",
            persisted=True,
        ),
        FieldSpec(
            name="age",
            instruction="ask for their age in years",
        ),
        FieldSpec(
            name="gender",
            instruction="ask for their gender",
        ),
        FieldSpec(
            name="address",
            instruction="ask for their full address, including village or town",
            persisted=True,
        ),
        FieldSpec(
            name="health_condition",
            instruction="ask what health condition or symptoms they are currently experiencing",
            persisted=True,
            description="Free-text summary of the caller's reported condition",
        ),
    ],
    closing_line="Thank you for answering. We have recorded your details.",
    rules=[
        "Ask ONLY ONE question at a time.",
        "Keep every response short and easy to understand when spoken aloud.",
        "If an answer is unclear, politely ask the same question again.",
        "Put every value the caller has just given into extractedData using the exact field names above.",
    ],
)


# =============================================================================
# REGISTRY
# =============================================================================

SCRIPTS: Dict[str, IntakeScript] = {
    "PATIENT_INTAKE": PATIENT_INTAKE_SCRIPT,
}


def get_intake_script(script_id: str) -> IntakeScript:
    """
    Get the IntakeScript for a given script id.

    Raises:
        ValueError: If script id is not found in registry.
    """
    script = SCRIPTS.get(script_id)
    if script is None:
        raise ValueError(f"Unknown intake script: {script_id}. Valid scripts: {list(SCRIPTS.keys())}")
    return script
