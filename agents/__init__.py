"""
Intake script specifications and registry.
"""
from .specs import (
    FieldSpec,
    IntakeScript,
    PATIENT_INTAKE_SCRIPT,
    SCRIPTS,
    get_intake_script,
)

__all__ = [
    "FieldSpec",
    "IntakeScript",
    "PATIENT_INTAKE_SCRIPT",
    "SCRIPTS",
    "get_intake_script",
]
