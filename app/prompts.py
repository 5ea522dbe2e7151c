"""
Prompt rendering for the intake call.

The system prompt is rendered from an IntakeScript: persona, a numbered
script (one step per field, then the closing step), rules, and the
output contract the reply parser enforces.
"""

import json
from typing import Any, Dict, List

from agents.specs import IntakeScript

OUTPUT_CONTRACT = (
    'Your response MUST be a valid JSON object with exactly three keys: '
    '"responseText" (string, what you will say next), '
    '"extractedData" (object mapping field name to the value the caller just gave, '
    'empty object if none), and '
    '"isComplete" (boolean, true only after you say the closing line).'
)

NEXT_TURN_REMINDER = (
    "Current collected data: {collected}. "
    "Now, determine the next question based on the script and the user's last answer. "
    "Generate the next JSON response."
)


def get_system_prompt(script: IntakeScript) -> str:
    """Render the fixed system instruction for a script."""
    lines: List[str] = [
        f"You are '{script.agent_name}', a friendly voice agent for the {script.program_name} program. "
        "Your task is to collect patient health information over the phone.",
        "",
        "Follow this script precisely:",
    ]

    step = 0
    for step, spec in enumerate(script.fields_in_order, start=1):
        lines.append(f"{step}. If {spec.name} is missing, {spec.instruction}.")
    lines.append(
        f"{step + 1}. When all information is collected, say \"{script.closing_line}\" "
        "and set isComplete to true."
    )

    lines.append("")
    lines.append("Rules:")
    for rule in script.rules:
        lines.append(f"- {rule}")
    lines.append(f"- {OUTPUT_CONTRACT}")

    return "\n".join(lines)


def build_completion_messages(
    script: IntakeScript,
    history: List[Dict[str, str]],
    collected_data: Dict[str, Any],
) -> List[Dict[str, str]]:
    """
    Build the ordered message list for one turn.

    System instruction, then the full history verbatim, then a trailing
    system reminder with the current collected data snapshot.
    """
    messages: List[Dict[str, str]] = [
        {"role": "system", "content": get_system_prompt(script)},
    ]
    messages.extend(history)
    messages.append({
        "role": "system",
        "content": NEXT_TURN_REMINDER.format(
            collected=json.dumps(collected_data, ensure_ascii=False, default=str)
        ),
    })
    return messages
