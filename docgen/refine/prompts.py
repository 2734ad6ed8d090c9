"""Decision prompt for the validate-refine loop."""

import copy
import json
from typing import Any

from ..models import CodingReportItem, ValidationResult
from .notebook import SearchNotebook
from .pointer import resolve

REFINE_TASK = "fhir_resource_validate_refine"

_INSTRUCTIONS = """You are repairing one FHIR resource. Reduce its coding and validation issues with small, safe edits.

Choose exactly ONE action and reply with a JSON object:
- {"action": "search_for_coding", "pointer": "<coding pointer>", "terms": ["..."], "systems": ["..."], "rationale": "..."}
  Ask the terminology service for candidate codes. Does not change the resource.
- {"action": "update", "patch": [<RFC 6902 operations>], "rationale": "..."}
  Edit the resource. Replace a whole Coding ({"system", "code", "display"}) in one operation.
  Only use codes listed in the Search Notebook for that pointer. UCUM units are always allowed.
  If no suitable code exists, remove the coding instead of guessing.
- {"action": "stop", "rationale": "..."}
  Nothing more can be improved.

An update is kept only if it lowers the number of unresolved codings, or keeps it and lowers the number of validator errors."""


def redact_codes(resource: dict[str, Any], report: list[CodingReportItem]) -> dict[str, Any]:
    """Copy of `resource` with ``code`` removed at every unresolved pointer."""
    redacted = copy.deepcopy(resource)
    for item in report:
        if item.is_ok:
            continue
        target = resolve(redacted, item.pointer)
        if isinstance(target, dict):
            target.pop("code", None)
    return redacted


def _section(title: str, payload: Any) -> str:
    return f"{title}:\n{json.dumps(payload, indent=2, default=str)}"


def build_refine_prompt(
    resource: dict[str, Any],
    report: list[CodingReportItem],
    validation: ValidationResult,
    notebook: SearchNotebook,
    warnings: list[dict[str, Any]],
    budget_remaining: int,
) -> str:
    unresolved = [item for item in report if not item.is_ok]
    pointers = [item.pointer for item in unresolved]

    unresolved_for_prompt = []
    for item in unresolved:
        data = item.model_dump(exclude_none=True)
        data.get("original", {}).pop("code", None)
        unresolved_for_prompt.append(data)

    validator_errors = [
        {"path": issue.location or None, "severity": issue.severity, "message": issue.details}
        for issue in validation.issues
    ]

    parts = [
        _INSTRUCTIONS,
        f"Turns remaining: {budget_remaining}",
        _section("Resource", redact_codes(resource, report)),
        _section("Unresolved Codings", unresolved_for_prompt),
        _section("Validator Issues", validator_errors),
        _section("Queries Already Tried", notebook.attempts_for_pointers(pointers)),
        _section("Search Notebook", notebook.for_pointers(pointers)),
    ]
    if warnings:
        parts.append(_section("Feedback From Previous Turns", warnings))
    return "\n\n".join(parts)
