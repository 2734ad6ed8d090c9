"""
Coding analysis: find the codings embedded in resources and check them
against the terminology service.
"""

import copy
import json
import logging
import re
from typing import Any, Optional
from urllib.parse import quote, unquote

from ..models import CodingEntry, CodingReason, CodingReportItem, CodingStatus, Coding
from ..services import TerminologyClient
from .pointer import resolve

logger = logging.getLogger(__name__)

CODING_ISSUE_URL = "http://example.org/fhir/StructureDefinition/coding-issue"
REFINE_STATUS_URL = "http://example.org/fhir/StructureDefinition/refine-status"

# Staged proposal fields a generator may leave on a coding
PLACEHOLDER_KEYS = ("_proposed_coding", "_potential_displays", "_potential_systems", "_potential_codes")

_QUANTITY_RE = re.compile(r"Quantity$", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def _encode(key: str) -> str:
    return quote(key, safe="")


def _looks_like_quantity(node: dict, pointer: str) -> bool:
    last = unquote(pointer.rsplit("/", 1)[-1]) if pointer else ""
    suggests = bool(_QUANTITY_RE.search(last)) or last in ("low", "high")
    return suggests and "value" in node


def collect_codings(resource: Any, base_pointer: str = "") -> list[CodingEntry]:
    """
    Walk a resource to full depth and collect every embedded coding.

    Collected: each object in a ``coding`` array, and any other object
    below the root with string ``system`` and ``code`` - unless its key
    says it is a quantity (``...Quantity``, ``low``, ``high``) and it has a
    ``value``. Keys starting with ``_`` are not descended into.
    """
    found: list[CodingEntry] = []

    def walk(node: Any, pointer: str) -> None:
        if isinstance(node, list):
            for i, item in enumerate(node):
                walk(item, f"{pointer}/{i}")
            return
        if not isinstance(node, dict):
            return

        codings = node.get("coding")
        if isinstance(codings, list):
            for i, coding in enumerate(codings):
                if isinstance(coding, dict):
                    found.append(CodingEntry(
                        pointer=f"{pointer}/coding/{i}",
                        system=coding.get("system"),
                        code=coding.get("code"),
                        display=coding.get("display"),
                    ))

        if (
            pointer
            and isinstance(node.get("system"), str)
            and isinstance(node.get("code"), str)
            and not _looks_like_quantity(node, pointer)
        ):
            found.append(CodingEntry(
                pointer=pointer,
                system=node["system"],
                code=node["code"],
                display=node.get("display"),
            ))

        for key, value in node.items():
            if key == "coding" or key.startswith("_"):
                continue
            walk(value, f"{pointer}/{_encode(key)}")

    walk(resource, base_pointer)
    return found


def norm_display(text: Optional[str]) -> str:
    """Trim, collapse whitespace, lowercase."""
    return _WHITESPACE_RE.sub(" ", str(text or "").strip()).lower()


def resource_ref(resource: Any) -> Optional[str]:
    if isinstance(resource, dict) and resource.get("resourceType"):
        return f"{resource['resourceType']}/{resource.get('id') or ''}"
    return None


async def analyze_codings(
    resources: list[dict[str, Any]],
    terminology: TerminologyClient,
) -> list[CodingReportItem]:
    """
    Classify every embedded coding as ok or recoding.

    A coding is ok when its (system, code) exists and its display matches
    the canonical display (case- and whitespace-insensitive). Otherwise it
    needs recoding, with reason display_mismatch (code exists) or
    not_found. All pairs are checked in one terminology request.
    """
    entries: list[tuple[dict, CodingEntry]] = []
    for resource in resources:
        for entry in collect_codings(resource):
            entries.append((resource, entry))

    answers = await terminology.codes_exist(
        [{"system": e.system, "code": e.code} for _, e in entries]
    )

    report = []
    for index, (resource, entry) in enumerate(entries):
        answer = answers[index] if index < len(answers) else None
        exists = bool(entry.system and entry.code and answer and answer.exists)

        status = CodingStatus.RECODING
        reason: Optional[CodingReason] = CodingReason.NOT_FOUND
        if exists:
            if norm_display(answer.display) == norm_display(entry.display):
                status, reason = CodingStatus.OK, None
            else:
                reason = CodingReason.DISPLAY_MISMATCH

        report.append(CodingReportItem(
            pointer=entry.pointer,
            original=Coding(system=entry.system, code=entry.code, display=entry.display),
            status=status,
            reason=reason,
            resource_type=resource.get("resourceType") if isinstance(resource, dict) else None,
            resource_id=resource.get("id") if isinstance(resource, dict) else None,
            resource_ref=resource_ref(resource),
        ))

    unresolved = sum(1 for item in report if not item.is_ok)
    logger.debug(f"Analyzed {len(report)} coding(s), {unresolved} need recoding")
    return report


def unresolved_items(report: list[CodingReportItem]) -> list[CodingReportItem]:
    return [item for item in report if not item.is_ok]


# -----------------------------------------------------------------------------
# Unresolved annotation
# -----------------------------------------------------------------------------

def compact_attempts(attempts: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Last three attempts, with samples and justifications truncated."""
    compact = []
    for attempt in attempts[-3:]:
        decision = attempt.get("decision") or {}
        justification = decision.get("justification")
        compact.append({
            "query": attempt.get("query"),
            "systems": attempt.get("systems"),
            "hit_count": attempt.get("hit_count"),
            "sample": (attempt.get("sample") or [])[:3],
            "decision": {
                "action": decision.get("action"),
                "terms": decision.get("terms"),
                "reason": decision.get("reason"),
                "selection": decision.get("selection"),
                "justification": str(justification)[:240] if justification else None,
            },
        })
    return compact


def set_extension(node: dict[str, Any], url: str, payload: Any) -> None:
    """Attach ``{url, valueString: json(payload)}``, replacing any with the same url."""
    extensions = node.get("extension") if isinstance(node.get("extension"), list) else []
    extensions = [e for e in extensions if not (isinstance(e, dict) and e.get("url") == url)]
    extensions.append({"url": url, "valueString": json.dumps(payload, default=str)})
    node["extension"] = extensions


def _pop_placeholders(node: dict[str, Any]) -> tuple[dict, list[str]]:
    proposed = node.get("_proposed_coding") if isinstance(node.get("_proposed_coding"), dict) else {}
    potentials = [p.strip() for p in str(node.get("_potential_displays") or "").split(",") if p.strip()]
    for key in PLACEHOLDER_KEYS:
        node.pop(key, None)
    return proposed, potentials


def _sweep_placeholders(node: Any) -> None:
    if isinstance(node, list):
        for item in node:
            _sweep_placeholders(item)
        return
    if not isinstance(node, dict):
        return
    if any(node.get(key) for key in PLACEHOLDER_KEYS):
        proposed, potentials = _pop_placeholders(node)
        set_extension(node, CODING_ISSUE_URL, {
            "proposed": {"system": proposed.get("system"), "display": proposed.get("display")},
            "potentials": potentials,
            "note": "unresolved_after_recoding",
        })
    for key, value in node.items():
        if not key.startswith("_"):
            _sweep_placeholders(value)


def finalize_unresolved(
    resources: list[dict[str, Any]],
    unresolved_pointers: list[str],
    attempt_logs: Optional[dict[str, dict[str, Any]]] = None,
) -> list[dict[str, Any]]:
    """
    Annotate codings left unresolved, on a deep copy of `resources`.

    Every unresolved pointer loses its staged proposal fields and gains a
    coding-issue extension recording the proposal, candidate displays and
    (from `attempt_logs`, keyed ``"<Type>/<id>:<pointer>"`` or by pointer)
    a summary of search attempts. Stray placeholders anywhere else are
    swept into extensions too, so no half-applied proposal survives.
    """
    attempt_logs = attempt_logs or {}
    cloned = copy.deepcopy(resources)

    for pointer in dict.fromkeys(unresolved_pointers):
        for resource in cloned:
            target = resolve(resource, pointer)
            if not isinstance(target, dict):
                continue

            proposed, potentials = _pop_placeholders(target)
            ref = resource_ref(resource)
            log = attempt_logs.get(f"{ref}:{pointer}" if ref else pointer) or attempt_logs.get(pointer)

            payload: dict[str, Any] = {
                "pointer": pointer,
                "proposed": {"system": proposed.get("system"), "display": proposed.get("display")},
                "potentials": potentials,
            }
            if log and log.get("attempts"):
                payload["queries"] = [
                    {"query": a.get("query"), "hits": a.get("hit_count")} for a in log["attempts"]
                ]
                payload["attempts"] = compact_attempts(log["attempts"])
            if log and log.get("failure_reason"):
                payload["failure"] = log["failure_reason"]
            payload["note"] = "unresolved_after_recoding"
            set_extension(target, CODING_ISSUE_URL, payload)

    _sweep_placeholders(cloned)
    return cloned
