"""
Validate-refine loop.

Repairs one generated resource under a turn budget. Each turn takes a
snapshot of the resource's issues (coding analysis plus schema
validation), asks the decision model for exactly one action, and either
searches the terminology service, tries a patch, or stops. A patch is only
kept when it strictly improves (unresolved codings, validator errors), so
the working resource never regresses.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ..engine.context import ExecutionContext
from ..engine.hashing import content_hash
from ..models import (
    Artifact,
    CodingReportItem,
    CodingStatus,
    SearchNotebookEntry,
    SearchResult,
    ValidationResult,
)
from ..services import TerminologyClient, TerminologyError, ValidatorClient
from .coding_analysis import (
    REFINE_STATUS_URL,
    analyze_codings,
    finalize_unresolved,
    set_extension,
)
from .notebook import SearchNotebook
from .pointer import PointerError, apply_patch, base_coding_pointer
from .prompts import REFINE_TASK, build_refine_prompt

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Issues of one resource state."""

    report: list[CodingReportItem]
    validation: ValidationResult

    @property
    def unresolved(self) -> list[CodingReportItem]:
        return [item for item in self.report if not item.is_ok]

    @property
    def unresolved_count(self) -> int:
        return len(self.unresolved)

    @property
    def error_count(self) -> int:
        return self.validation.error_count

    @property
    def score(self) -> tuple[int, int]:
        return (self.unresolved_count, self.error_count)

    @property
    def clean(self) -> bool:
        return self.unresolved_count == 0 and self.error_count == 0

    def counts(self) -> dict[str, int]:
        return {"unresolved": self.unresolved_count, "errors": self.error_count}


@dataclass
class RefineOutcome:
    """Result of refining one resource."""

    resource: dict[str, Any]
    """Final resource, annotated with issue extensions when not clean."""

    working: dict[str, Any]
    """Last accepted resource, without annotations."""

    report: list[CodingReportItem]
    validation: ValidationResult
    clean: bool
    budget: int
    turns_used: int
    trace: list[dict[str, Any]] = field(default_factory=list)
    trace_artifact: Optional[Artifact] = None
    accepted_steps: list[str] = field(default_factory=list)
    contributed_steps: list[str] = field(default_factory=list)


def _terms(raw: Any) -> list[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [str(t).strip() for t in raw if str(t or "").strip()]


class RefineLoop:
    """
    Budgeted repair of one resource.

    Usage:
        loop = RefineLoop(ctx, reference="Condition/cond-1")
        outcome = await loop.run(resource)
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        reference: Optional[str] = None,
        terminology: Optional[TerminologyClient] = None,
        validator: Optional[ValidatorClient] = None,
        max_turns: Optional[int] = None,
        adaptive_budget: Optional[bool] = None,
        search_limit: Optional[int] = None,
        notebook: Optional[SearchNotebook] = None,
    ):
        settings = ctx.settings
        self.ctx = ctx
        self.reference = reference
        self.terminology = terminology or ctx.terminology
        self.validator = validator or ctx.validator
        if self.terminology is None or self.validator is None:
            raise ValueError("RefineLoop needs a terminology client and a validator")

        self.max_turns = settings.refine.max_turns if max_turns is None else max_turns
        self.adaptive_budget = (
            settings.refine.adaptive_budget if adaptive_budget is None else adaptive_budget
        )
        self.search_limit = search_limit or settings.services.search_limit
        self.notebook = notebook or SearchNotebook()

        self.trace: list[dict[str, Any]] = []
        self.warnings: list[dict[str, Any]] = []
        self._accepted_steps: list[str] = []
        self._contributed_steps: list[str] = []
        self._trace_artifact: Optional[Artifact] = None

    @property
    def _tags(self) -> dict[str, Any]:
        tags: dict[str, Any] = {"phase": "fhir", "stage": "validate-refine"}
        if self.reference:
            tags["reference"] = self.reference
        return tags

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def snapshot(self, resource: dict[str, Any], turn: Optional[int] = None) -> Snapshot:
        """Coding report and validation result, each memoized by resource hash."""
        digest = content_hash(resource)
        tags = {**self._tags, "refine_iter": turn}

        async def analyze() -> list[dict]:
            report = await analyze_codings([resource], self.terminology)
            return [item.model_dump() for item in report]

        async def validate() -> dict:
            result = await self.validator.validate(resource)
            return {"input": resource, "result": result.model_dump()}

        report = await self.ctx.step(
            f"refine:analyze:{digest}", analyze, title="Analyze Codings", tags=tags
        )
        validation = await self.ctx.step(
            f"refine:validate:{digest}", validate, title="Validate Resource", tags=tags
        )
        return Snapshot(
            report=[CodingReportItem.model_validate(item) for item in report],
            validation=ValidationResult.model_validate(validation["result"]),
        )

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    async def run(self, resource: dict[str, Any]) -> RefineOutcome:
        working = copy.deepcopy(resource)
        current = await self.snapshot(working, 1)
        initial = current

        budget = self.max_turns
        if self.adaptive_budget:
            budget = max(budget, current.error_count + 2 * current.unresolved_count + 5)

        turns_used = 0
        while turns_used < budget:
            current = await self.snapshot(working, turns_used + 1)
            if current.clean:
                break

            prompt = build_refine_prompt(
                working, current.report, current.validation,
                self.notebook, self.warnings, budget - turns_used,
            )
            decision, meta = await self.ctx.call_llm_ex(
                REFINE_TASK, prompt, expect="json", tags=self._tags
            )
            if meta.step_key not in self._contributed_steps:
                self._contributed_steps.append(meta.step_key)
            if not isinstance(decision, dict):
                decision = {"action": None, "value": decision}

            action = str(decision.get("action") or "").lower()
            entry: dict[str, Any] = {
                "turn": turns_used + 1,
                "action": action,
                "rationale": decision.get("rationale"),
                "before": current.counts(),
                "after": current.counts(),
                "llm_step_key": meta.step_key,
                "decision": decision,
            }

            if action == "stop":
                entry["result"] = "stopped"
                await self._record(entry)
                break

            if action == "search_for_coding":
                entry.update(await self._search(decision, turns_used + 1))
            elif action == "update":
                accepted = await self._update(working, current, decision, entry, turns_used + 1)
                if accepted is not None:
                    working = accepted
            else:
                entry["action"] = "unknown"
                entry["result"] = "unknown_action"

            await self.ctx.annotate_step(meta.step_key, refine_decision=entry.get("result"))
            turns_used += 1
            await self._record(entry)

        return await self._finish(working, initial, budget, turns_used)

    async def _record(self, entry: dict[str, Any]) -> None:
        self.trace.append(entry)
        logger.info(
            f"[{self.reference or 'resource'}] turn {entry['turn']}: "
            f"{entry['action']} -> {entry.get('result')} "
            f"({entry['before']} -> {entry['after']})"
        )
        await self._persist_trace()

    async def _persist_trace(self, budget: Optional[int] = None) -> None:
        content: dict[str, Any] = {"reference": self.reference, "trace": self.trace}
        if budget is not None:
            content["budget"] = budget
        self._trace_artifact = await self.ctx.create_artifact(
            "FhirResourceValidationTrace",
            f"Validation Trace for {self.reference or 'resource'}",
            content,
            tags=self._tags,
        )

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def _search(self, decision: dict[str, Any], turn: int) -> dict[str, Any]:
        pointer = decision.get("pointer")
        provided = _terms(decision.get("terms"))
        raw_systems = decision.get("systems")
        systems = [str(s) for s in raw_systems if s] if isinstance(raw_systems, list) else []

        if not isinstance(pointer, str) or not pointer or not provided:
            return {"result": "invalid_request", "error": "missing pointer/terms"}

        fresh = self.notebook.new_queries(pointer, provided)
        if not fresh:
            return {
                "result": "repeat_query",
                "pointer": pointer,
                "queries_provided": provided,
                "queries_executed": [],
                "systems": systems,
            }

        async def search() -> dict:
            result = await self.terminology.search(fresh, systems, self.search_limit)
            return result.model_dump()

        digest = content_hash({"q": fresh, "systems": systems})
        try:
            data = await self.ctx.step(
                f"tx:search:{digest}",
                search,
                title="Terminology Search",
                tags={"phase": "terminology", "pointer": pointer, "refine_iter": turn},
            )
        except TerminologyError as e:
            logger.warning(f"Terminology search for {pointer} failed: {e}")
            return {"result": "search_failed", "pointer": pointer, "error": str(e)}

        result = SearchResult.model_validate(data)
        notebook_entry = SearchNotebookEntry(
            queries=fresh,
            systems=systems,
            meta={
                "count": result.count,
                "full_system": result.full_system,
                "guidance": result.guidance,
            },
            results_by_query=result.results,
        )
        self.notebook.record(pointer, notebook_entry, decision)
        return {
            "result": "searched",
            "pointer": pointer,
            "queries_provided": provided,
            "queries_executed": fresh,
            "systems": systems,
            "meta": notebook_entry.meta,
            "results_by_query": [r.model_dump() for r in result.results],
        }

    async def _update(
        self,
        working: dict[str, Any],
        current: Snapshot,
        decision: dict[str, Any],
        entry: dict[str, Any],
        turn: int,
    ) -> Optional[dict[str, Any]]:
        """Try a patch. Returns the new working resource if accepted."""
        patch = decision.get("patch")
        if not isinstance(patch, list) or not patch:
            entry["result"] = "missing_patch"
            return None

        ops, rejected = self.filter_patch(patch)
        if rejected:
            entry["removed_invalid_codings"] = rejected
            self._warn_rejected(rejected)
        if not ops:
            entry["result"] = "no_effect_after_filter"
            return None

        try:
            candidate = apply_patch(working, ops)
        except PointerError as e:
            entry["result"] = "invalid_patch"
            entry["error"] = str(e)
            return None
        if not isinstance(candidate, dict):
            entry["result"] = "invalid_patch"
            entry["error"] = f"Patch replaced the resource with a {type(candidate).__name__}"
            return None
        entry["patch"] = ops

        after = await self.snapshot(candidate, turn)
        entry["after"] = after.counts()
        entry["validation_issues_after"] = [i.model_dump() for i in after.validation.issues]

        if after.error_count > current.error_count:
            entry["result"] = "invalid_fhir"
            return None
        if after.score < current.score:
            entry["result"] = "accepted"
            entry["changed_pointers"] = list(dict.fromkeys(
                p for p in (base_coding_pointer(str(op.get("path", ""))) for op in ops) if p
            ))
            if entry["llm_step_key"] not in self._accepted_steps:
                self._accepted_steps.append(entry["llm_step_key"])
            return candidate

        entry["result"] = "no_improvement"
        return None

    def filter_patch(self, patch: list[Any]) -> tuple[list[Any], list[dict[str, Any]]]:
        """
        Drop operations that introduce a coding not seen in that pointer's
        search notebook (UCUM exempt), and normalize displays of the rest to
        the notebook's canonical display.

        Returns:
            (kept operations, rejected codings)
        """
        kept = []
        rejected = []
        for op in patch:
            if not isinstance(op, dict) or op.get("op") not in ("add", "replace"):
                kept.append(op)
                continue

            op = copy.deepcopy(op)
            codings = self._implicated_codings(op)
            bad = [
                {"pointer": ptr, "system": c.get("system"), "code": c.get("code")}
                for ptr, c in codings
                if not self.notebook.is_allowed(ptr, c.get("system"), c.get("code"))
            ]
            if bad:
                rejected.extend(bad)
                continue

            for ptr, coding in codings:
                canonical = self.notebook.canonical_display(ptr, coding["system"], coding["code"])
                if canonical and coding.get("display") != canonical:
                    coding["display"] = canonical
            kept.append(op)
        return kept, rejected

    def _implicated_codings(self, op: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
        """Whole codings (with system and code) an add/replace op writes."""
        path = str(op.get("path", ""))
        value = op.get("value")
        if not isinstance(value, dict):
            return []
        if value.get("system") and value.get("code"):
            return [(base_coding_pointer(path) or path, value)]
        if isinstance(value.get("coding"), list):
            return [
                (f"{path}/coding/{i}", c)
                for i, c in enumerate(value["coding"])
                if isinstance(c, dict) and c.get("system") and c.get("code")
            ]
        return []

    def _warn_rejected(self, rejected: list[dict[str, Any]]) -> None:
        by_pointer: dict[str, list[dict]] = {}
        for item in rejected:
            by_pointer.setdefault(item["pointer"], []).append(
                {"system": item["system"], "code": item["code"]}
            )
        for pointer, invalid in by_pointer.items():
            self.warnings.append({
                "pointer": pointer,
                "invalid": invalid,
                "message": "Coding not in the search notebook was dropped; search_for_coding for this pointer first.",
            })

    # -------------------------------------------------------------------------
    # Result
    # -------------------------------------------------------------------------

    async def _finish(
        self,
        working: dict[str, Any],
        initial: Snapshot,
        budget: int,
        turns_used: int,
    ) -> RefineOutcome:
        final = await self.snapshot(working)
        initially_bad = {item.pointer for item in initial.unresolved}

        report = []
        for item in final.report:
            item = item.model_copy()
            if not item.is_ok:
                item.status = CodingStatus.UNRESOLVED.value
            elif item.pointer in initially_bad:
                item.status = CodingStatus.RECODED.value
            report.append(item)

        resource = working
        if not final.clean:
            pointers = [item.pointer for item in final.unresolved]
            resource = finalize_unresolved([working], pointers, self.notebook.attempt_logs())[0]
            searches = [e for e in self.trace if e.get("result") == "searched"][-3:]
            set_extension(resource, REFINE_STATUS_URL, {
                "unresolved": pointers,
                "validation_errors": [i.model_dump() for i in final.validation.errors],
                "recent_searches": [
                    {"pointer": e.get("pointer"), "queries": e.get("queries_executed"),
                     "count": (e.get("meta") or {}).get("count")}
                    for e in searches
                ],
            })
            logger.warning(
                f"[{self.reference or 'resource'}] left with {final.unresolved_count} unresolved "
                f"coding(s) and {final.error_count} error(s) after {turns_used} turn(s)"
            )

        await self._persist_trace(budget)
        return RefineOutcome(
            resource=resource,
            working=working,
            report=report,
            validation=final.validation,
            clean=final.clean,
            budget=budget,
            turns_used=turns_used,
            trace=list(self.trace),
            trace_artifact=self._trace_artifact,
            accepted_steps=list(self._accepted_steps),
            contributed_steps=list(self._contributed_steps),
        )
