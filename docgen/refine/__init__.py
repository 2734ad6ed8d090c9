"""Coding analysis and the validate-refine repair loop."""

from .pointer import PointerError, apply_patch, base_coding_pointer, get, resolve
from .coding_analysis import (
    CODING_ISSUE_URL,
    REFINE_STATUS_URL,
    analyze_codings,
    collect_codings,
    finalize_unresolved,
    norm_display,
)
from .notebook import SearchNotebook
from .loop import RefineLoop, RefineOutcome, Snapshot

__all__ = [
    "PointerError",
    "apply_patch",
    "base_coding_pointer",
    "get",
    "resolve",
    "CODING_ISSUE_URL",
    "REFINE_STATUS_URL",
    "analyze_codings",
    "collect_codings",
    "finalize_unresolved",
    "norm_display",
    "SearchNotebook",
    "RefineLoop",
    "RefineOutcome",
    "Snapshot",
]
