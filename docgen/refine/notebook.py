"""Per-pointer record of terminology searches made during a refine loop."""

from typing import Any, Iterable, Optional

from ..models import SearchNotebookEntry

UCUM_SYSTEM = "http://unitsofmeasure.org"


def coding_key(system: Optional[str], code: Optional[str]) -> str:
    return f"{str(system or '').strip()}|{str(code or '').strip()}"


class SearchNotebook:
    """
    What has been searched for each coding pointer, and what came back.

    Codings proposed for a pointer must come from its notebook, so the
    decision model can only pick codes it has actually seen.
    """

    def __init__(self):
        self._attempted: dict[str, dict[str, str]] = {}
        self._entries: dict[str, list[SearchNotebookEntry]] = {}
        self._attempts: dict[str, list[dict[str, Any]]] = {}

    def new_queries(self, pointer: str, terms: Iterable[str]) -> list[str]:
        """Terms not yet tried for `pointer` (case-insensitive), in order."""
        tried = self._attempted.get(pointer, {})
        fresh: dict[str, str] = {}
        for term in terms:
            lowered = term.lower()
            if lowered not in tried and lowered not in fresh:
                fresh[lowered] = term
        return list(fresh.values())

    def attempted(self, pointer: str) -> list[str]:
        return list(self._attempted.get(pointer, {}).values())

    def record(
        self,
        pointer: str,
        entry: SearchNotebookEntry,
        decision: Optional[dict[str, Any]] = None,
    ) -> None:
        """Store a search and mark its queries as tried."""
        tried = self._attempted.setdefault(pointer, {})
        for query in entry.queries:
            tried.setdefault(query.lower(), query)
        self._entries.setdefault(pointer, []).append(entry)

        for result in entry.results_by_query:
            self._attempts.setdefault(pointer, []).append({
                "query": result.query,
                "systems": entry.systems,
                "hit_count": len(result.hits),
                "sample": [h.model_dump() for h in result.hits[:3]],
                "decision": decision or {},
            })

    def entries(self, pointer: str) -> list[SearchNotebookEntry]:
        return list(self._entries.get(pointer, []))

    def allowed(self, pointer: str) -> set[str]:
        """``system|code`` keys seen in search hits for `pointer`."""
        return {coding_key(h.system, h.code) for e in self._entries.get(pointer, []) for h in e.hits()}

    def is_allowed(self, pointer: str, system: Optional[str], code: Optional[str]) -> bool:
        if str(system or "") == UCUM_SYSTEM:
            return True
        return coding_key(system, code) in self.allowed(pointer)

    def canonical_display(self, pointer: str, system: str, code: str) -> Optional[str]:
        key = coding_key(system, code)
        for entry in self._entries.get(pointer, []):
            for hit in entry.hits():
                if coding_key(hit.system, hit.code) == key:
                    return hit.display
        return None

    def for_pointers(self, pointers: Iterable[str]) -> dict[str, list[dict[str, Any]]]:
        """Notebook entries (as plain dicts) for the given pointers."""
        return {
            p: [e.model_dump() for e in self._entries[p]]
            for p in pointers
            if p in self._entries
        }

    def attempts_for_pointers(self, pointers: Iterable[str]) -> dict[str, dict[str, list[str]]]:
        return {p: {"queries": self.attempted(p)} for p in pointers if p in self._attempted}

    def attempt_logs(self) -> dict[str, dict[str, Any]]:
        """Per-pointer attempt history for unresolved-coding annotations."""
        return {p: {"attempts": list(a)} for p, a in self._attempts.items()}
