"""Terminology service client (code existence and free-text search)."""

from typing import Any, Iterable, Optional
import logging

import httpx

from ..models import CodeExistence, QueryHits, SearchHit, SearchResult

logger = logging.getLogger(__name__)


class TerminologyError(Exception):
    """The terminology service could not answer."""


class TerminologyClient:
    """
    Client for the unified terminology server.

    Endpoints:
        POST {base}/tx/codes/exists  {items: [{system, code}]}
            -> {results: [{system, code, exists, display, normalizedSystem}]}
        POST {base}/tx/search        {queries, systems, limit}
            -> {results: [{query, hits: [{system, code, display}], count, fullSystem, guidance}]}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.post(url, json=body)
        except httpx.HTTPError as e:
            raise TerminologyError(f"{path} request failed: {e}") from e
        if not response.is_success:
            raise TerminologyError(f"{path} failed: HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise TerminologyError(f"{path} returned invalid JSON") from e

    async def codes_exist(self, items: Iterable[dict[str, str]]) -> list[CodeExistence]:
        """
        Check (system, code) pairs in one batch.

        Returns:
            One answer per item, in input order

        Raises:
            TerminologyError: On transport or HTTP failure
        """
        items = [{"system": i.get("system") or "", "code": i.get("code") or ""} for i in items]
        if not items:
            return []

        data = await self._post("/tx/codes/exists", {"items": items})
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            results = []

        answers = []
        for index, item in enumerate(items):
            raw = results[index] if index < len(results) and isinstance(results[index], dict) else {}
            answers.append(CodeExistence(
                system=item["system"],
                code=item["code"],
                exists=bool(raw.get("exists")),
                display=raw.get("display"),
                normalized_system=raw.get("normalizedSystem"),
            ))
        logger.debug(f"Checked {len(items)} code(s), {sum(a.exists for a in answers)} exist")
        return answers

    async def search(
        self,
        queries: list[str],
        systems: Optional[list[str]] = None,
        limit: int = 200,
    ) -> SearchResult:
        """
        Free-text search for codes.

        Raises:
            TerminologyError: On transport or HTTP failure
        """
        data = await self._post(
            "/tx/search",
            {"queries": list(queries), "systems": list(systems or []), "limit": limit},
        )
        raw_results = data.get("results") if isinstance(data, dict) else None

        results = []
        guidance = None
        full_system = False
        for raw in raw_results if isinstance(raw_results, list) else []:
            if not isinstance(raw, dict):
                continue
            hits = [
                SearchHit(
                    system=str(h.get("system") or ""),
                    code=str(h.get("code") or ""),
                    display=str(h.get("display") or ""),
                )
                for h in raw.get("hits") or []
                if isinstance(h, dict)
            ]
            results.append(QueryHits(
                query=str(raw.get("query", "")),
                hits=hits,
                count=raw.get("count", len(hits)),
            ))
            full_system = full_system or bool(raw.get("fullSystem"))
            if guidance is None and isinstance(raw.get("guidance"), str) and raw["guidance"].strip():
                guidance = raw["guidance"]

        result = SearchResult(results=results, guidance=guidance, full_system=full_system)
        logger.debug(f"Search {queries} in {systems or 'all systems'}: {result.count} hit(s)")
        return result
