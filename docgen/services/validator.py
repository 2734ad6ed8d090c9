"""Schema validator client."""

from typing import Any, Optional
import logging

import httpx

from ..models import ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)


class ValidatorClient:
    """
    Client for ``POST {base}/validate {resource} -> {valid, issues}``.

    Never raises: HTTP and network failures come back as a single synthetic
    error issue so callers can count them like any other validation error.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def validate(self, resource: dict[str, Any]) -> ValidationResult:
        try:
            response = await self._client.post(
                f"{self.base_url}/validate",
                json={"resource": resource},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            return _failure("network", "timeout")
        except httpx.HTTPError as e:
            return _failure("network", str(e) or type(e).__name__)

        if not response.is_success:
            text = response.text[:200]
            details = f"HTTP {response.status_code} {response.reason_phrase}"
            if text:
                details += f": {text}"
            return _failure("http_error", details)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        issues = []
        for raw in data.get("issues") or []:
            if not isinstance(raw, dict):
                continue
            severity = str(raw.get("severity") or "error").lower()
            if severity == "fatal":
                severity = "error"
            issues.append(ValidationIssue(
                severity=severity,
                code=str(raw.get("code") or "invalid"),
                details=str(raw.get("details") or "Validation error"),
                location=str(raw.get("location") or ""),
            ))

        result = ValidationResult(valid=bool(data.get("valid")) and not issues, issues=issues)
        resource_type = resource.get("resourceType") if isinstance(resource, dict) else None
        logger.debug(
            f"Validated {resource_type or 'resource'}: "
            f"valid={result.valid}, {result.error_count} error(s)"
        )
        return result


def _failure(code: str, details: str) -> ValidationResult:
    logger.warning(f"Validator unavailable ({code}): {details}")
    return ValidationResult(
        valid=False,
        issues=[ValidationIssue(severity="error", code=code, details=details)],
    )
