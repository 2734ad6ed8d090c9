"""Retrying client for the generative-text service.

One call = one chat-completion request, retried with exponential backoff
and jitter. Every failure class the service can produce is treated as
retryable:

- transport errors (connect, read, timeout)
- non-2xx responses
- response bodies that are not a JSON envelope
- an ``error`` object embedded in an otherwise successful response
- a response without ``choices[0].message.content``
- (structured mode) content that does not parse as JSON

The whole call, retries included, holds one slot of the shared
ConcurrencyPool.
"""

import asyncio
import json
import logging
import os
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Optional

import httpx

from ..config import LLMSettings
from .pool import ConcurrencyPool

logger = logging.getLogger(__name__)

Expect = Literal["text", "json"]

JSON_SYSTEM_PROMPT = "Return only JSON. No commentary."

_FENCED_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _count(value: Any) -> int:
    """Token count from a usage field; non-numeric values count as 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(int(value), 0)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_response(cls, usage: Any) -> "TokenUsage":
        if not isinstance(usage, dict):
            return cls()
        prompt = _count(usage.get("prompt_tokens"))
        completion = _count(usage.get("completion_tokens"))
        total = _count(usage.get("total_tokens")) or prompt + completion
        return cls(prompt, completion, total)

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class LLMCallResult:
    """Successful call: parsed result plus provenance."""

    result: Any
    raw: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    attempts: int = 1
    status: Optional[int] = None
    model: str = ""
    duration_ms: int = 0


class LLMCallError(Exception):
    """All attempts failed. Carries the last raw content for audit."""

    def __init__(
        self,
        message: str,
        raw_content: Optional[str] = None,
        status: Optional[int] = None,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.raw_content = raw_content
        self.status = status
        self.attempts = attempts


def tolerant_json_parse(text: str) -> Any:
    """
    Parse JSON that may be wrapped in prose or a fenced code block.

    Tries the text as-is, then the first fenced block, then the span from
    the first opening brace/bracket to the last matching closer.

    Raises:
        ValueError: If no candidate parses
    """
    candidates = [text.strip()]

    fenced = _FENCED_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())

    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            candidates.append(text[start:end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    raise ValueError("Content is not valid JSON")


def _extract_content(data: Any) -> Optional[str]:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) else None


class LLMClient:
    """
    Chat-completions client with retries, gated by a ConcurrencyPool.

    Per-task settings (model, temperature, API key) come from
    `settings.tasks[task]`, and the API key may also be supplied through a
    ``TASK_<TASK>_API_KEY`` environment variable.
    """

    def __init__(
        self,
        settings: LLMSettings,
        pool: Optional[ConcurrencyPool] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.pool = pool or ConcurrencyPool(settings.max_concurrency)
        self._client = client or httpx.AsyncClient(timeout=settings.timeout)
        self._owns_client = client is None
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # Task configuration
    # -------------------------------------------------------------------------

    def model_for(self, task: str) -> str:
        override = self.settings.tasks.get(task)
        return (override.model if override and override.model else None) or self.settings.model

    def temperature_for(self, task: str, temperature: Optional[float] = None) -> float:
        if temperature is not None:
            return temperature
        override = self.settings.tasks.get(task)
        if override and override.temperature is not None:
            return override.temperature
        return self.settings.temperature

    def api_key_for(self, task: str) -> Optional[str]:
        env_key = os.environ.get(f"TASK_{re.sub(r'[^A-Za-z0-9]', '_', task).upper()}_API_KEY")
        if env_key:
            return env_key
        override = self.settings.tasks.get(task)
        if override and override.api_key:
            return override.api_key
        return self.settings.api_key or os.environ.get("TASK_DEFAULT_API_KEY")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number `attempt` (1-based)."""
        base = self.settings.retry_base_delay
        delay = base * (2 ** (attempt - 1))
        delay += random.uniform(0, base)
        return min(delay, self.settings.retry_max_delay)

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    async def complete(
        self,
        task: str,
        prompt: str,
        expect: Expect = "text",
        temperature: Optional[float] = None,
    ) -> LLMCallResult:
        """
        Run one generative task.

        Args:
            task: Task name (selects per-task settings, used in logs)
            prompt: User prompt
            expect: "json" to request and parse structured output
            temperature: Overrides the configured temperature

        Returns:
            The parsed result with usage and raw text

        Raises:
            LLMCallError: When every attempt failed
        """
        model = self.model_for(task)
        body: dict[str, Any] = {
            "model": model,
            "temperature": self.temperature_for(task, temperature),
            "messages": [{"role": "user", "content": prompt}],
        }
        if expect == "json":
            body["messages"].insert(0, {"role": "system", "content": JSON_SYSTEM_PROMPT})
            body["response_format"] = {"type": "json_object"}

        headers = {"Content-Type": "application/json"}
        api_key = self.api_key_for(task)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        url = f"{self.settings.base_url.rstrip('/')}/chat/completions"
        max_attempts = max(1, self.settings.retries)

        async with self.pool.slot():
            last_error = "no attempts made"
            last_raw: Optional[str] = None
            last_status: Optional[int] = None

            for attempt in range(1, max_attempts + 1):
                started = time.monotonic()
                error, raw, status, parsed = await self._attempt(url, body, headers, expect)
                latency_ms = int((time.monotonic() - started) * 1000)

                if error is None:
                    content, usage = parsed
                    logger.info(
                        f"[{task}] attempt {attempt}/{max_attempts} ok "
                        f"({latency_ms}ms, {usage.total_tokens} tokens)"
                    )
                    return LLMCallResult(
                        result=content,
                        raw=raw or "",
                        usage=usage,
                        attempts=attempt,
                        status=status,
                        model=model,
                        duration_ms=latency_ms,
                    )

                last_error, last_raw, last_status = error, raw, status
                logger.warning(
                    f"[{task}] attempt {attempt}/{max_attempts} failed "
                    f"({latency_ms}ms): {error}"
                )
                if attempt < max_attempts:
                    await self._sleep(self.backoff_delay(attempt))

        logger.error(f"[{task}] failed after {max_attempts} attempts: {last_error}")
        raise LLMCallError(
            f"LLM task '{task}' failed after {max_attempts} attempts: {last_error}",
            raw_content=last_raw,
            status=last_status,
            attempts=max_attempts,
        )

    async def _attempt(
        self,
        url: str,
        body: dict,
        headers: dict,
        expect: Expect,
    ) -> tuple[Optional[str], Optional[str], Optional[int], Any]:
        """One request. Returns (error, raw, status, (result, usage))."""
        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            return f"transport error: {type(e).__name__}: {e}", None, None, None

        status = response.status_code
        raw = response.text
        if not response.is_success:
            return f"HTTP {status}", raw, status, None

        try:
            data = response.json()
        except ValueError:
            return "unparseable response envelope", raw, status, None

        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else err
            return f"service error: {message}", raw, status, None

        content = _extract_content(data)
        if content is None:
            return "response missing choices[0].message.content", raw, status, None

        usage = TokenUsage.from_response(data.get("usage"))
        if expect == "json":
            try:
                return None, content, status, (tolerant_json_parse(content), usage)
            except ValueError:
                return "content is not valid JSON", content, status, None
        return None, content, status, (content, usage)
