"""Execution engine: pool, retrying LLM client, step executor and scheduler."""

from .hashing import sha256_hex, stable_json, content_hash, short_hash
from .pool import ConcurrencyPool, fan_out
from .llm import LLMClient, LLMCallResult, LLMCallError, TokenUsage, tolerant_json_parse
from .context import (
    ExecutionContext,
    LLMCallMeta,
    RunAborted,
    JobDeletedError,
    StaleRunError,
)
from .scheduler import JobScheduler, JobNotFoundError, JobBlockedError

__all__ = [
    "sha256_hex",
    "stable_json",
    "content_hash",
    "short_hash",
    "ConcurrencyPool",
    "fan_out",
    "LLMClient",
    "LLMCallResult",
    "LLMCallError",
    "TokenUsage",
    "tolerant_json_parse",
    "ExecutionContext",
    "LLMCallMeta",
    "RunAborted",
    "JobDeletedError",
    "StaleRunError",
    "JobScheduler",
    "JobNotFoundError",
    "JobBlockedError",
]
