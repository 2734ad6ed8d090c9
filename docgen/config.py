"""Runtime settings loaded from YAML and environment variables."""

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/docgen.yaml")


class TaskOverride(BaseModel):
    """Per-task overrides for the generative service."""

    model: Optional[str] = None
    temperature: Optional[float] = None
    api_key: Optional[str] = None


class LLMSettings(BaseModel):
    """Generative-text service settings."""

    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_concurrency: int = 4
    retries: int = 3
    retry_base_delay: float = 0.25
    retry_max_delay: float = 8.0
    timeout: float = 120.0
    tasks: dict[str, TaskOverride] = Field(default_factory=dict)


class ServicesSettings(BaseModel):
    """Terminology and validator service settings."""

    validation_services_url: str = "http://localhost:3500"
    validator_timeout: float = 15.0
    terminology_timeout: float = 30.0
    search_limit: int = 200


class RefineSettings(BaseModel):
    """Validate-refine loop settings."""

    max_turns: int = 12
    resource_concurrency: int = 1
    adaptive_budget: bool = False


class NarrativeSettings(BaseModel):
    """Score targets and revision limits for narrative drafting."""

    section_target: float = 0.75
    note_target: float = 0.78
    section_max_revisions: int = 3
    note_max_revisions: int = 3


class Settings(BaseModel):
    """Top-level settings."""

    db_path: str = "data/docgen.db"
    max_concurrent_jobs: int = 3
    poll_interval: float = 1.0
    fhir_base_url: str = "https://fhir.example.org"
    llm: LLMSettings = Field(default_factory=LLMSettings)
    services: ServicesSettings = Field(default_factory=ServicesSettings)
    refine: RefineSettings = Field(default_factory=RefineSettings)
    narrative: NarrativeSettings = Field(default_factory=NarrativeSettings)


# Environment variable -> (section, field, converter)
ENV_OVERRIDES: dict[str, tuple[Optional[str], str, type]] = {
    "DOCGEN_DB_PATH": (None, "db_path", str),
    "DOCGEN_MAX_CONCURRENT_JOBS": (None, "max_concurrent_jobs", int),
    "FHIR_BASE_URL": (None, "fhir_base_url", str),
    "LLM_BASE_URL": ("llm", "base_url", str),
    "TASK_DEFAULT_API_KEY": ("llm", "api_key", str),
    "LLM_API_KEY": ("llm", "api_key", str),
    "LLM_MODEL": ("llm", "model", str),
    "LLM_TEMPERATURE": ("llm", "temperature", float),
    "LLM_MAX_CONCURRENCY": ("llm", "max_concurrency", int),
    "LLM_RETRIES": ("llm", "retries", int),
    "VALIDATION_SERVICES_URL": ("services", "validation_services_url", str),
    "FHIR_VALIDATION_MAX_ITERS": ("refine", "max_turns", int),
    "FHIR_GEN_CONCURRENCY": ("refine", "resource_concurrency", int),
}


def load_settings(
    config_path: Optional[Path | str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Load settings from a YAML file, then apply environment overrides.

    Expected format:

    ```yaml
    db_path: data/docgen.db
    llm:
      base_url: https://api.openai.com/v1
      model: gpt-4o-mini
      max_concurrency: 4
      tasks:
        fhir_resource_validate_refine:
          temperature: 0.0
    services:
      validation_services_url: http://localhost:3500
    refine:
      max_turns: 12
    ```

    Args:
        config_path: YAML file to read (defaults to $DOCGEN_CONFIG or config/docgen.yaml)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated settings
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("DOCGEN_CONFIG") or DEFAULT_CONFIG_PATH)

    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info(f"Loaded settings from {path}")
    else:
        logger.debug(f"Settings file not found, using defaults: {path}")

    for var, (section, field, convert) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        target = data if section is None else data.setdefault(section, {})
        target[field] = convert(raw)

    return Settings.model_validate(data)
