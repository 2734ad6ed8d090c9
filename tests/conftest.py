"""Shared fixtures."""

import tempfile
from pathlib import Path
from typing import Optional

import pytest

from docgen.config import Settings
from docgen.engine import ExecutionContext, JobScheduler
from docgen.models import Job
from docgen.storage import Database, Stores

from fakes import LOINC, SNOMED, FakeTerminology, FakeValidator, ScriptedLLM


# -------------------------------------------------------------------------
# Test Fixtures
# -------------------------------------------------------------------------

@pytest.fixture
async def temp_db():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        db = Database(db_path)
        await db.connect()
        yield db
        await db.close()


@pytest.fixture
async def stores(temp_db):
    return Stores.from_database(temp_db)


@pytest.fixture
def make_job(stores):
    """Factory that stores a job and returns it."""
    counter = {"n": 0}

    async def factory(type: str = "narrative", inputs: Optional[dict] = None, **fields) -> Job:
        counter["n"] += 1
        job = Job(
            id=fields.pop("id", f"job:test-{counter['n']}"),
            title=fields.pop("title", f"Test job {counter['n']}"),
            type=type,
            inputs=inputs if inputs is not None else {"sketch": "45M with fever"},
            **fields,
        )
        await stores.jobs.create(job)
        return job

    return factory


@pytest.fixture
def settings(tmp_path):
    return Settings(db_path=str(tmp_path / "docgen.db"), poll_interval=60.0)


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def terminology():
    return FakeTerminology(
        known={
            (SNOMED, "386661006"): "Fever",
            (SNOMED, "38341003"): "Hypertensive disorder",
            (LOINC, "8310-5"): "Body temperature",
        },
        index={
            "fever": [{"system": SNOMED, "code": "386661006", "display": "Fever"}],
            "pyrexia": [{"system": SNOMED, "code": "386661006", "display": "Fever"}],
            "hypertension": [{"system": SNOMED, "code": "38341003", "display": "Hypertensive disorder"}],
        },
    )


@pytest.fixture
def validator():
    return FakeValidator()


@pytest.fixture
def make_context(stores, llm, terminology, validator, settings):
    """Build an ExecutionContext for a stored job."""

    def factory(job: Job, **overrides) -> ExecutionContext:
        return ExecutionContext(
            stores,
            job,
            overrides.pop("llm", llm),
            terminology=overrides.pop("terminology", terminology),
            validator=overrides.pop("validator", validator),
            settings=overrides.pop("settings", settings),
            **overrides,
        )

    return factory


@pytest.fixture
async def scheduler(settings, llm, terminology, validator):
    """A started scheduler over a temporary database, with fake services."""
    s = JobScheduler(settings, llm=llm, terminology=terminology, validator=validator)
    await s.start()
    yield s
    await s.stop()
