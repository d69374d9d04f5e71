"""Shared test fixtures for the coursegen test suite.

All tests use a throwaway SQLite file database, so that concurrent
sessions (one per worker thread) behave like separate connections.
Each test gets empty tables via DELETE before it runs.

Also provides the artifact schemas, scripted generator and stage handler
the generation and orchestrator tests share.
"""

import json
import os
import tempfile

# Point the app at a scratch database and disable the real generator before any app imports.
_DB_DIR = tempfile.mkdtemp(prefix="coursegen-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/coursegen_test.db"
os.environ["GENERATOR_MODEL"] = ""
os.environ["ESCALATION_MODELS"] = ""
os.environ["LOG_FORMAT"] = "text"
os.environ["ENVIRONMENT"] = "development"
# Use litellm's bundled model cost map instead of a background network fetch at import.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from typing import Annotated, Any, Optional

import pytest
from fastapi.testclient import TestClient
from pydantic import BaseModel, Field

from coursegen.database import Base, SessionLocal, get_db, init_db
from coursegen.exceptions import GeneratorUnavailableError
from coursegen.generation import circuit_breaker
from coursegen.generation.schema import (
    ArtifactSchema,
    Refined,
    Refinement,
    single_element,
    wrapped_in,
)
from coursegen.main import app
from coursegen.pipeline.orchestrator import StageOutput

init_db()


@pytest.fixture(autouse=True)
def _clean_tables():
    """Empty every table before each test.

    Runs before the test (not after) so failures leave data available
    for debugging.
    """
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
    finally:
        db.close()
    circuit_breaker.reset_all()
    yield


@pytest.fixture()
def db():
    """Per-test database session."""
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def client(db):
    """FastAPI TestClient with the DB dependency overridden to use the test session."""

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Artifact schemas used across the generation tests
# ---------------------------------------------------------------------------


class Section(BaseModel):
    title: str = Field(min_length=3)
    duration_minutes: int = Field(ge=5, le=240)


class CourseOutline(BaseModel):
    course_title: str = Field(min_length=3)
    sections: list[Section] = Field(min_length=1)


OUTLINE = ArtifactSchema(CourseOutline, name="course_outline")

OUTCOMES = ArtifactSchema(
    Annotated[list[Annotated[str, Field(min_length=5)]], Field(min_length=1)],
    name="learning_outcomes",
    variants=[wrapped_in("outcomes"), single_element()],
)

MAX_TOTAL_MINUTES = Refinement(
    lambda v: sum(s["duration_minutes"] for s in v["sections"]) <= 600,
    "total section duration must not exceed 600 minutes",
    path="sections",
)

BOUNDED_OUTLINE = Refined(OUTLINE, MAX_TOTAL_MINUTES)


def make_outline(**overrides) -> dict:
    """Factory for a valid course outline artifact."""
    outline = {
        "course_title": "Intro to Python",
        "sections": [
            {"title": "Basics", "duration_minutes": 30},
            {"title": "Loops", "duration_minutes": 45},
        ],
    }
    outline.update(overrides)
    return outline


class ScriptedGenerator:
    """Generator returning canned responses in order.

    Dicts and lists are sent as JSON text, exceptions are raised. Running
    out of responses looks like an unavailable provider.
    """

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.calls: list[tuple[str, Any]] = []

    def generate(self, prompt: str, options: Optional[Any] = None) -> str:
        self.calls.append((prompt, options))
        if not self.responses:
            raise GeneratorUnavailableError("scripted", "no responses left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else json.dumps(response)


class StaticHandler:
    """Stage handler returning the same raw output for every item."""

    def __init__(self, step_id: int, schema=OUTLINE, raw: Any = None, requires_approval: bool = False):
        self.step_id = step_id
        self.schema = schema
        self.raw = make_outline() if raw is None else raw
        self.requires_approval = requires_approval
        self.payloads: list[dict] = []

    def handle(self, job: dict, payload: dict) -> StageOutput:
        self.payloads.append(payload)
        if isinstance(self.raw, Exception):
            raise self.raw
        return StageOutput(raw=self.raw, prompt=f"Write the outline for {job['title']}", phase="outline")
