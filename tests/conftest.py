import os

# Must be set before database.database is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"

from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.database import Base
from database import models
from generation.errors import GenerationError
from generation.key_pool import ApiKeyPool
from generation.providers import ProviderResponse, ProviderStatus


# ─── Database ──────────────────────────────────────────────────────────────────

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def course(db):
    """GATE / Mathematics with three weighted topics and one zero-weight topic."""
    exam = models.Exam(name="GATE")
    course = models.Course(name="Mathematics", exam=exam)
    course.topics = [
        models.Topic(name="Calculus", weightage=0.5, notes="Limits and derivatives"),
        models.Topic(name="Algebra", weightage=0.3),
        models.Topic(name="Probability", weightage=0.2),
        models.Topic(name="History of Mathematics", weightage=0.0),
    ]
    db.add(exam)
    db.commit()
    db.refresh(course)
    return course


# ─── Fake completion side ──────────────────────────────────────────────────────

class ScriptedProvider:
    """Provider returning queued ProviderResponses (or raising queued exceptions)."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: List[dict] = []

    async def complete(self, *, prompt, api_key, image_base64=None, temperature=0.1, max_tokens=4000):
        self.calls.append({"prompt": prompt, "api_key": api_key, "image_base64": image_base64})
        if not self.responses:
            return ProviderResponse(status=ProviderStatus.SERVER_ERROR, detail="script exhausted", http_status=500)
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeClient:
    """
    Stand-in for CompletionClient: returns queued strings in order, raises
    queued exceptions, and records every prompt.
    """

    def __init__(self, replies=None, keys=("key-1",)):
        self.replies = list(replies or [])
        self.prompts: List[str] = []
        self.images: List[Optional[str]] = []
        self.pool = ApiKeyPool(keys) if keys else ApiKeyPool()

    async def complete(self, prompt, image_base64=None, temperature=0.1, max_tokens=4000):
        self.prompts.append(prompt)
        self.images.append(image_base64)
        if not self.replies:
            raise GenerationError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply


@pytest.fixture
def fake_client():
    return FakeClient


def ok(text):
    return ProviderResponse(status=ProviderStatus.SUCCESS, text=text, http_status=200)


@pytest.fixture
def no_sleep():
    waits: List[float] = []

    async def sleep(seconds):
        waits.append(seconds)

    sleep.waits = waits
    return sleep
