"""Pytest configuration and shared fixtures."""
import random
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.db import models  # noqa: F401  (registers tables)
from app.db.database import Base
from app.db.models import GradeSubject, KnowledgePoint
from tests.fakes import GRADE_ID, SUBJECT_ID, FakeVectorIndex


@pytest.fixture
async def db_engine():
    """In-memory SQLite engine shared across sessions of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a test database session."""
    factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with factory() as session:
        yield session


@pytest.fixture
async def curriculum(db_session):
    """Grade 3 math with three active knowledge points and one inactive one."""
    pairing = GradeSubject(
        grade_id=GRADE_ID, subject_id=SUBJECT_ID, description="Addition within 100 only."
    )
    db_session.add(pairing)
    await db_session.flush()
    kps = [
        KnowledgePoint(grade_subject_id=pairing.id, name_en="Addition", name_cn="加法", sort_order=1),
        KnowledgePoint(grade_subject_id=pairing.id, name_en="Subtraction", name_cn="减法", sort_order=2),
        KnowledgePoint(grade_subject_id=pairing.id, name_en="Word problems", name_cn="应用题", sort_order=None),
        KnowledgePoint(grade_subject_id=pairing.id, name_en="Retired", is_active=False, sort_order=0),
    ]
    db_session.add_all(kps)
    await db_session.commit()
    return {"pairing": pairing, "knowledge_points": kps[:3], "inactive": kps[3]}


@pytest.fixture
def fake_index():
    """Fresh in-memory vector index."""
    return FakeVectorIndex()


@pytest.fixture
def mock_llm():
    """LLM client whose completions are set per test."""
    llm = MagicMock()
    llm.complete_json = AsyncMock()
    return llm


@pytest.fixture
def rng():
    return random.Random(1234)
