import os
from datetime import datetime, timedelta

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from refinery.db import DB
from refinery.models import Agent, Base, MemoryEntry, MemoryKind


@pytest.fixture
def server_db(tmp_path):
    db_path = tmp_path / "refinery.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    try:
        yield DB
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    db = server_db.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_agent(server_db):
    def _make_agent(name="Kee", account_id=1, refinement_threshold=None):
        db = server_db.SessionLocal()
        try:
            agent = Agent(
                name=name,
                account_id=account_id,
                refinement_threshold=refinement_threshold,
            )
            db.add(agent)
            db.commit()
            return agent.id
        finally:
            db.close()

    return _make_agent


@pytest.fixture
def add_memory(server_db):
    """Insert a memory directly, returning its id. ``age_days`` backdates it."""

    def _add_memory(agent_id, content, kind=MemoryKind.core, constitutional=False, age_days=0):
        db = server_db.SessionLocal()
        try:
            memory = MemoryEntry(
                agent_id=agent_id,
                content=content,
                kind=kind,
                constitutional=constitutional,
                created_at=datetime.utcnow() - timedelta(days=age_days),
            )
            db.add(memory)
            db.commit()
            return memory.id
        finally:
            db.close()

    return _add_memory
