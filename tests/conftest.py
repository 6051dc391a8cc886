"""
Shared fixtures: in-memory SQLite database with the poll schema, and the
audit log redirected to a temp directory.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nphies_poll.config import settings
from nphies_poll.models import Base


@pytest.fixture(autouse=True)
def _audit_log_to_tmp(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "audit_log_path", str(tmp_path / "poll_audit.log"))
    monkeypatch.setattr(settings, "nphies_provider_id", None)


@pytest.fixture
def engine():
    """One shared SQLite connection so every session sees the same data"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    maker = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def factory(schema_name=None):
        return maker()

    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory("public")
    yield session
    session.close()
