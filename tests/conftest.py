from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import marketplace_chat.db.session as db_session
from marketplace_chat.core.security import create_access_token
from marketplace_chat.main import app
from marketplace_chat.models import Profile


@pytest.fixture()
def database(tmp_path):
    database_path = tmp_path / "test.db"
    db_session.configure_engine(f"sqlite:///{database_path}")
    db_session.init_db()
    yield
    if db_session.engine is not None:
        db_session.engine.dispose()


@pytest.fixture()
def db(database):
    session = db_session.open_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(database):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def make_profile(database):
    def _make(user_id: str, full_name: str | None = None) -> str:
        with db_session.open_session() as session:
            session.add(Profile(id=user_id, full_name=full_name))
            session.commit()
        return user_id

    return _make


@pytest.fixture()
def auth_headers():
    def _headers(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(subject=user_id)}"}

    return _headers
