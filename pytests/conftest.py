from __future__ import annotations

from typing import Generator

import pytest
from sqlalchemy.orm import Session

from app import create_app
from pytests.common import create_empty_sqlite_db, patch_app_db
from settings import SETTINGS


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Keep tests away from real Sudreg credentials and startup schema creation."""

    monkeypatch.setenv("INIT_DB_ON_STARTUP", "0")
    monkeypatch.setitem(SETTINGS, "SUDREG_CLIENT_ID", "")
    monkeypatch.setitem(SETTINGS, "SUDREG_CLIENT_SECRET", "")


@pytest.fixture()
def db_session(tmp_path, monkeypatch) -> Generator[Session, None, None]:
    """A session on a fresh temp SQLite DB that the app/jobs also use."""

    session, engine = create_empty_sqlite_db(tmp_path / "registry.sqlite")
    patch_app_db(monkeypatch, engine)
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def client(db_session):
    app = create_app()
    app.config.update(TESTING=True)
    with app.test_client() as c:
        yield c
