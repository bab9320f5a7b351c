# backend/tests/conftest.py
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from tenantlink.core.config import settings
from tenantlink.db.base import Base
from tenantlink.db.session import build_engine, get_db
from tenantlink.main import app
from tenantlink.models import Property


@pytest.fixture()
def engine(tmp_path):
    # File-backed so concurrent sessions really contend for the same database lock.
    eng = build_engine(f"sqlite:///{tmp_path / 'tenantlink-test.db'}", timeout_seconds=10)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@pytest.fixture()
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def client(session_factory):
    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def make_property(db) -> Callable[..., Property]:
    def _make(owner_id: str = "owner-1", name: str = "Maple Court") -> Property:
        prop = Property(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            address="12 Maple St",
            city="Springfield",
            state="IL",
            zip="62701",
            unit="4B",
        )
        db.add(prop)
        db.commit()
        db.refresh(prop)
        return prop

    return _make


def mint_access_token(sub: str, email: Optional[str] = None, *, token_type: str = "access") -> str:
    payload: Dict[str, object] = {
        "sub": sub,
        "type": token_type,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


@pytest.fixture()
def auth_headers() -> Callable[..., Dict[str, str]]:
    def _headers(sub: str, email: Optional[str] = None, *, token_type: str = "access") -> Dict[str, str]:
        return {"Authorization": f"Bearer {mint_access_token(sub, email, token_type=token_type)}"}

    return _headers


@pytest.fixture(autouse=True)
def _generous_rate_limits(monkeypatch):
    # Individual tests tighten these when they exercise throttling.
    monkeypatch.setattr(settings, "validate_rate_limit", 10_000)
    monkeypatch.setattr(settings, "accept_rate_limit", 10_000)
    monkeypatch.setattr(settings, "validate_min_latency_ms", 0)
