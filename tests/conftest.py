import os

# Settings are read at import time; point them at throwaway backends
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")

from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from popup_engine.db import models
from popup_engine.db.database import Base
from popup_engine.dependencies import get_cache, get_code_store, get_db
from popup_engine.main import app
from popup_engine.schemas.common import DateRange
from popup_engine.schemas.settlement import AgreedTerms
from popup_engine.services.cache_service import CodeStore, MemoryCache
from popup_engine.services.cancellation_service import cancellation_service

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

POPUP_LAT = 37.5665
POPUP_LON = 126.9780


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def code_store(memory_cache):
    return CodeStore(memory_cache)


@pytest.fixture
def popup(db):
    row = models.Popup(
        id="popup-1",
        brand_name="Gentle Monster",
        latitude=POPUP_LAT,
        longitude=POPUP_LON,
        status="confirmed",
        event_date=date(2026, 10, 1)
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def client(engine, memory_cache, code_store):
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_cache] = lambda: memory_cache
    app.dependency_overrides[get_code_store] = lambda: code_store
    yield TestClient(app)
    app.dependency_overrides.clear()


def offset_north(meters: float) -> float:
    """Latitude of a point `meters` north of the test popup"""
    return POPUP_LAT + meters / 111195.0


def in_days(days: int) -> datetime:
    return NOW + timedelta(days=days)


def make_terms(base_fee=200000, commission_rate=0.10, performance_bonus=None, ticket_price=None):
    return AgreedTerms(
        base_fee=base_fee,
        commission_rate=commission_rate,
        performance_bonus=performance_bonus,
        popup_dates=DateRange(start=date(2026, 11, 20), end=date(2026, 11, 22)),
        cancellation_policy=cancellation_service.generate_policy("popup-1", NOW),
        ticket_price=ticket_price
    )
