"""
Shared schema building blocks
"""
from datetime import date, datetime, timezone
from typing import Literal
from pydantic import BaseModel, ConfigDict


Role = Literal["leader", "brand", "platform"]
Actor = Literal["leader", "brand", "platform", "system"]


class FrozenModel(BaseModel):
    """Immutable record; updates go through model_copy(update=...)"""

    model_config = ConfigDict(frozen=True)


class Coordinates(FrozenModel):
    latitude: float
    longitude: float


class DateRange(FrozenModel):
    start: date
    end: date


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (e.g. read back from SQLite) as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
