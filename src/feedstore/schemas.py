from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from pydantic import AnyUrl, BaseModel, ConfigDict, Field, field_validator

from .errors import FeedStoreError

# Stored timestamps are seconds relative to this instant, not the UNIX epoch.
REFERENCE_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_reference_seconds(value: datetime) -> float:
    return (_normalize_datetime(value) - REFERENCE_EPOCH).total_seconds()


def from_reference_seconds(seconds: float) -> datetime:
    return REFERENCE_EPOCH + timedelta(seconds=seconds)


class DTOBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class FeedImageRecord(DTOBase):
    id: UUID
    description: str | None = None
    location: str | None = None
    url: AnyUrl


class CacheSnapshot(DTOBase):
    items: list[FeedImageRecord] = Field(default_factory=list)
    timestamp: datetime = Field(strict=True)

    @field_validator("timestamp", mode="after")
    @classmethod
    def validate_timestamp(cls, value: datetime) -> datetime:
        return _normalize_datetime(value)


@dataclass(slots=True, frozen=True)
class EmptyCache:
    pass


@dataclass(slots=True, frozen=True)
class FoundCache:
    items: list[FeedImageRecord]
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class RetrievalFailure:
    error: FeedStoreError


RetrieveResult = EmptyCache | FoundCache | RetrievalFailure
