"""SQLModel table holding serialized local state under a namespace."""

from __future__ import annotations

from datetime import datetime

from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


class LocalRecord(SQLModel, table=True):
    namespace: str = Field(primary_key=True)
    payload: str
    updated_at: datetime = Field(default_factory=utc_now)


__all__ = ["LocalRecord"]
