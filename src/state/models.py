from __future__ import annotations

from enum import Enum
from typing import Union

from pydantic import BaseModel, Field


ChatId = Union[int, str]


class AuthResult(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    ALREADY_AUTHORIZED = "already_authorized"


class Session(BaseModel):
    """
    Per-chat authorization state and usage counter.

    Fields
    - chat_id: Telegram chat identifier (unique key).
    - authorized: becomes True once the access code matches; never reset.
    - query_count: number of successful lookups made from this chat.
    """

    chat_id: ChatId
    authorized: bool = False
    query_count: int = Field(default=0, ge=0)


class StatsSnapshot(BaseModel):
    """Read-only view returned by `SessionStore.stats`."""

    total_users: int = Field(..., description="Sessions ever created, authorized or not")
    authorized_users: int
    your_queries: int
    total_lookups: int
