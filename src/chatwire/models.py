"""Pydantic models for session resource API responses."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    session_id: str | None = None
    title: str | None = None
    agent_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class StoredMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    role: str | None = None
    content: str = ""
    timestamp: str | None = None
    feedback: list[Any] = Field(default_factory=list)

    @field_validator("id", "role", "timestamp", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("content", mode="before")
    @classmethod
    def _content_or_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("feedback", mode="before")
    @classmethod
    def _feedback_list(cls, value: Any) -> list[Any]:
        return value if isinstance(value, list) else []


class MessagePage(BaseModel):
    count: int | None = None
    next: str | None = None
    previous: str | None = None
    results: list[StoredMessage] = Field(default_factory=list)
