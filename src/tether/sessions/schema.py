from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from common.ids import generate_id, utc_now

SCHEMA_VERSION = 1

# Earlier builds wrote dates as seconds since this reference instant.
LEGACY_REFERENCE_DATE = datetime(2001, 1, 1, tzinfo=timezone.utc)

DATE_FORMAT_ISO8601 = "iso8601"
DATE_FORMAT_LEGACY_NUMERIC = "legacy-numeric"


def decode_timestamp(value: Any, info: ValidationInfo) -> Any:
    if value is None or isinstance(value, datetime):
        return value
    date_format = (info.context or {}).get("date_format", DATE_FORMAT_ISO8601)
    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
    if date_format == DATE_FORMAT_LEGACY_NUMERIC:
        if not is_number:
            raise ValueError("expected a numeric timestamp")
        return LEGACY_REFERENCE_DATE + timedelta(seconds=float(value))
    if not isinstance(value, str):
        raise ValueError("expected an ISO-8601 timestamp string")
    return value


# Offset-less ISO strings are read as UTC.
def assume_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    ERROR = "error"


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=generate_id)
    role: Role
    content: str
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")

    @field_validator("created_at", mode="before")
    @classmethod
    def _decode_dates(cls, value: Any, info: ValidationInfo) -> Any:
        return decode_timestamp(value, info)

    @field_validator("created_at", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return assume_utc(value)

    def as_api_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ProfileSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    profile_name: str = Field(alias="profileName")
    system_prompt: str = Field(alias="systemPromptSnapshot")


class ChatSession(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=generate_id)
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    last_activity_at: datetime | None = Field(default=None, alias="lastActivityAt")
    profile_snapshot: ProfileSnapshot = Field(alias="profileSnapshot")
    messages: list[ChatMessage] = Field(default_factory=list)
    title: str | None = None
    title_generated_at: datetime | None = Field(default=None, alias="titleGeneratedAt")

    @field_validator("created_at", "last_activity_at", "title_generated_at", mode="before")
    @classmethod
    def _decode_dates(cls, value: Any, info: ValidationInfo) -> Any:
        return decode_timestamp(value, info)

    @field_validator("created_at", "last_activity_at", "title_generated_at", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return assume_utc(value)

    def model_post_init(self, __context: Any) -> None:
        if self.last_activity_at is None:
            self.last_activity_at = self.created_at

    def has_assistant_reply(self) -> bool:
        return any(m.role == Role.ASSISTANT for m in self.messages)

    def first_message(self, role: Role) -> ChatMessage | None:
        return next((m for m in self.messages if m.role == role), None)

    def api_messages(self) -> list[ChatMessage]:
        return [m for m in self.messages if m.role != Role.ERROR]


class PersistedState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=SCHEMA_VERSION, alias="schemaVersion")
    active_session_id: str | None = Field(default=None, alias="activeSessionID")
    sessions: list[ChatSession] = Field(default_factory=list)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
