"""Pydantic models for canonical chat records and the entities derived from them.

These are shared between the ingestion pipeline, the DB layer and API
responses. ChatRecord keeps the snake_case field names of the standard
upload format; the derived entities serialize with camelCase aliases.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from chatkpi.ingestion.timestamps import ensure_utc


class Role(StrEnum):
    """Author of a chat message."""

    AI = "ai"
    TENANT = "tenant"


class UploadStatus(StrEnum):
    """Upload lifecycle: PROCESSING moves exactly once to a terminal state."""

    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not UploadStatus.PROCESSING


class ChatRecord(BaseModel):
    """One message/turn of a conversation in canonical form."""

    conversation_id: str
    tenant_id: str
    timestamp: datetime
    role: Role
    message: str
    response_time_ms: float | None = None
    resolved: bool | None = None  # tri-state: None means unknown
    satisfaction_score: float | None = None
    client_id: str | None = None
    upload_id: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Conversation(_CamelModel):
    """Aggregate over all records of one conversation id from a single upload."""

    conversation_id: str
    tenant_id: str
    start_time: datetime
    end_time: datetime
    message_count: int
    resolved: bool
    satisfaction_score: float | None = None
    duration: int  # seconds
    client_id: str | None = None
    upload_id: str | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _times_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class UploadRecord(_CamelModel):
    """Audit entry for one ingestion batch."""

    id: str
    filename: str
    file_size: int
    records_count: int = 0
    uploaded_at: datetime
    status: UploadStatus = UploadStatus.PROCESSING
    error_message: str | None = None
    client_id: str
    warnings: list[str] | None = None


class Client(_CamelModel):
    """A client whose uploads are tagged with its id."""

    id: str
    name: str
    description: str | None = None
    color: str | None = None
    created_at: datetime
