"""Domain models for the chat session."""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    """Timestamp-prefixed id, stable enough for list rendering."""
    return f"{time.time_ns()}-{uuid4().hex[:8]}"


class ModelStatus(str, Enum):
    """Lifecycle state of the on-device model."""

    NOT_SETUP = "not_setup"
    DOWNLOADING = "downloading"
    PREPARING = "preparing"
    READY = "ready"


class ModelLoadingState(str, Enum):
    """Coarse loading indicator derived from ModelStatus."""

    IDLE = "idle"
    DOWNLOADING = "downloading"
    PREPARING = "preparing"

    @classmethod
    def from_status(cls, status: ModelStatus) -> "ModelLoadingState":
        if status == ModelStatus.DOWNLOADING:
            return cls.DOWNLOADING
        if status == ModelStatus.PREPARING:
            return cls.PREPARING
        return cls.IDLE


class ChatTurn(BaseModel):
    """A role/content pair sent to the generation capability."""

    role: Literal["user", "assistant"]
    content: str


class Message(BaseModel):
    """One conversational turn.

    Persisted with camelCase keys (``isUser``, ``includeInContext``);
    ``remain_tokens`` is a display annotation and is never persisted.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=new_message_id)
    text: str = ""
    is_user: bool
    timestamp: datetime = Field(default_factory=_utcnow)
    include_in_context: bool = True
    remain_tokens: Optional[int] = None

    @field_validator("include_in_context", mode="before")
    @classmethod
    def _default_include(cls, value):
        # Records written before pruning existed carry no flag
        return True if value is None else value

    @classmethod
    def create(cls, text: str, is_user: bool) -> "Message":
        return cls(text=text, is_user=is_user)

    @property
    def role(self) -> str:
        return "user" if self.is_user else "assistant"

    def to_turn(self) -> ChatTurn:
        return ChatTurn(role=self.role, content=self.text)

    def to_record(self) -> dict:
        """Serialize to the persisted shape."""
        return self.model_dump(mode="json", by_alias=True, exclude={"remain_tokens"})


class ModelInfo(BaseModel):
    """Catalog entry for a downloadable model."""

    id: str
    name: str
    size: str


class Alert(BaseModel):
    """User-facing notification raised by a failed setup or check."""

    title: str
    message: str
    level: Literal["error", "warning", "info"] = "error"
    created_at: datetime = Field(default_factory=_utcnow)


class SessionSnapshot(BaseModel):
    """Read model consumed by the presentation surface."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: Optional[str] = None
    model_status: ModelStatus
    model_loading_state: ModelLoadingState
    download_progress: float
    selected_model_id: Optional[str] = None
    is_loading: bool
    use_context_history: bool
    conversation_summary: Optional[str] = None
    total_token: int
    remain_tokens: Optional[int] = None
    message_count: int
    alerts: List[Alert] = []
