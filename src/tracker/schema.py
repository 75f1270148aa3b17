from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({RequestStatus.PENDING.value, RequestStatus.PROCESSING.value})
TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED.value, RequestStatus.FAILED.value})


def normalize_status(status: Any) -> str:
    if isinstance(status, RequestStatus):
        return status.value
    if not isinstance(status, str):
        return ""
    return status.strip().lower()


def is_active_status(status: Any) -> bool:
    """pending/processing, matched case-insensitively"""
    return normalize_status(status) in ACTIVE_STATUSES


def is_completed_status(status: Any) -> bool:
    return normalize_status(status) == RequestStatus.COMPLETED.value


# ============================================================================
# Registry / detail models
# ============================================================================

class RequestSummary(BaseModel):
    request_id: str
    title: str = ""
    snippet: str = ""
    status: str
    last_updated: str


class Annotation(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = ""
    url: str = ""
    snippet: str = ""


class Message(BaseModel):
    role: Literal["user", "assistant", "reasoning"]
    content: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)
    annotations: Optional[List[Annotation]] = None
    # reasoning messages folded under the assistant message they precede
    reasoning: List["Message"] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


class RequestDetail(BaseModel):
    request_id: str
    title: str = ""
    query_text: str = ""
    status: str
    last_updated: str
    ai_model: Optional[str] = None
    status_detail: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    thinking_process: Optional[str] = None

    @field_validator("messages", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return [] if value is None else value


class ThinkingPhase(BaseModel):
    title: str
    steps: List[str] = Field(default_factory=list)


class ThinkingProcessState(BaseModel):
    request_id: str
    raw: str = ""
    phases: List[ThinkingPhase] = Field(default_factory=list)
    is_streaming: bool = False


# ============================================================================
# Upstream wire models
# ============================================================================

class RequestStatusResponse(BaseModel):
    request_id: str
    status: str
    last_updated: Optional[str] = None
    updated_at: Optional[str] = None


class CreateRequestPayload(BaseModel):
    query_text: str
    request_history_id: Optional[str] = None
    ai_model: Optional[str] = None


class CreateRequestResponse(BaseModel):
    request_id: str
    submitted_at: Optional[str] = None
    status_url: Optional[str] = None
    result_url: Optional[str] = None


class RequestHistory(BaseModel):
    request_history_id: str
    title: str = ""
    status: str
    last_updated: str


class User(BaseModel):
    id: str
    name_initial: Optional[str] = None
    name_full: Optional[str] = None
    is_admin: bool = False
    is_support: bool = False


class InitialData(BaseModel):
    user: Optional[User] = None
    request_histories: List[RequestHistory] = Field(default_factory=list)


Message.model_rebuild()
