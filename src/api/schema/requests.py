from typing import List, Optional
from pydantic import BaseModel

from src.tracker.schema import RequestDetail, RequestSummary, ThinkingProcessState


class SubmitRequest(BaseModel):
    query_text: str
    request_history_id: Optional[str] = None
    ai_model: Optional[str] = None


class MonitorInfo(BaseModel):
    request_id: str
    tracked: bool
    mode: Optional[str] = None          # "background" or "displayed"
    current_interval_ms: Optional[int] = None
    next_delay_ms: Optional[int] = None
    consecutive_errors: int = 0


class RequestListResponse(BaseModel):
    requests: List[RequestSummary]
    monitors: List[MonitorInfo]


class SelectionResponse(BaseModel):
    selected_id: Optional[str] = None
    detail: Optional[RequestDetail] = None
    thinking_process: Optional[ThinkingProcessState] = None
    streaming: bool = False
    is_loading: bool = False
    error: Optional[str] = None
