from fastapi import APIRouter, HTTPException, Request

from src.tracker.context import TrackerContext
from src.tracker.errors import RequestApiError
from src.api.schema.requests import (
    MonitorInfo,
    RequestListResponse,
    SelectionResponse,
    SubmitRequest,
)
from src.tracker.schema import CreateRequestResponse
from src.core.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["requests"])


# ============================================================================
# Helper Functions
# ============================================================================

def get_tracker(request: Request) -> TrackerContext:
    tracker = getattr(request.app.state, "tracker", None)
    if tracker is None:
        raise HTTPException(500, detail="Tracker context is not initialized.")
    return tracker


def monitor_info(tracker: TrackerContext, request_id: str) -> MonitorInfo:
    entry = tracker.monitor.entry(request_id)
    if entry is None:
        return MonitorInfo(request_id=request_id, tracked=False)
    return MonitorInfo(
        request_id=request_id,
        tracked=True,
        mode=entry.mode.value,
        current_interval_ms=entry.current_interval,
        next_delay_ms=entry.next_delay,
        consecutive_errors=entry.consecutive_errors,
    )


def request_list(tracker: TrackerContext) -> RequestListResponse:
    return RequestListResponse(
        requests=tracker.registry.all(),
        monitors=[monitor_info(tracker, rid) for rid in tracker.monitor.tracked_ids()],
    )


def selection_state(tracker: TrackerContext) -> SelectionResponse:
    cache = tracker.cache
    return SelectionResponse(
        selected_id=cache.selected_id,
        detail=cache.detail,
        thinking_process=cache.thinking_process,
        streaming=bool(cache.selected_id) and tracker.aggregator.is_streaming(cache.selected_id),
        is_loading=cache.is_loading,
        error=str(cache.error) if cache.error else None,
    )


def upstream_error(e: RequestApiError) -> HTTPException:
    logger.warning(f"Upstream call failed: {e}")
    return HTTPException(502, detail=f"Upstream request API error: {e.message}")


# ============================================================================
# Registry / Monitor Endpoints
# ============================================================================

@router.get("/requests", response_model=RequestListResponse)
async def list_requests(request: Request):
    return request_list(get_tracker(request))


@router.post("/requests", response_model=CreateRequestResponse)
async def submit_request(request: Request, payload: SubmitRequest):
    if not payload.query_text.strip():
        raise HTTPException(422, detail="query_text must not be empty.")

    tracker = get_tracker(request)
    try:
        return await tracker.facade.submit_request(
            payload.query_text,
            payload.request_history_id,
            payload.ai_model,
        )
    except RequestApiError as e:
        raise upstream_error(e)


@router.post("/requests/refresh", response_model=RequestListResponse)
async def refresh_requests(request: Request, full: bool = False):
    """Replace the registry from upstream and restart polling with backoff reset"""
    tracker = get_tracker(request)
    try:
        if full:
            await tracker.facade.refresh_all()
        else:
            await tracker.facade.refresh_statuses()
    except RequestApiError as e:
        raise upstream_error(e)
    return request_list(tracker)


@router.post("/requests/{request_id}/monitor", response_model=MonitorInfo)
async def start_monitor(request_id: str, request: Request):
    tracker = get_tracker(request)
    if request_id not in tracker.registry:
        raise HTTPException(404, detail=f"Request {request_id} not found.")
    tracker.monitor.start_monitor(request_id)
    return monitor_info(tracker, request_id)


@router.post("/requests/{request_id}/monitor/reset", response_model=MonitorInfo)
async def reset_monitor(request_id: str, request: Request):
    tracker = get_tracker(request)
    if request_id not in tracker.registry:
        raise HTTPException(404, detail=f"Request {request_id} not found.")
    tracker.monitor.reset_monitor(request_id)
    return monitor_info(tracker, request_id)


# ============================================================================
# Selection Endpoints
# ============================================================================

@router.get("/selection", response_model=SelectionResponse)
async def get_selection(request: Request):
    return selection_state(get_tracker(request))


@router.put("/selection/{request_id}", response_model=SelectionResponse)
async def select_request(request_id: str, request: Request):
    tracker = get_tracker(request)
    await tracker.facade.select(request_id)
    return selection_state(tracker)


@router.delete("/selection", response_model=SelectionResponse)
async def clear_selection(request: Request):
    tracker = get_tracker(request)
    tracker.facade.new_request()
    return selection_state(tracker)
