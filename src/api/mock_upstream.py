"""
In-memory stand-in for the upstream request API.

Serves the endpoints the tracker consumes (status, detail, submission and the
SSE result stream) so the service can run without a real backend. Statuses
advance randomly on every status read: pending -> processing -> completed.
"""
import asyncio
import json
import random
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from src.core.config import settings
from src.tracker.schema import (
    CreateRequestPayload,
    CreateRequestResponse,
    InitialData,
    Message,
    RequestDetail,
    RequestHistory,
    RequestStatus,
    RequestStatusResponse,
    RequestSummary,
    User,
)
from src.tracker.registry import build_title_from_query

router = APIRouter(prefix="/mock", tags=["mock-upstream"])

DONE_SENTINEL = settings["stream"]["done_sentinel"]

THINKING_CHUNKS = [
    "Phase 1: Deconstruct the Request\n"
    "・Process 1: Capture the main goals.\n"
    "・Process 2: Note any constraints mentioned.\n\n",
    "Phase 2: Structure the Explanation\n"
    "・Process 3: Provide reasoning steps.\n"
    "・Process 4: Offer a concise summary.\n\n",
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MockUpstream:
    def __init__(self, rng: Optional[random.Random] = None, chunk_delay: float = 0.4):
        self.rng = rng or random.Random()
        self.chunk_delay = chunk_delay
        self.user = User(id="1012835", name_initial="TY", name_full="Taro Yamada")
        self.summaries: Dict[str, RequestSummary] = {}
        self.details: Dict[str, RequestDetail] = {}
        self._counter = 0

    def _promote(self, status: str) -> str:
        if status == RequestStatus.PENDING.value:
            return RequestStatus.PROCESSING.value if self.rng.random() > 0.6 else status
        if status == RequestStatus.PROCESSING.value:
            return RequestStatus.COMPLETED.value if self.rng.random() > 0.7 else status
        return status

    def _final_messages(self, detail: RequestDetail) -> List[Message]:
        return [
            *detail.messages,
            Message(
                role="assistant",
                content="".join(THINKING_CHUNKS).strip(),
                annotations=[
                    {
                        "url": "https://example.com/article",
                        "title": "Example Article",
                        "snippet": "Excerpt from the source",
                    }
                ],
            ),
        ]

    def initial_data(self) -> InitialData:
        return InitialData(
            user=self.user,
            request_histories=[
                RequestHistory(
                    request_history_id=s.request_id,
                    title=s.title,
                    status=s.status,
                    last_updated=s.last_updated,
                )
                for s in self.summaries.values()
            ],
        )

    def create(self, payload: CreateRequestPayload) -> CreateRequestResponse:
        now = _now()
        history_id = payload.request_history_id
        if history_id and history_id in self.summaries:
            request_id = history_id
        else:
            self._counter += 1
            request_id = f"req-{int(datetime.now().timestamp() * 1000)}-{self._counter}"

        existing = self.summaries.get(request_id)
        title = existing.title if existing else build_title_from_query(payload.query_text)
        self.summaries[request_id] = RequestSummary(
            request_id=request_id,
            title=title,
            snippet=payload.query_text,
            status=RequestStatus.PENDING.value,
            last_updated=now,
        )
        detail = self.details.get(request_id)
        messages = list(detail.messages) if detail else []
        messages.append(Message(role="user", content=payload.query_text, timestamp=now))
        self.details[request_id] = RequestDetail(
            request_id=request_id,
            title=title,
            query_text=detail.query_text if detail else payload.query_text,
            status=RequestStatus.PENDING.value,
            last_updated=now,
            ai_model=payload.ai_model,
            messages=messages,
        )
        return CreateRequestResponse(
            request_id=request_id,
            submitted_at=now,
            status_url=f"/requests/{request_id}/status",
            result_url=f"/requests/{request_id}/result",
        )

    def advance(self, request_id: str) -> Optional[RequestSummary]:
        current = self.summaries.get(request_id)
        if current is None:
            return None
        status = self._promote(current.status)
        updated = current.model_copy(update={"status": status, "last_updated": _now()})
        self.summaries[request_id] = updated

        detail = self.details.get(request_id)
        if detail is not None:
            update = {"status": status, "last_updated": updated.last_updated}
            completed_now = (
                status == RequestStatus.COMPLETED.value
                and detail.status != RequestStatus.COMPLETED.value
            )
            if completed_now:
                update["messages"] = self._final_messages(detail)
                update["thinking_process"] = "".join(THINKING_CHUNKS)
            self.details[request_id] = detail.model_copy(update=update)
        return updated


def get_mock(request: Request) -> MockUpstream:
    mock = getattr(request.app.state, "mock_upstream", None)
    if mock is None:
        mock = MockUpstream()
        request.app.state.mock_upstream = mock
    return mock


async def _generate_result_stream(mock: MockUpstream, request_id: str):
    """스트리밍 결과 (SSE): thinking 청크를 줄 단위로 보낸 뒤 [DONE]"""
    for chunk in THINKING_CHUNKS:
        for line in chunk.splitlines(keepends=True):
            yield f"data: {json.dumps({'delta': {'content': line}})}\n\n".encode("utf-8")
            if mock.chunk_delay:
                await asyncio.sleep(mock.chunk_delay)
    yield f"data: {DONE_SENTINEL}\n\n".encode("utf-8")


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/initial-data", response_model=InitialData)
async def initial_data(request: Request):
    return get_mock(request).initial_data()


@router.get("/request", response_model=List[RequestSummary])
async def list_requests(request: Request):
    return list(get_mock(request).summaries.values())


@router.get("/requests/status", response_model=List[RequestSummary])
async def list_request_statuses(request: Request):
    mock = get_mock(request)
    return [mock.advance(request_id) for request_id in list(mock.summaries)]


@router.post("/requests", response_model=CreateRequestResponse)
async def create_request(request: Request, payload: CreateRequestPayload):
    if not payload.query_text.strip():
        raise HTTPException(422, detail="query_text must not be empty.")
    return get_mock(request).create(payload)


@router.get("/requests/{request_id}", response_model=RequestDetail)
async def get_request(request_id: str, request: Request):
    detail = get_mock(request).details.get(request_id)
    if detail is None:
        raise HTTPException(404, detail=f"Request {request_id} not found.")
    return detail


@router.get("/requests/{request_id}/status", response_model=RequestStatusResponse)
async def get_request_status(request_id: str, request: Request):
    updated = get_mock(request).advance(request_id)
    if updated is None:
        # unknown ids read as failed rather than 404 so pollers stop cleanly
        return RequestStatusResponse(
            request_id=request_id,
            status=RequestStatus.FAILED.value,
            last_updated=_now(),
        )
    return RequestStatusResponse(
        request_id=request_id,
        status=updated.status,
        last_updated=updated.last_updated,
    )


@router.get("/requests/{request_id}/result")
async def get_request_result(request_id: str, request: Request):
    mock = get_mock(request)
    if request_id not in mock.summaries:
        raise HTTPException(404, detail=f"Request {request_id} not found.")
    return StreamingResponse(
        _generate_result_stream(mock, request_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-store"},
    )
