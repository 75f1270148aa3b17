from typing import Dict, Iterable, List, Optional

from .observable import Observable
from .schema import (
    CreateRequestResponse,
    RequestHistory,
    RequestStatus,
    RequestStatusResponse,
    RequestSummary,
    utc_now_iso,
)

NEW_REQUEST_TITLE = "New Request"
TITLE_MAX_LENGTH = 48


def build_title_from_query(query_text: Optional[str]) -> str:
    trimmed = (query_text or "").strip()
    if not trimmed:
        return NEW_REQUEST_TITLE
    return trimmed[:TITLE_MAX_LENGTH]


class RequestRegistry(Observable[Dict[str, RequestSummary]]):
    """In-memory map of request id -> RequestSummary.

    Every mutation swaps in a new dict (snapshot-and-replace) and notifies
    subscribers with it; callers never see a half-applied update.
    """

    def __init__(self, summaries: Iterable[RequestSummary] = ()):
        super().__init__()
        self._requests: Dict[str, RequestSummary] = {s.request_id: s for s in summaries}

    def get(self, request_id: str) -> Optional[RequestSummary]:
        return self._requests.get(request_id)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._requests

    def __len__(self) -> int:
        return len(self._requests)

    def all(self) -> List[RequestSummary]:
        return list(self._requests.values())

    def snapshot(self) -> Dict[str, RequestSummary]:
        return dict(self._requests)

    def ids(self) -> List[str]:
        return list(self._requests.keys())

    def replace_all(self, summaries: Iterable[RequestSummary]) -> None:
        """Full refresh: the only path that removes entries."""
        self._set({s.request_id: s for s in summaries})

    def seed(self, histories: Iterable[RequestHistory]) -> bool:
        """Add request histories that are not known yet. Returns True if anything changed."""
        current = dict(self._requests)
        changed = False
        for history in histories:
            if history.request_history_id in current:
                continue
            current[history.request_history_id] = RequestSummary(
                request_id=history.request_history_id,
                title=history.title,
                snippet="",
                status=history.status,
                last_updated=history.last_updated,
            )
            changed = True
        if changed:
            self._set(current)
        return changed

    def upsert(self, summary: RequestSummary) -> None:
        current = dict(self._requests)
        current[summary.request_id] = summary
        self._set(current)

    def add_pending(self, response: CreateRequestResponse, query_text: str) -> Optional[RequestSummary]:
        """Optimistic entry for a freshly submitted request."""
        if not response.request_id:
            return None
        existing = self._requests.get(response.request_id)
        summary = RequestSummary(
            request_id=response.request_id,
            title=existing.title if existing and existing.title else build_title_from_query(query_text),
            snippet=query_text,
            status=RequestStatus.PENDING.value,
            last_updated=response.submitted_at or utc_now_iso(),
        )
        self.upsert(summary)
        return summary

    def apply_status(self, request_id: str, payload: RequestStatusResponse) -> RequestSummary:
        existing = self._requests.get(request_id)
        summary = RequestSummary(
            request_id=request_id,
            title=existing.title if existing else "",
            snippet=existing.snippet if existing else "",
            status=payload.status,
            last_updated=payload.last_updated or payload.updated_at or utc_now_iso(),
        )
        self.upsert(summary)
        return summary

    def _set(self, requests: Dict[str, RequestSummary]) -> None:
        self._requests = requests
        self._notify(self.snapshot())
