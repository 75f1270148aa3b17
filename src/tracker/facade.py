from typing import Optional, Protocol, List

from ..core.logger import get_logger
from .monitor import RequestMonitor
from .registry import RequestRegistry
from .schema import (
    CreateRequestPayload,
    CreateRequestResponse,
    InitialData,
    RequestSummary,
    is_completed_status,
)
from .selected import SelectedRequestCache

logger = get_logger(__name__)


class RequestApi(Protocol):
    async def get_initial_data(self) -> InitialData: ...

    async def list_requests(self) -> List[RequestSummary]: ...

    async def list_request_statuses(self) -> List[RequestSummary]: ...

    async def create_request(self, payload: CreateRequestPayload) -> CreateRequestResponse: ...


class RequestFacade:
    """Entry point for collaborators: submission, refreshes and selection.

    Unlike polling and streaming, these are caller-issued actions, so upstream
    failures propagate to the caller.
    """

    def __init__(
        self,
        api: RequestApi,
        registry: RequestRegistry,
        monitor: RequestMonitor,
        cache: SelectedRequestCache,
    ):
        self._api = api
        self._registry = registry
        self._monitor = monitor
        self._cache = cache
        cache.on_selection_change(monitor.handle_selection_change)
        monitor.subscribe(self._on_request_finished)

    @property
    def registry(self) -> RequestRegistry:
        return self._registry

    async def load_initial_data(self) -> InitialData:
        data = await self._api.get_initial_data()
        if self._registry.seed(data.request_histories):
            logger.info(f"Seeded {len(data.request_histories)} request histories")
        return data

    async def refresh_statuses(self) -> None:
        try:
            self._registry.replace_all(await self._api.list_request_statuses())
        finally:
            self.restart_polling()

    async def refresh_all(self) -> None:
        try:
            self._registry.replace_all(await self._api.list_requests())
        finally:
            self.restart_polling()

    def restart_polling(self) -> None:
        """(Re)start every pollable request with its backoff reset."""
        displayed_id = self._cache.selected_id
        for request_id in self._registry.ids():
            if request_id == displayed_id:
                continue
            self._monitor.start_monitor(request_id)
            self._monitor.reset_monitor(request_id)
        if displayed_id:
            self._monitor.promote_to_displayed(displayed_id)

    async def submit_request(
        self,
        query_text: str,
        request_history_id: Optional[str] = None,
        ai_model: Optional[str] = None,
    ) -> CreateRequestResponse:
        payload = CreateRequestPayload(
            query_text=query_text,
            request_history_id=request_history_id,
            ai_model=ai_model,
        )
        response = await self._api.create_request(payload)
        self._registry.add_pending(response, query_text)
        logger.info(f"Submitted request {response.request_id}")

        if response.request_id == self._cache.selected_id:
            self._monitor.promote_to_displayed(response.request_id)
        else:
            self._monitor.start_monitor(response.request_id)
        return response

    async def select(self, request_id: str) -> None:
        await self._cache.select(request_id)

    def new_request(self) -> None:
        """Leave the displayed request; it goes back to background polling."""
        self._cache.clear_selection()

    def _on_request_finished(self, summary: RequestSummary) -> None:
        logger.info(f"Request {summary.request_id} finished with status '{summary.status}'")
        # completed + displayed is reconciled by the result stream
        if summary.request_id == self._cache.selected_id and not is_completed_status(summary.status):
            self._cache.schedule_reload(summary.request_id)
