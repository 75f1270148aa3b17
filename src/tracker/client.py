from typing import Any, List, Optional, Type, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from ..core.config import settings
from ..core.logger import get_logger
from .errors import RequestApiError
from .schema import (
    CreateRequestPayload,
    CreateRequestResponse,
    InitialData,
    RequestDetail,
    RequestStatusResponse,
    RequestSummary,
)
from .timers import AsyncioScheduler
from .transport import SSETransport

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _quote(request_id: str) -> str:
    return quote(request_id, safe="")


class RequestApiClient:
    """Async client for the upstream request API.

    Every failure (transport error, HTTP status >= 400, unexpected body) is
    raised as ``RequestApiError``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[httpx.AsyncClient] = None,
        scheduler: Optional[AsyncioScheduler] = None,
    ):
        upstream = settings["upstream"]
        self._base_url = (base_url or upstream["base_url"]).rstrip("/")
        self._timeout = timeout if timeout is not None else upstream["timeout"]
        self._http = http or httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        self._scheduler = scheduler or AsyncioScheduler()

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------------

    async def get_initial_data(self) -> InitialData:
        return self._parse(InitialData, await self._request("GET", "/initial-data"))

    async def list_requests(self) -> List[RequestSummary]:
        """GET /request: every request of the current user (full refresh)"""
        payload = await self._request("GET", "/request")
        return [self._parse(RequestSummary, item) for item in payload or []]

    async def list_request_statuses(self) -> List[RequestSummary]:
        payload = await self._request("GET", "/requests/status")
        return [self._parse(RequestSummary, item) for item in payload or []]

    async def create_request(self, payload: CreateRequestPayload) -> CreateRequestResponse:
        body = payload.model_dump(exclude_none=True)
        return self._parse(
            CreateRequestResponse, await self._request("POST", "/requests", json=body)
        )

    async def get_request(self, request_id: str) -> RequestDetail:
        return self._parse(
            RequestDetail, await self._request("GET", f"/requests/{_quote(request_id)}")
        )

    async def get_request_status(self, request_id: str) -> RequestStatusResponse:
        return self._parse(
            RequestStatusResponse,
            await self._request("GET", f"/requests/{_quote(request_id)}/status"),
        )

    def result_stream_url(self, request_id: str) -> str:
        return f"{self._base_url}/requests/{_quote(request_id)}/result"

    def open_result_stream(self, request_id: str) -> SSETransport:
        # long-lived connection: keep connect timeout, no read timeout
        return SSETransport(
            self._http,
            self.result_stream_url(request_id),
            scheduler=self._scheduler,
            timeout=httpx.Timeout(self._timeout, read=None),
        )

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RequestApiError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise RequestApiError(
                f"{method} {path}: {self._extract_error_message(response)}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )

        try:
            return response.json()
        except ValueError as e:
            raise RequestApiError(
                f"{method} {path}: invalid JSON body",
                status_code=response.status_code,
                retryable=False,
            ) from e

    @staticmethod
    def _parse(model: Type[ModelT], payload: Any) -> ModelT:
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            logger.debug(f"Unexpected {model.__name__} payload: {payload!r}")
            raise RequestApiError(
                f"unexpected {model.__name__} payload: {e.error_count()} validation error(s)",
                retryable=False,
            ) from e

    @staticmethod
    def _extract_error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("message") or body)
        return str(body)
