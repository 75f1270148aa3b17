import asyncio
from typing import Callable, Optional, Protocol

import httpx

from ..core.logger import get_logger
from .errors import StreamTransportError
from .timers import AsyncioScheduler

logger = get_logger(__name__)

MessageHandler = Callable[[str], None]
ErrorHandler = Callable[[Optional[BaseException]], None]


class StreamTransport(Protocol):
    """Push channel delivering discrete text events for one request."""

    @property
    def closed(self) -> bool: ...

    def open(self, on_message: MessageHandler, on_error: ErrorHandler) -> None: ...

    def close(self) -> None: ...


class SSETransport:
    """Server-Sent Events reader on top of an ``httpx.AsyncClient`` stream.

    Each event's ``data:`` lines are joined with newlines and handed to
    ``on_message``. When the connection ends, for whatever reason, the
    transport marks itself closed and reports through ``on_error``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        scheduler: Optional[AsyncioScheduler] = None,
        timeout: Optional[httpx.Timeout] = None,
    ):
        self._client = client
        self._url = url
        self._timeout = timeout
        self._scheduler = scheduler or AsyncioScheduler()
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._on_message: Optional[MessageHandler] = None
        self._on_error: Optional[ErrorHandler] = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self, on_message: MessageHandler, on_error: ErrorHandler) -> None:
        if self._task is not None or self._closed:
            return
        self._on_message = on_message
        self._on_error = on_error
        self._task = self._scheduler.spawn(self._run())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_message = None
        self._on_error = None
        task = self._task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()

    async def _run(self) -> None:
        error: Optional[BaseException] = None
        kwargs = {} if self._timeout is None else {"timeout": self._timeout}
        try:
            async with self._client.stream(
                "GET",
                self._url,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                **kwargs,
            ) as response:
                if response.status_code >= 400:
                    raise StreamTransportError(
                        f"result stream answered {response.status_code} for {self._url}"
                    )
                await self._consume(response)
        except asyncio.CancelledError:
            raise
        except (httpx.HTTPError, StreamTransportError) as e:
            logger.warning(f"Result stream failed: {self._url} ({e})")
            error = e
        except Exception as e:
            # a failing message handler still ends the stream through on_error
            logger.exception(f"Result stream reader crashed: {self._url}")
            error = e

        if self._closed:
            return
        self._closed = True
        handler = self._on_error
        if handler is not None:
            handler(error or StreamTransportError(f"result stream closed: {self._url}"))

    async def _consume(self, response: httpx.Response) -> None:
        data_lines = []
        async for line in response.aiter_lines():
            if self._closed:
                return
            if line == "":
                if data_lines:
                    self._dispatch("\n".join(data_lines))
                    data_lines = []
                continue
            # comment / keep-alive
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "data":
                data_lines.append(value)

        if data_lines and not self._closed:
            self._dispatch("\n".join(data_lines))

    def _dispatch(self, data: str) -> None:
        handler = self._on_message
        if handler is not None:
            handler(data)
