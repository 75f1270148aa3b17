import asyncio
from typing import Callable, Dict, List, NamedTuple, Optional, Protocol

from ..core.logger import get_logger
from .aggregator import StreamAggregator, StreamState, StreamUpdate
from .observable import Observable
from .schema import Message, RequestDetail, ThinkingProcessState
from .thinking import build_thinking_state
from .timers import AsyncioScheduler

logger = get_logger(__name__)

SelectionListener = Callable[[Optional[str], Optional[str]], None]


class SelectionChange(NamedTuple):
    previous_id: Optional[str]
    current_id: Optional[str]


class DetailSource(Protocol):
    async def get_request(self, request_id: str) -> RequestDetail: ...


def normalize_messages(messages: List[Message]) -> List[Message]:
    """Fold reasoning messages into the ``reasoning`` children of the next assistant message.

    Reasoning that no assistant message follows stays in place as standalone
    reasoning messages.
    """
    normalized: List[Message] = []
    pending: List[Message] = []
    for message in messages:
        if message.role == "reasoning":
            pending.append(message)
            continue
        if message.role == "assistant" and pending:
            message = message.model_copy(update={"reasoning": [*message.reasoning, *pending]})
            pending = []
        normalized.append(message)
    normalized.extend(pending)
    return normalized


class SelectedRequestCache(Observable[Optional[RequestDetail]]):
    """Detail of the single request currently displayed.

    The cached ``RequestDetail`` is replaced wholesale on selection and on
    every reload, and grown incrementally from the stream aggregator while a
    result stream for the displayed id is open. Subscribers receive the new
    detail (or ``None``) after every change; selection listeners receive
    ``(previous_id, current_id)``.
    """

    def __init__(
        self,
        api: DetailSource,
        aggregator: StreamAggregator,
        scheduler: Optional[AsyncioScheduler] = None,
    ):
        super().__init__()
        self._api = api
        self._aggregator = aggregator
        self._scheduler = scheduler or AsyncioScheduler()

        self._selected_id: Optional[str] = None
        self._detail: Optional[RequestDetail] = None
        self._is_loading = False
        self._error: Optional[BaseException] = None
        self._selected_message_index: Optional[int] = None
        self._thinking: Dict[str, ThinkingProcessState] = {}
        self._selection_changes: Observable[SelectionChange] = Observable()
        self._load_token = 0

        aggregator.subscribe(self._apply_stream_update)
        aggregator.set_reload_handler(self.schedule_reload)

    # ------------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------------

    @property
    def selected_id(self) -> Optional[str]:
        return self._selected_id

    @property
    def detail(self) -> Optional[RequestDetail]:
        return self._detail

    @property
    def has_detail(self) -> bool:
        return self._detail is not None

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def selected_message_index(self) -> Optional[int]:
        return self._selected_message_index

    @property
    def thinking_process(self) -> Optional[ThinkingProcessState]:
        if not self._selected_id:
            return None
        return self._thinking.get(self._selected_id)

    def on_selection_change(self, listener: SelectionListener) -> Callable[[], None]:
        return self._selection_changes.subscribe(lambda change: listener(*change))

    # ------------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------------

    async def select(self, request_id: str) -> None:
        if not request_id:
            return
        previous_id = self._selected_id
        if previous_id != request_id:
            if previous_id:
                # the old detail is being discarded, no reconciliation
                self._aggregator.stop_stream(previous_id, False)
                self._thinking.pop(previous_id, None)
            self._selected_id = request_id
            self._selected_message_index = None
            self._emit_selection_change(previous_id, request_id)
        await self._load_detail(request_id)

    async def reload(self) -> None:
        if not self._selected_id:
            return
        await self._load_detail(self._selected_id)

    def clear_selection(self) -> None:
        previous_id = self._selected_id
        if previous_id:
            self._aggregator.stop_stream(previous_id, False)
            self._thinking.pop(previous_id, None)
        self._load_token += 1
        self._selected_id = None
        self._error = None
        self._is_loading = False
        self._selected_message_index = None
        self._set_detail(None)
        if previous_id:
            self._emit_selection_change(previous_id, None)

    def start_result_stream(self, request_id: str) -> None:
        self._aggregator.start_stream(request_id)

    def set_selected_message_index(self, index: Optional[int]) -> None:
        self._selected_message_index = index

    # ------------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------------

    async def _load_detail(self, request_id: str) -> None:
        self._load_token += 1
        token = self._load_token
        self._is_loading = True
        self._error = None
        try:
            detail = await self._api.get_request(request_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_stale(token, request_id):
                return
            logger.warning(f"Failed to load detail for {request_id}: {e}")
            self._error = e
            self._set_detail(None)
        else:
            if self._is_stale(token, request_id):
                return
            self._replace_detail(request_id, detail)
        finally:
            if token == self._load_token:
                self._is_loading = False

    def _replace_detail(self, request_id: str, detail: RequestDetail) -> None:
        detail = detail.model_copy(update={"messages": normalize_messages(detail.messages)})
        if detail.thinking_process:
            self._thinking[request_id] = build_thinking_state(
                request_id, detail.thinking_process, is_streaming=False
            )
        self._set_detail(detail)

        # an open stream re-attaches to the fresh detail with everything received so far
        state = self._aggregator.stream_state(request_id)
        if state is not None:
            state.message_index = -1
            if state.accumulated:
                self._apply_stream_state(state)

    def schedule_reload(self, request_id: str) -> None:
        """Reload detail in the background, only if the request is still displayed."""
        if request_id != self._selected_id:
            return
        self._scheduler.spawn(self._load_detail(request_id))

    def _is_stale(self, token: int, request_id: str) -> bool:
        return token != self._load_token or request_id != self._selected_id

    # ------------------------------------------------------------------------
    # Stream reconciliation
    # ------------------------------------------------------------------------

    def _apply_stream_update(self, update: StreamUpdate) -> None:
        # streams of anything but the displayed request are never surfaced
        if update.request_id != self._selected_id:
            return
        self._thinking[update.request_id] = update.thinking
        if update.done:
            self._notify(self._detail)
            return
        detail = self._detail
        if detail is None or detail.request_id != update.request_id:
            return
        self._apply_stream_state(update.state)

    def _apply_stream_state(self, state: StreamState) -> None:
        detail = self._detail
        if detail is None:
            return
        messages = list(detail.messages)
        if state.message_index < 0 or state.message_index >= len(messages):
            messages.append(Message(role="assistant", content=""))
            state.message_index = len(messages) - 1

        existing = messages[state.message_index]
        messages[state.message_index] = existing.model_copy(
            update={
                "content": state.accumulated,
                "annotations": (
                    state.annotations if state.annotations is not None else existing.annotations
                ),
            }
        )
        self._set_detail(detail.model_copy(update={"messages": messages}))

    def _set_detail(self, detail: Optional[RequestDetail]) -> None:
        self._detail = detail
        self._notify(detail)

    def _emit_selection_change(self, previous_id: Optional[str], current_id: Optional[str]) -> None:
        self._selection_changes.publish(SelectionChange(previous_id, current_id))
