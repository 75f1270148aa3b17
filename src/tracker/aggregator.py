import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..core.config import settings
from ..core.logger import get_logger
from .observable import Observable
from .schema import Annotation, ThinkingProcessState
from .thinking import build_thinking_state
from .transport import StreamTransport

logger = get_logger(__name__)

DONE_SENTINEL = settings["stream"]["done_sentinel"]

TransportFactory = Callable[[str], Optional[StreamTransport]]
ReloadHandler = Callable[[str], None]


# ============================================================================
# Payload helpers
# ============================================================================

def parse_stream_payload(raw: str) -> Any:
    """Decoded JSON object or string; the raw text for anything else.

    Scalars such as ``42`` or ``null`` are plain text that happens to parse.
    """
    try:
        payload = json.loads(raw)
    except ValueError:
        return raw
    if isinstance(payload, (dict, str)):
        return payload
    return raw


def _prefer(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        for key in ("content", "text"):
            nested = value.get(key)
            if isinstance(nested, str) and nested:
                return nested
    return None


def extract_chunk(payload: Any) -> str:
    """Text fragment of a stream payload; empty string when there is none.

    Lookup order: ``delta.content``, ``delta.text``, ``delta``, ``content``,
    ``text``.
    """
    if not payload:
        return ""
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        return ""
    for key in ("delta", "content", "text"):
        fragment = _prefer(payload.get(key))
        if fragment is not None:
            return fragment
    return ""


def extract_annotations(payload: Any) -> Optional[List[Annotation]]:
    if not isinstance(payload, dict):
        return None
    candidates = [payload.get("annotations")]
    delta = payload.get("delta")
    if isinstance(delta, dict):
        candidates.append(delta.get("annotations"))
    for candidate in candidates:
        if isinstance(candidate, list):
            annotations = []
            for item in candidate:
                if not isinstance(item, dict):
                    continue
                try:
                    annotations.append(Annotation.model_validate(item))
                except ValidationError as e:
                    logger.debug(f"Dropping malformed annotation {item!r}: {e.error_count()} error(s)")
            # nothing usable: keep whatever was received before
            if candidate and not annotations:
                return None
            return annotations
    return None


# ============================================================================
# Aggregator
# ============================================================================

@dataclass(eq=False)
class StreamState:
    request_id: str
    transport: StreamTransport
    # index of the assistant message being grown; -1 until the first chunk lands
    message_index: int = -1
    accumulated: str = ""
    annotations: Optional[List[Annotation]] = None
    chunks: int = 0
    active: bool = True


@dataclass
class StreamUpdate:
    request_id: str
    state: StreamState
    fragment: str
    thinking: ThinkingProcessState
    done: bool = False
    completed: bool = False
    annotations: Optional[List[Annotation]] = field(default=None)


class StreamAggregator(Observable[StreamUpdate]):
    """Owns at most one open result stream per request id.

    Every accepted chunk is appended to the stream's text buffer and
    subscribers receive a ``StreamUpdate`` carrying the accumulated text and
    the thinking phases re-parsed from it. A final update with ``done=True``
    is emitted on teardown; ``completed`` tells whether the sentinel was seen.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        reload_detail: Optional[ReloadHandler] = None,
        done_sentinel: str = DONE_SENTINEL,
    ):
        super().__init__()
        self._transport_factory = transport_factory
        self._reload_detail = reload_detail
        self._done_sentinel = done_sentinel
        self._streams: Dict[str, StreamState] = {}

    def set_reload_handler(self, reload_detail: Optional[ReloadHandler]) -> None:
        self._reload_detail = reload_detail

    def is_streaming(self, request_id: str) -> bool:
        return request_id in self._streams

    def stream_state(self, request_id: str) -> Optional[StreamState]:
        return self._streams.get(request_id)

    def active_ids(self) -> List[str]:
        return list(self._streams)

    def start_stream(self, request_id: str) -> bool:
        if not request_id or request_id in self._streams:
            return False
        transport = self._transport_factory(request_id)
        if transport is None:
            logger.warning(f"No result stream available for {request_id}")
            return False

        state = StreamState(request_id=request_id, transport=transport)
        self._streams[request_id] = state
        logger.info(f"Result stream opened: {request_id}")
        transport.open(
            lambda data: self._handle_message(state, data),
            lambda error: self._handle_error(state, error),
        )
        return True

    def stop_stream(self, request_id: str, should_reload_detail: bool = True) -> bool:
        return self._teardown(request_id, should_reload_detail, completed=False)

    def stop_all(self) -> None:
        for request_id in list(self._streams):
            self.stop_stream(request_id, False)

    # ------------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------------

    def _handle_message(self, state: StreamState, data: Any) -> None:
        if not self._is_live(state):
            return
        raw = data if isinstance(data, str) else ("" if data is None else str(data))
        if not raw:
            return
        if raw.strip() == self._done_sentinel:
            logger.info(f"Result stream finished: {state.request_id} ({state.chunks} chunks)")
            self._teardown(state.request_id, True, completed=True)
            return

        # plain-text events keep their whitespace, line breaks matter for phases
        try:
            payload = parse_stream_payload(raw)
            fragment = extract_chunk(payload)
            annotations = extract_annotations(payload) if fragment else None
        except (ValueError, TypeError) as e:
            logger.warning(f"Skipping malformed chunk for {state.request_id}: {e}")
            return
        if not fragment:
            return
        self._append(state, fragment, annotations)

    def _handle_error(self, state: StreamState, error: Optional[BaseException]) -> None:
        if not self._is_live(state):
            return
        if state.transport.closed:
            logger.warning(f"Result stream closed without sentinel: {state.request_id} ({error})")
            self._teardown(state.request_id, True, completed=False)

    # ------------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------------

    def _append(
        self,
        state: StreamState,
        fragment: str,
        annotations: Optional[List[Annotation]],
    ) -> None:
        state.accumulated += fragment
        state.chunks += 1
        if annotations is not None:
            state.annotations = annotations
        self._notify(
            StreamUpdate(
                request_id=state.request_id,
                state=state,
                fragment=fragment,
                thinking=build_thinking_state(state.request_id, state.accumulated, is_streaming=True),
                annotations=annotations,
            )
        )

    def _teardown(self, request_id: str, should_reload_detail: bool, completed: bool) -> bool:
        state = self._streams.pop(request_id, None)
        if state is None:
            return False
        state.active = False
        state.transport.close()

        self._notify(
            StreamUpdate(
                request_id=request_id,
                state=state,
                fragment="",
                thinking=build_thinking_state(request_id, state.accumulated, is_streaming=False),
                done=True,
                completed=completed,
            )
        )
        if should_reload_detail and self._reload_detail is not None:
            self._reload_detail(request_id)
        return True

    def _is_live(self, state: StreamState) -> bool:
        return state.active and self._streams.get(state.request_id) is state
