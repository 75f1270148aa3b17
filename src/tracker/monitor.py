import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from ..core.config import settings
from ..core.logger import get_logger
from .errors import RequestApiError
from .observable import Observable
from .registry import RequestRegistry
from .schema import (
    RequestStatusResponse,
    RequestSummary,
    is_active_status,
    is_completed_status,
)
from .timers import AsyncioScheduler, TimerHandle

logger = get_logger(__name__)


class MonitorMode(str, Enum):
    BACKGROUND = "background"
    DISPLAYED = "displayed"


class StatusSource(Protocol):
    async def get_request_status(self, request_id: str) -> RequestStatusResponse: ...


class DisplaySelection(Protocol):
    """The part of the selected-request cache the monitor needs."""

    @property
    def selected_id(self) -> Optional[str]: ...

    def start_result_stream(self, request_id: str) -> None: ...


@dataclass(frozen=True)
class PollingConfig:
    interval_ms: int = 1000
    min_ms: int = 1000
    max_ms: int = 60000
    multiplier: float = 1.2
    max_consecutive_errors: int = 5
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls, polling: Optional[Dict[str, Any]] = None) -> "PollingConfig":
        polling = polling if polling is not None else settings["polling"]
        return cls(**{k: v for k, v in polling.items() if k in cls.__dataclass_fields__})

    @property
    def min_interval(self) -> int:
        return max(int(self.min_ms), 0)

    @property
    def max_interval(self) -> int:
        return max(self.min_interval, int(self.max_ms))

    @property
    def base_interval(self) -> int:
        return max(self.min_interval, int(self.interval_ms))

    @property
    def growth(self) -> float:
        return max(float(self.multiplier), 1.0)

    @property
    def max_errors(self) -> int:
        return max(1, int(self.max_consecutive_errors))

    def clamp(self, interval: float) -> int:
        return int(min(max(round(interval), self.min_interval), self.max_interval))

    def next_interval(self, current: int) -> int:
        """Backoff growth for background polling, always inside [min, max]."""
        return self.clamp(min(current * self.growth, self.max_interval))

    def jittered(self, interval: int, rng: random.Random) -> int:
        """interval +/- jitter_ratio, clamped back into [min, max]"""
        jitter = round(interval * max(self.jitter_ratio, 0.0))
        if jitter <= 0:
            return self.clamp(interval)
        return self.clamp(interval + rng.randint(-jitter, jitter))


@dataclass(eq=False)
class MonitorEntry:
    request_id: str
    mode: MonitorMode
    current_interval: int
    consecutive_errors: int = 0
    next_delay: Optional[int] = None
    polls: int = 0
    reset_requested: bool = False
    in_flight: bool = False
    active: bool = True
    timer: Optional[TimerHandle] = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class RequestMonitor(Observable[RequestSummary]):
    """Adaptive polling scheduler, one sequential poll chain per request id.

    Background entries back off geometrically (with jitter) while a request
    sits in pending/processing; the displayed entry polls at the base
    interval. An entry ends on a terminal status, on a vanished registry
    entry, after ``max_consecutive_errors`` failed polls (or the first
    non-retryable one), or on an explicit stop. Subscribers are notified
    with the final summary whenever an entry ends on a terminal status.
    """

    def __init__(
        self,
        api: StatusSource,
        registry: RequestRegistry,
        selection: DisplaySelection,
        config: Optional[PollingConfig] = None,
        scheduler: Optional[AsyncioScheduler] = None,
        rng: Optional[random.Random] = None,
    ):
        super().__init__()
        self._api = api
        self._registry = registry
        self._selection = selection
        self._config = config or PollingConfig.from_settings()
        self._scheduler = scheduler or AsyncioScheduler()
        self._rng = rng or random.Random()
        self._monitors: Dict[str, MonitorEntry] = {}

    @property
    def config(self) -> PollingConfig:
        return self._config

    # ------------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------------

    def start_monitor(self, request_id: str) -> bool:
        if not request_id or request_id in self._monitors:
            return False
        if not self._should_monitor(request_id):
            return False
        self._launch(request_id, MonitorMode.BACKGROUND)
        return True

    def stop_monitor(self, request_id: str) -> bool:
        entry = self._monitors.pop(request_id, None)
        if entry is None:
            return False
        self._cancel(entry)
        logger.debug(f"Monitor stopped: {request_id} ({entry.mode.value}, {entry.polls} polls)")
        return True

    def reset_monitor(self, request_id: str) -> bool:
        entry = self._monitors.get(request_id)
        if entry is None:
            return False
        entry.current_interval = self._config.base_interval
        if entry.timer is None:
            # a poll is queued or in flight; it reschedules at the base interval
            entry.reset_requested = True
            return True
        entry.timer.cancel()
        entry.timer = None
        self._schedule(entry, self._config.base_interval)
        return True

    def promote_to_displayed(self, request_id: str) -> bool:
        if not request_id or not self._should_monitor(request_id, allow_displayed=True):
            return False
        existing = self._monitors.get(request_id)
        if existing is not None and existing.mode is MonitorMode.DISPLAYED:
            return False
        self.stop_monitor(request_id)
        self._launch(request_id, MonitorMode.DISPLAYED)
        return True

    def demote_from_displayed(self, request_id: str) -> bool:
        self.stop_monitor(request_id)
        started = self.start_monitor(request_id)
        self.reset_monitor(request_id)
        return started

    def handle_selection_change(self, previous_id: Optional[str], current_id: Optional[str]) -> None:
        if previous_id and previous_id != current_id:
            self.demote_from_displayed(previous_id)
        if current_id and current_id != previous_id:
            self.promote_to_displayed(current_id)

    def stop_all(self) -> None:
        for request_id in list(self._monitors):
            self.stop_monitor(request_id)

    def is_monitoring(self, request_id: str) -> bool:
        return request_id in self._monitors

    def mode_of(self, request_id: str) -> Optional[MonitorMode]:
        entry = self._monitors.get(request_id)
        return entry.mode if entry else None

    def entry(self, request_id: str) -> Optional[MonitorEntry]:
        return self._monitors.get(request_id)

    def tracked_ids(self) -> List[str]:
        return list(self._monitors)

    # ------------------------------------------------------------------------
    # Poll chain
    # ------------------------------------------------------------------------

    def _launch(self, request_id: str, mode: MonitorMode) -> None:
        entry = MonitorEntry(
            request_id=request_id,
            mode=mode,
            current_interval=self._config.base_interval,
        )
        self._monitors[request_id] = entry
        logger.debug(f"Monitor started: {request_id} ({mode.value})")
        entry.task = self._scheduler.spawn(self._run_poll(entry))

    def _fire(self, entry: MonitorEntry) -> None:
        entry.timer = None
        if not self._is_live(entry):
            return
        entry.task = self._scheduler.spawn(self._run_poll(entry))

    async def _run_poll(self, entry: MonitorEntry) -> None:
        if not self._is_live(entry) or not self._should_continue_polling(entry):
            return

        request_id = entry.request_id
        entry.in_flight = True
        entry.polls += 1
        try:
            payload = await self._api.get_request_status(request_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._is_live(entry):
                return
            entry.consecutive_errors += 1
            if isinstance(e, RequestApiError) and not e.retryable:
                logger.error(f"Giving up on {request_id}, status poll is not retryable: {e}")
                self.stop_monitor(request_id)
                return
            if isinstance(e, RequestApiError):
                logger.warning(
                    f"Status poll failed for {request_id} "
                    f"({entry.consecutive_errors}/{self._config.max_errors}): {e}"
                )
            else:
                logger.exception(f"Unexpected status poll failure for {request_id}")
            if entry.consecutive_errors >= self._config.max_errors:
                logger.error(f"Giving up on {request_id} after {entry.consecutive_errors} failed polls")
                self.stop_monitor(request_id)
                return
        else:
            if not self._is_live(entry):
                return
            entry.consecutive_errors = 0
            if not self._apply_success_payload(entry, payload):
                return
        finally:
            entry.in_flight = False

        self._schedule_next(entry)

    def _apply_success_payload(self, entry: MonitorEntry, payload: RequestStatusResponse) -> bool:
        request_id = entry.request_id
        summary = self._registry.apply_status(request_id, payload)

        if (
            entry.mode is MonitorMode.DISPLAYED
            and self._is_displayed(request_id)
            and is_completed_status(summary.status)
        ):
            logger.info(f"Request {request_id} completed while displayed, opening result stream")
            self._selection.start_result_stream(request_id)

        if not is_active_status(summary.status):
            logger.debug(f"Request {request_id} reached status '{summary.status}'")
            self.stop_monitor(request_id)
            self._notify(summary)
            return False
        return True

    def _schedule_next(self, entry: MonitorEntry) -> None:
        config = self._config
        if entry.mode is MonitorMode.DISPLAYED or entry.reset_requested:
            entry.reset_requested = False
            entry.current_interval = config.base_interval
            delay = config.base_interval
        else:
            entry.current_interval = config.next_interval(entry.current_interval)
            delay = config.jittered(entry.current_interval, self._rng)
        self._schedule(entry, delay)

    def _schedule(self, entry: MonitorEntry, delay_ms: int) -> None:
        entry.next_delay = delay_ms
        entry.timer = self._scheduler.call_later(delay_ms / 1000, lambda: self._fire(entry))
        logger.debug(f"Next poll for {entry.request_id} in {delay_ms}ms ({entry.mode.value})")

    # ------------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------------

    def _is_live(self, entry: MonitorEntry) -> bool:
        return entry.active and self._monitors.get(entry.request_id) is entry

    def _cancel(self, entry: MonitorEntry) -> None:
        entry.active = False
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        task = entry.task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()

    def _should_continue_polling(self, entry: MonitorEntry) -> bool:
        request_id = entry.request_id
        if entry.mode is MonitorMode.BACKGROUND and self._is_displayed(request_id):
            self.stop_monitor(request_id)
            return False
        snapshot = self._registry.get(request_id)
        if snapshot is None or not is_active_status(snapshot.status):
            self.stop_monitor(request_id)
            return False
        return True

    def _should_monitor(self, request_id: str, allow_displayed: bool = False) -> bool:
        if not allow_displayed and self._is_displayed(request_id):
            return False
        request = self._registry.get(request_id)
        if request is None:
            return False
        return is_active_status(request.status)

    def _is_displayed(self, request_id: str) -> bool:
        displayed_id = self._selection.selected_id
        return bool(displayed_id) and displayed_id == request_id
