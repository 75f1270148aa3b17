import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.logger import get_logger
from .aggregator import StreamAggregator
from .client import RequestApiClient
from .facade import RequestFacade
from .monitor import PollingConfig, RequestMonitor
from .registry import RequestRegistry
from .selected import SelectedRequestCache
from .timers import AsyncioScheduler

logger = get_logger(__name__)


@dataclass
class TrackerContext:
    """Single set of tracker services, built once at startup and passed around."""

    api: Any
    scheduler: AsyncioScheduler
    registry: RequestRegistry
    aggregator: StreamAggregator
    cache: SelectedRequestCache
    monitor: RequestMonitor
    facade: RequestFacade

    async def aclose(self) -> None:
        self.monitor.stop_all()
        self.aggregator.stop_all()
        aclose = getattr(self.api, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("Tracker context closed")


def build_context(
    api: Optional[Any] = None,
    polling: Optional[Dict[str, Any]] = None,
    scheduler: Optional[AsyncioScheduler] = None,
    rng: Optional[random.Random] = None,
) -> TrackerContext:
    scheduler = scheduler or AsyncioScheduler()
    api = api or RequestApiClient(scheduler=scheduler)

    registry = RequestRegistry()
    aggregator = StreamAggregator(api.open_result_stream)
    cache = SelectedRequestCache(api, aggregator, scheduler=scheduler)
    monitor = RequestMonitor(
        api,
        registry,
        cache,
        config=PollingConfig.from_settings(polling),
        scheduler=scheduler,
        rng=rng,
    )
    facade = RequestFacade(api, registry, monitor, cache)

    return TrackerContext(
        api=api,
        scheduler=scheduler,
        registry=registry,
        aggregator=aggregator,
        cache=cache,
        monitor=monitor,
        facade=facade,
    )
