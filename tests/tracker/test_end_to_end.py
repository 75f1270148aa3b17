import asyncio
import random

import httpx
from fastapi import FastAPI

from src.api import mock_upstream
from src.api.mock_upstream import MockUpstream
from src.tracker.client import RequestApiClient
from src.tracker.context import build_context
from fakes import POLLING, ManualScheduler

BASE_URL = "http://mock-upstream/mock"


def make_upstream():
    app = FastAPI()
    app.include_router(mock_upstream.router)
    app.state.mock_upstream = MockUpstream(rng=random.Random(0), chunk_delay=0)
    return app


def test_submitted_request_is_tracked_to_completion():
    upstream = make_upstream()
    scheduler = ManualScheduler()

    async def scenario():
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=upstream), base_url=BASE_URL)
        api = RequestApiClient(base_url=BASE_URL, http=http, scheduler=scheduler)
        tracker = build_context(api=api, polling=POLLING, scheduler=scheduler, rng=random.Random(7))
        try:
            response = await tracker.facade.submit_request("Explain the outage")
            request_id = response.request_id
            await tracker.facade.select(request_id)
            await scheduler.drain()

            for _ in range(200):
                done = (
                    tracker.registry.get(request_id).status == "completed"
                    and not tracker.monitor.is_monitoring(request_id)
                    and not tracker.aggregator.is_streaming(request_id)
                    and tracker.cache.detail.status == "completed"
                )
                if done:
                    break
                await scheduler.advance()
            return request_id, tracker.cache.detail, tracker.cache.thinking_process
        finally:
            await tracker.aclose()

    request_id, detail, thinking = asyncio.run(scenario())

    assert detail.request_id == request_id
    assert detail.status == "completed"
    assert [m.role for m in detail.messages] == ["user", "assistant"]
    assert detail.messages[0].content == "Explain the outage"
    assert detail.messages[1].content.startswith("Phase 1: Deconstruct the Request")
    assert detail.messages[1].annotations[0].title == "Example Article"

    assert thinking.is_streaming is False
    assert [p.title for p in thinking.phases] == [
        "Phase 1: Deconstruct the Request",
        "Phase 2: Structure the Explanation",
    ]
    assert thinking.phases[1].steps == [
        "Process 3: Provide reasoning steps.",
        "Process 4: Offer a concise summary.",
    ]


def test_background_request_completes_without_stream():
    upstream = make_upstream()
    scheduler = ManualScheduler()

    async def scenario():
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=upstream), base_url=BASE_URL)
        api = RequestApiClient(base_url=BASE_URL, http=http, scheduler=scheduler)
        tracker = build_context(api=api, polling=POLLING, scheduler=scheduler, rng=random.Random(7))
        finished = []
        tracker.monitor.subscribe(finished.append)
        try:
            response = await tracker.facade.submit_request("Summarize the report")
            await scheduler.drain()
            for _ in range(200):
                if not tracker.monitor.is_monitoring(response.request_id):
                    break
                await scheduler.advance()
            return response.request_id, finished, tracker.aggregator.active_ids()
        finally:
            await tracker.aclose()

    request_id, finished, streams = asyncio.run(scenario())
    assert [s.request_id for s in finished] == [request_id]
    assert finished[0].status == "completed"
    assert finished[0].title == "Summarize the report"
    assert streams == []
