from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
import httpx

from src.core.config import settings
from src.core.logger import get_logger
from src.api import requests, mock_upstream
from src.tracker.client import RequestApiClient
from src.tracker.context import build_context
from src.tracker.errors import RequestApiError
from src.tracker.timers import AsyncioScheduler

NAME = settings["app"]["name"]
VERSION = settings["app"]["version"]
UPSTREAM = settings["upstream"]

logger = get_logger(__name__)


def build_api_client(app: FastAPI, scheduler: AsyncioScheduler) -> RequestApiClient:
    if UPSTREAM["mock"]:
        # mock upstream is served by this very app, call it in-process
        http = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://mock-upstream/mock",
            timeout=UPSTREAM["timeout"],
        )
        return RequestApiClient(
            base_url="http://mock-upstream/mock",
            http=http,
            scheduler=scheduler,
        )
    return RequestApiClient(scheduler=scheduler)


# 서버 시작 전 이벤트
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting request tracker...")
    tracker = getattr(app.state, "tracker", None)
    if tracker is None:
        scheduler = AsyncioScheduler()
        tracker = build_context(api=build_api_client(app, scheduler), scheduler=scheduler)
        app.state.tracker = tracker

    try:
        await tracker.facade.load_initial_data()
        await tracker.facade.refresh_statuses()
    except RequestApiError as e:
        logger.warning(f"Initial load failed, starting with an empty registry: {e}")

    yield
    logger.info("👋 Shutting down request tracker...")
    await tracker.aclose()
    app.state.tracker = None


app = FastAPI(
    title=NAME,
    version=VERSION,
    lifespan=lifespan
)


# CORS 미들웨어 설정
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:4200",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(requests.router)
if UPSTREAM["mock"]:
    app.include_router(mock_upstream.router)


@app.get("/")
async def health_check():
    return {
        "status": "ok",
        "server_name": NAME,
        "version": VERSION,
        "timestamp": datetime.now().astimezone().isoformat()
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.api.main:app", host="0.0.0.0", port=8000, reload=False)
