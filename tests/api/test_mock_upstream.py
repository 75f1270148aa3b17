import json
import random

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api import mock_upstream
from src.api.mock_upstream import THINKING_CHUNKS, MockUpstream


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(mock_upstream.router)
    app.state.mock_upstream = MockUpstream(rng=random.Random(0), chunk_delay=0)
    return TestClient(app)


def create(client, query_text="What changed in the release?", **extra):
    response = client.post("/mock/requests", json={"query_text": query_text, **extra})
    assert response.status_code == 200
    return response.json()


def test_create_request(client):
    created = create(client)
    request_id = created["request_id"]
    assert created["status_url"] == f"/requests/{request_id}/status"

    detail = client.get(f"/mock/requests/{request_id}").json()
    assert detail["status"] == "pending"
    assert [m["role"] for m in detail["messages"]] == ["user"]

    histories = client.get("/mock/initial-data").json()["request_histories"]
    assert [h["request_history_id"] for h in histories] == [request_id]


def test_create_rejects_blank_query(client):
    assert client.post("/mock/requests", json={"query_text": " "}).status_code == 422


def test_followup_reuses_request(client):
    request_id = create(client)["request_id"]
    again = create(client, "One more question", request_history_id=request_id)
    assert again["request_id"] == request_id
    detail = client.get(f"/mock/requests/{request_id}").json()
    assert [m["content"] for m in detail["messages"]] == [
        "What changed in the release?",
        "One more question",
    ]


def test_unknown_request(client):
    assert client.get("/mock/requests/nope").status_code == 404
    assert client.get("/mock/requests/nope/result").status_code == 404
    status = client.get("/mock/requests/nope/status").json()
    assert status["status"] == "failed"


def test_status_advances_to_completed(client):
    request_id = create(client)["request_id"]
    statuses = []
    for _ in range(100):
        status = client.get(f"/mock/requests/{request_id}/status").json()["status"]
        statuses.append(status)
        if status == "completed":
            break

    assert statuses[-1] == "completed"
    order = {"pending": 0, "processing": 1, "completed": 2}
    assert [order[s] for s in statuses] == sorted(order[s] for s in statuses)

    detail = client.get(f"/mock/requests/{request_id}").json()
    assert [m["role"] for m in detail["messages"]] == ["user", "assistant"]
    assert detail["thinking_process"] == "".join(THINKING_CHUNKS)


def test_result_stream(client):
    request_id = create(client)["request_id"]
    response = client.get(f"/mock/requests/{request_id}/result")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = [line[len("data: "):] for line in response.text.split("\n\n") if line]
    assert events[-1] == "[DONE]"
    content = "".join(json.loads(e)["delta"]["content"] for e in events[:-1])
    assert content == "".join(THINKING_CHUNKS)
