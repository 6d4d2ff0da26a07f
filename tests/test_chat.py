import json

import httpx
import pytest

from carebridge import config


@pytest.fixture
def upstream(monkeypatch):
    """Route the proxy's outgoing requests to an in-process handler"""
    calls = []
    state = {"status": 200}
    real_client = httpx.AsyncClient

    def handler(request):
        calls.append(request)
        if state["status"] != 200:
            return httpx.Response(state["status"], json={"error": "boom"})
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "Drink water."}}]})

    def make_client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(config, "LLM_API_KEY", "sk-test")
    monkeypatch.setattr(httpx, "AsyncClient", make_client)
    return state, calls


def test_chat_disabled_without_api_key(client, register):
    user = register("p@example.com")
    response = client.post("/api/chat", json={"message": "Hello"}, headers=user["headers"])
    assert response.status_code == 503


def test_chat_requires_login(client):
    assert client.post("/api/chat", json={"message": "Hello"}).status_code == 401


def test_chat_forwards_history(client, register, upstream):
    state, calls = upstream
    user = register("p@example.com")
    response = client.post("/api/chat", json={
        "message": "What helps a cold?",
        "history": [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Hello!"}],
    }, headers=user["headers"])

    assert response.status_code == 200
    assert response.json() == {"reply": "Drink water.", "model": config.LLM_MODEL}

    sent = json.loads(calls[0].content)
    assert sent["model"] == config.LLM_MODEL
    assert [m["role"] for m in sent["messages"]] == ["system", "user", "assistant", "user"]
    assert sent["messages"][-1]["content"] == "What helps a cold?"
    assert calls[0].headers["Authorization"] == "Bearer sk-test"


def test_analyze_report(client, register, upstream):
    user = register("p@example.com")
    response = client.post("/api/chat/analyze-report", json={"report_text": "Hb 9.1 g/dL (13-17)"},
                           headers=user["headers"])
    assert response.status_code == 200
    assert response.json()["reply"] == "Drink water."


def test_upstream_failure_is_a_502(client, register, upstream):
    state, _ = upstream
    state["status"] = 500
    user = register("p@example.com")
    response = client.post("/api/chat", json={"message": "Hello"}, headers=user["headers"])
    assert response.status_code == 502
