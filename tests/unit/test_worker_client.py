"""Unit tests for WorkerClient networking behavior."""

from __future__ import annotations

import httpx
import pytest

import handoff.worker_client as client_mod
from handoff.config import WorkerClientConfig
from handoff.worker_client import WorkerClient


@pytest.mark.asyncio
async def test_disable_network_blocks_requests(monkeypatch):
    monkeypatch.setenv("HANDOFF_DISABLE_NETWORK", "1")

    client = WorkerClient(WorkerClientConfig())

    with pytest.raises(RuntimeError, match="HANDOFF_DISABLE_NETWORK"):
        await client.chat_completion(messages=[{"role": "user", "content": "hi"}])


def _mock_client(handler):
    real = httpx.AsyncClient

    def factory(*args, **kwargs):
        return real(*args, transport=httpx.MockTransport(handler), **kwargs)

    return factory


@pytest.mark.asyncio
async def test_complete_returns_message_text(monkeypatch):
    monkeypatch.setenv("HANDOFF_DISABLE_NETWORK", "0")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]})

    monkeypatch.setattr(client_mod.httpx, "AsyncClient", _mock_client(handler))
    client = WorkerClient(WorkerClientConfig(base_url="http://model.test/v1"))

    assert await client.complete("system", "user") == "hello"
    assert seen["url"] == "http://model.test/v1/chat/completions"


@pytest.mark.asyncio
async def test_retries_rate_limits(monkeypatch):
    monkeypatch.setenv("HANDOFF_DISABLE_NETWORK", "0")
    monkeypatch.setenv("HANDOFF_RETRY_MAX", "3")
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 2:
            return httpx.Response(429)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    monkeypatch.setattr(client_mod.httpx, "AsyncClient", _mock_client(handler))

    client = WorkerClient(WorkerClientConfig())
    assert await client.complete("s", "u") == "ok"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_unexpected_shape_is_empty_text(monkeypatch):
    monkeypatch.setenv("HANDOFF_DISABLE_NETWORK", "0")
    monkeypatch.setattr(
        client_mod.httpx,
        "AsyncClient",
        _mock_client(lambda request: httpx.Response(200, json={"unexpected": True})),
    )

    assert await WorkerClient(WorkerClientConfig()).complete("s", "u") == ""


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(monkeypatch):
    monkeypatch.setenv("HANDOFF_DISABLE_NETWORK", "0")
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"error": "unauthorized"})

    monkeypatch.setattr(client_mod.httpx, "AsyncClient", _mock_client(handler))

    with pytest.raises(httpx.HTTPStatusError):
        await WorkerClient(WorkerClientConfig()).complete("s", "u")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_bearer_token_from_environment(monkeypatch):
    monkeypatch.setenv("HANDOFF_DISABLE_NETWORK", "0")
    monkeypatch.setenv("HANDOFF_WORKER_API_KEY", "tok-123")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    monkeypatch.setattr(client_mod.httpx, "AsyncClient", _mock_client(handler))

    await WorkerClient(WorkerClientConfig()).complete("s", "u")
    assert seen["auth"] == "Bearer tok-123"


def test_backoff_grows_exponentially():
    assert [client_mod.backoff_delay(a, jitter=False) for a in range(3)] == [0.5, 1.0, 2.0]
    assert 1.0 <= client_mod.backoff_delay(1) <= 1.1
