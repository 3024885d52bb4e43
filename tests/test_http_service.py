import httpx
import pytest

from mail_assistant.services.http_service import request_with_retries


@pytest.mark.asyncio
async def test_retries_retryable_status_then_succeeds():
    responses = [httpx.Response(503), httpx.Response(429), httpx.Response(200, json={"ok": True})]
    calls = []

    async def request_fn():
        calls.append(1)
        return responses[len(calls) - 1]

    response = await request_with_retries(request_fn, base_delay=0, max_delay=0)

    assert response.status_code == 200
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_returns_last_response_when_attempts_exhausted():
    async def request_fn():
        return httpx.Response(500)

    response = await request_with_retries(request_fn, max_attempts=2, base_delay=0, max_delay=0)

    assert response.status_code == 500


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    calls = []

    async def request_fn():
        calls.append(1)
        return httpx.Response(404)

    response = await request_with_retries(request_fn, base_delay=0)

    assert response.status_code == 404
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_transport_error_raised_after_last_attempt():
    async def request_fn():
        raise httpx.ConnectError("connection refused")

    with pytest.raises(httpx.ConnectError):
        await request_with_retries(request_fn, max_attempts=2, base_delay=0, max_delay=0)
