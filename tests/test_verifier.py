"""
Tests for the Apple transport client and the sandbox fallback.
"""
import asyncio
import json

import httpx
import pytest
from pydantic import ValidationError

from iosback.iap.exceptions import ReceiptDecodeError, ReceiptTransportError
from iosback.iap.models import Environment, ReceiptRequest
from iosback.iap.verifier import (
    APPLE_PRODUCTION_URL,
    APPLE_SANDBOX_URL,
    AppleReceiptVerifier,
    VerifierConfig,
    verify_receipt
)


REQUEST = ReceiptRequest(
    receipt_data="TUlJVFFRWUpLb1pJaHZjTkFRY0NvSUlUTWpDQ0V5NENBUUV4",
    password="0123456789abcdef",
    exclude_old_transactions=True
)


def apple_stub(*bodies, status_code=200):
    """
    Transport answering with the given bodies in turn, the last one repeats.

    Returns:
        (transport, list of received requests)
    """
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        body = bodies[min(len(calls), len(bodies)) - 1]
        return httpx.Response(status_code, json=body)

    return httpx.MockTransport(handler), calls


def routed_stub(by_url):
    """Transport answering by endpoint URL."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json=by_url[str(request.url)])

    return httpx.MockTransport(handler), calls


# ========== Transport client ==========

@pytest.mark.asyncio
async def test_verify_receipt_request_format():
    """Test the request is a JSON POST with the expected content type and body."""
    transport, calls = apple_stub({"status": 0})

    async with httpx.AsyncClient(transport=transport) as client:
        response = await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, client=client)

    assert response.status == 0
    assert len(calls) == 1
    assert calls[0].method == "POST"
    assert str(calls[0].url) == APPLE_PRODUCTION_URL
    assert calls[0].headers["content-type"] == "application/json; charset=utf-8"
    assert json.loads(calls[0].content) == {
        "receipt-data": REQUEST.receipt_data,
        "password": "0123456789abcdef",
        "exclude-old-transactions": True
    }


@pytest.mark.asyncio
async def test_verify_receipt_environment_from_url():
    transport, _ = apple_stub({"status": 0})

    async with httpx.AsyncClient(transport=transport) as client:
        production = await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, client=client)
        sandbox = await verify_receipt(REQUEST, APPLE_SANDBOX_URL, client=client)

    assert production.environment == Environment.PRODUCTION
    assert sandbox.environment == Environment.SANDBOX


@pytest.mark.asyncio
async def test_verify_receipt_environment_from_body():
    transport, _ = apple_stub({"status": 0, "environment": "Sandbox"})

    async with httpx.AsyncClient(transport=transport) as client:
        response = await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, client=client)

    assert response.environment == Environment.SANDBOX


@pytest.mark.asyncio
async def test_retry_budget_is_bounded():
    """Test a retryable status with max_retries=2 makes exactly 3 requests."""
    transport, calls = apple_stub({"status": 21100, "is_retryable": True})

    async with httpx.AsyncClient(transport=transport) as client:
        response = await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, max_retries=2, client=client)

    assert len(calls) == 3
    assert response.status == 21100
    assert response.is_retryable is True


@pytest.mark.asyncio
async def test_retry_stops_on_success():
    transport, calls = apple_stub(
        {"status": 21199, "is_retryable": True},
        {"status": 0, "latest_receipt_info": []}
    )

    async with httpx.AsyncClient(transport=transport) as client:
        response = await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, max_retries=5, client=client)

    assert len(calls) == 2
    assert response.status == 0
    assert [c.content for c in calls] == [calls[0].content] * 2


@pytest.mark.asyncio
async def test_no_retry_for_non_retryable_status():
    """Test a plain error status is returned without retrying."""
    transport, calls = apple_stub({"status": 21003})

    async with httpx.AsyncClient(transport=transport) as client:
        response = await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, max_retries=2, client=client)

    assert len(calls) == 1
    assert response.status == 21003


@pytest.mark.asyncio
async def test_no_retry_without_budget():
    transport, calls = apple_stub({"status": 21100, "is-retryable": True})

    async with httpx.AsyncClient(transport=transport) as client:
        await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, client=client)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_non_200_is_transport_error():
    transport, calls = apple_stub({"status": 0}, status_code=503)

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(ReceiptTransportError) as exc_info:
            await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, max_retries=2, client=client)

    assert exc_info.value.http_status == 503
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_network_failure_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ReceiptTransportError) as exc_info:
            await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, client=client)

    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
    assert exc_info.value.http_status is None


@pytest.mark.asyncio
async def test_malformed_json_is_decode_error():
    def handler(request):
        return httpx.Response(200, content=b"<html>maintenance</html>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ReceiptDecodeError):
            await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, client=client)


@pytest.mark.asyncio
async def test_missing_status_is_decode_error():
    transport, _ = apple_stub({"receipt": {}})

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(ReceiptDecodeError):
            await verify_receipt(REQUEST, APPLE_PRODUCTION_URL, client=client)


@pytest.mark.asyncio
async def test_cancellation_aborts_request():
    """Test cancelling the caller aborts the in-flight request without retrying."""
    started = asyncio.Event()
    calls = []

    async def handler(request):
        calls.append(request)
        started.set()
        await asyncio.sleep(3600)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        task = asyncio.create_task(
            verify_receipt(REQUEST, APPLE_PRODUCTION_URL, max_retries=3, client=client)
        )
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    assert len(calls) == 1


# ========== Environment fallback ==========

@pytest.mark.asyncio
async def test_production_falls_back_to_sandbox_once():
    """Test status 21007 from production triggers exactly one sandbox call."""
    transport, calls = routed_stub({
        APPLE_PRODUCTION_URL: {"status": 21007},
        APPLE_SANDBOX_URL: {"status": 0, "latest_receipt_info": []},
    })

    async with httpx.AsyncClient(transport=transport) as client:
        verifier = AppleReceiptVerifier(VerifierConfig(shared_secret="secret"), client=client)
        response = await verifier.verify(REQUEST)

    assert calls == [APPLE_PRODUCTION_URL, APPLE_SANDBOX_URL]
    assert response.status == 0
    assert response.environment == Environment.SANDBOX


@pytest.mark.asyncio
async def test_fallback_is_not_recursive():
    transport, calls = routed_stub({
        APPLE_PRODUCTION_URL: {"status": 21007},
        APPLE_SANDBOX_URL: {"status": 21007},
    })

    async with httpx.AsyncClient(transport=transport) as client:
        verifier = AppleReceiptVerifier(VerifierConfig(), client=client)
        response = await verifier.verify(REQUEST)

    assert calls == [APPLE_PRODUCTION_URL, APPLE_SANDBOX_URL]
    assert response.status == 21007


@pytest.mark.asyncio
async def test_production_success_skips_sandbox():
    transport, calls = routed_stub({APPLE_PRODUCTION_URL: {"status": 0}})

    async with httpx.AsyncClient(transport=transport) as client:
        verifier = AppleReceiptVerifier(VerifierConfig(), client=client)
        response = await verifier.verify(REQUEST)

    assert calls == [APPLE_PRODUCTION_URL]
    assert response.environment == Environment.PRODUCTION


@pytest.mark.asyncio
async def test_production_error_other_than_21007_is_returned():
    transport, calls = routed_stub({APPLE_PRODUCTION_URL: {"status": 21004}})

    async with httpx.AsyncClient(transport=transport) as client:
        verifier = AppleReceiptVerifier(VerifierConfig(), client=client)
        response = await verifier.verify(REQUEST)

    assert calls == [APPLE_PRODUCTION_URL]
    assert response.status == 21004


@pytest.mark.asyncio
async def test_sandbox_config_only_calls_sandbox():
    transport, calls = routed_stub({APPLE_SANDBOX_URL: {"status": 0}})

    async with httpx.AsyncClient(transport=transport) as client:
        verifier = AppleReceiptVerifier(VerifierConfig(sandbox=True), client=client)
        response = await verifier.verify(REQUEST)

    assert calls == [APPLE_SANDBOX_URL]
    assert response.environment == Environment.SANDBOX


@pytest.mark.asyncio
async def test_custom_endpoints():
    transport, calls = routed_stub({
        "https://apple.test/prod": {"status": 21007},
        "https://apple.test/test": {"status": 0},
    })
    config = VerifierConfig(
        production_url="https://apple.test/prod",
        sandbox_url="https://apple.test/test"
    )

    async with httpx.AsyncClient(transport=transport) as client:
        response = await AppleReceiptVerifier(config, client=client).verify(REQUEST)

    assert calls == ["https://apple.test/prod", "https://apple.test/test"]
    assert response.environment == Environment.SANDBOX


@pytest.mark.asyncio
async def test_retries_apply_per_environment():
    transport, calls = routed_stub({
        APPLE_PRODUCTION_URL: {"status": 21007},
        APPLE_SANDBOX_URL: {"status": 21150, "is_retryable": True},
    })

    async with httpx.AsyncClient(transport=transport) as client:
        verifier = AppleReceiptVerifier(VerifierConfig(max_retries=1), client=client)
        response = await verifier.verify(REQUEST)

    assert calls == [APPLE_PRODUCTION_URL, APPLE_SANDBOX_URL, APPLE_SANDBOX_URL]
    assert response.status == 21150


# ========== Request building ==========

def test_build_request_uses_config():
    verifier = AppleReceiptVerifier(VerifierConfig(shared_secret="secret"))

    request = verifier.build_request(b"TUlJVFFR")

    assert request == ReceiptRequest(
        receipt_data="TUlJVFFR",
        password="secret",
        exclude_old_transactions=True
    )


def test_build_request_rejects_binary_receipt():
    verifier = AppleReceiptVerifier(VerifierConfig())

    with pytest.raises(ReceiptDecodeError):
        verifier.build_request(b"\xff\xfe\x00")


def test_config_is_immutable():
    config = VerifierConfig(max_retries=2)
    with pytest.raises(ValidationError):
        config.max_retries = 3
