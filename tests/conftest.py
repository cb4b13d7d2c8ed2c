"""
Shared fixtures for receipt verification tests.
"""
import base64
import json

import httpx
import pytest


FUTURE_MS = "4102444800000"  # 2100-01-01
PAST_MS = "1546300800000"  # 2019-01-01


@pytest.fixture
def make_in_app():
    """Factory for current-generation latest_receipt_info entries."""
    def _make(**overrides):
        data = {
            "quantity": "1",
            "product_id": "com.myfirm.myapp.monthly",
            "transaction_id": "1000000512345678",
            "original_transaction_id": "1000000500000000",
            "purchase_date_ms": "1546300800000",
            "original_purchase_date_ms": "1546300800000",
            "expires_date_ms": FUTURE_MS,
            "web_order_line_item_id": "1000000042000000",
            "is_trial_period": "false",
            "is_in_intro_offer_period": "false",
        }
        data.update(overrides)
        return data

    return _make


@pytest.fixture
def make_legacy_in_app():
    """Factory for iOS 6 style receipt info objects."""
    def _make(**overrides):
        data = {
            "quantity": "1",
            "product_id": "com.myfirm.myapp.monthly",
            "transaction_id": "1000000087654321",
            "original_transaction_id": "1000000080000000",
            "purchase_date_ms": "1514764800000",
            "original_purchase_date_ms": "1514764800000",
            "expires_date": PAST_MS,
            "expires_date_formatted": "2019-01-01 00:00:00 Etc/GMT",
            "item_id": "1234567890",
            "web_order_line_item_id": "1000000033000000",
            "unique_vendor_identifier": "FC40A4BA-F5B2-4FC0-95E5-1179A9DE7003",
            "unique_identifier": "1ba0ac3365f1e1b634d7ba0d35bda8fcbaf4c85f",
            "bvrs": "46",
            "bid": "com.myfirm.myapp",
            "is_trial_period": "false",
        }
        data.update(overrides)
        return data

    return _make


@pytest.fixture
def echo_transport():
    """
    Apple stand-in that answers with the base64-decoded receipt-data.

    Lets a test put the whole Apple response inside the receipt it sends.
    """
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        payload = json.loads(request.content)
        body = base64.b64decode(payload["receipt-data"])
        return httpx.Response(200, content=body, headers={"Content-Type": "application/json"})

    transport = httpx.MockTransport(handler)
    transport.calls = calls
    return transport


def encode_receipt(response_body: dict) -> bytes:
    """Encode an Apple response as an echo receipt."""
    return base64.b64encode(json.dumps(response_body).encode())


@pytest.fixture
def receipt_for():
    """Build echo receipts from Apple response bodies."""
    return encode_receipt
