"""Tests for the commerce and fulfillment HTTP clients."""

import json
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from replygate.config import CommerceConfig
from replygate.commerce import CommerceClient, FulfillmentClient, OrderInfo
from replygate.errors import CollaboratorError

BASE = "https://shop.internal/api"


def make_client(cls, handler, **kwargs):
    return cls(BASE, api_key="k-123", transport=httpx.MockTransport(handler), **kwargs)


def test_order_info_from_api():
    order = OrderInfo.from_api("12345", {
        "status": "Shipped", "total": "59.90", "tracking_code": "1Z999", "carrier": "UPS",
    })
    assert order.total == Decimal("59.90")
    assert order.tracking_number == "1Z999"
    assert order.shipped

    pending = OrderInfo.from_api("777", {"status": "processing", "total": "abc"})
    assert pending.total == Decimal("0")
    assert not pending.shipped
    assert pending.order_number == "777"


def test_lookup_order():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"number": "12345", "status": "Shipped", "total": 59.9})

    order = make_client(CommerceClient, handler).lookup_order("12345", "acct-1")

    assert order.order_number == "12345"
    assert seen[0].url.path == "/api/accounts/acct-1/orders/12345"
    assert seen[0].headers["Authorization"] == "Bearer k-123"


def test_lookup_unknown_order_returns_none():
    client = make_client(CommerceClient, lambda request: httpx.Response(404))
    assert client.lookup_order("99999", "acct-1") is None


def test_lookup_server_error_raises():
    client = make_client(CommerceClient, lambda request: httpx.Response(503))
    with pytest.raises(CollaboratorError, match="HTTP 503"):
        client.lookup_order("12345", "acct-1")


@patch("replygate.commerce.time.sleep")
def test_lookup_retries_connection_errors(mock_sleep):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"status": "Shipped", "total": "10"})

    order = make_client(CommerceClient, handler).lookup_order("12345", "acct-1")

    assert order.status == "Shipped"
    assert len(calls) == 3
    assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]


@patch("replygate.commerce.time.sleep")
def test_lookup_gives_up_after_max_retries(mock_sleep):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(CollaboratorError, match="unreachable"):
        make_client(CommerceClient, handler, max_retries=2).lookup_order("1", "acct-1")
    assert mock_sleep.call_count == 1


def test_repeat_customer():
    def handler(request):
        assert request.url.params["email"] == "jane.doe@shopper.io"
        return httpx.Response(200, json={"order_count": 3})

    assert make_client(CommerceClient, handler).is_repeat_customer("jane.doe@shopper.io", "acct-1")
    first_timer = make_client(CommerceClient, lambda r: httpx.Response(200, json={"order_count": 1}))
    assert not first_timer.is_repeat_customer("new@shopper.io", "acct-1")
    unknown = make_client(CommerceClient, lambda r: httpx.Response(404))
    assert not unknown.is_repeat_customer("ghost@shopper.io", "acct-1")


def test_fulfillment_actions_hit_expected_endpoints():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path, request.content))
        return httpx.Response(200, json={"ok": True})

    client = make_client(FulfillmentClient, handler)
    client.hold_shipment("12345", "acct-1")
    client.update_address("12345", "acct-1", "5 Oak Ave")
    client.release_hold("12345", "acct-1")
    client.cancel_order("12345", "acct-1")

    assert [(m, p) for m, p, _ in seen] == [
        ("POST", "/api/accounts/acct-1/orders/12345/hold"),
        ("PUT", "/api/accounts/acct-1/orders/12345/address"),
        ("POST", "/api/accounts/acct-1/orders/12345/release"),
        ("POST", "/api/accounts/acct-1/orders/12345/cancel"),
    ]
    assert json.loads(seen[1][2]) == {"address": "5 Oak Ave"}


@patch("replygate.commerce.time.sleep")
def test_fulfillment_never_retries(mock_sleep):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection reset", request=request)

    with pytest.raises(CollaboratorError):
        make_client(FulfillmentClient, handler).cancel_order("12345", "acct-1")
    assert len(calls) == 1
    mock_sleep.assert_not_called()


def test_fulfillment_error_status_raises():
    client = make_client(FulfillmentClient, lambda request: httpx.Response(409, json={"error": "shipped"}))
    with pytest.raises(CollaboratorError, match="HTTP 409"):
        client.hold_shipment("12345", "acct-1")


def test_from_config():
    config = CommerceConfig(base_url="https://shop.internal/api/", api_key="abc", max_retries=5)
    client = CommerceClient.from_config(config)
    assert client.base_url == "https://shop.internal/api"
    assert client.max_retries == 5


@patch("replygate.commerce.time.sleep")
def test_lookup_retries_dropped_connections(mock_sleep):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadError("connection reset by peer", request=request)
        return httpx.Response(200, json={"status": "Shipped", "total": "10"})

    order = make_client(CommerceClient, handler).lookup_order("12345", "acct-1")

    assert order.status == "Shipped"
    assert len(calls) == 2


@patch("replygate.commerce.time.sleep")
def test_fulfillment_protocol_error_not_retried(mock_sleep):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.RemoteProtocolError("server disconnected", request=request)

    with pytest.raises(CollaboratorError, match="unreachable"):
        make_client(FulfillmentClient, handler).hold_shipment("12345", "acct-1")
    assert len(calls) == 1
    mock_sleep.assert_not_called()


def test_invalid_json_is_collaborator_error():
    client = make_client(CommerceClient, lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(CollaboratorError, match="invalid JSON"):
        client.lookup_order("12345", "acct-1")
