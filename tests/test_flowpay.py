from urllib.parse import parse_qsl

import httpx
import pytest

from mcshop.errors import (
    GatewayAuthError, GatewayBadRequest, GatewayError, GatewayProtocolError,
    InvalidAmount,
)
from mcshop.flowpay import FlowPay, PaymentStatus
from mcshop.signature import verify

SECRET = "flow-secret"


def make_gateway(handler, api_key="flow-key", secret_key=SECRET):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FlowPay(http, api_key=api_key, secret_key=secret_key,
                   environment="sandbox")


async def test_create_payment_order_posts_signed_form():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["params"] = dict(parse_qsl(request.content.decode()))
        return httpx.Response(200, json={
            "token": "TOK123", "url": "https://sandbox.flow.cl/pay",
            "flowOrder": 42,
        })

    gw = make_gateway(handler)
    out = await gw.create_payment_order(
        "ORDER-1700000000", "Compra", 15000, "buyer@example.com",
        return_url="http://shop/return",
        confirmation_url="http://shop/webhook",
    )

    assert out == {"token": "TOK123",
                   "redirect_url": "https://sandbox.flow.cl/pay?token=TOK123",
                   "external_order_id": 42}
    assert seen["method"] == "POST"
    assert seen["path"] == "/api/payment/create"
    params = seen["params"]
    assert params["apiKey"] == "flow-key"
    assert params["amount"] == "15000"
    assert params["currency"] == "CLP"
    assert verify(params, params["s"], SECRET)


@pytest.mark.parametrize("amount", [0, -5, "abc", None, float("nan")])
async def test_create_payment_order_rejects_bad_amounts(amount):
    def handler(request):
        raise AssertionError("must not reach the network")

    with pytest.raises(InvalidAmount):
        await make_gateway(handler).create_payment_order(
            "ORDER-1", "x", amount, "a@b.cl"
        )


async def test_get_status_is_a_signed_get():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={
            "flowOrder": 7, "commerceOrder": "ORDER-9", "status": 1,
            "amount": 500, "currency": "CLP",
            "paymentData": {"date": None},
        })

    status = await make_gateway(handler).get_payment_status("TOK")
    assert seen["method"] == "GET"
    assert seen["params"]["token"] == "TOK"
    assert verify(seen["params"], seen["params"]["s"], SECRET)
    assert status.commerce_order == "ORDER-9"
    assert status.external_order_id == 7
    assert status.resolve_order_status() == "paid"


@pytest.mark.parametrize("code,exc", [
    (400, GatewayBadRequest),
    (401, GatewayAuthError),
    (403, GatewayAuthError),
    (500, GatewayError),
])
async def test_error_mapping(code, exc):
    def handler(request):
        return httpx.Response(code, json={"message": "upstream says no"})

    with pytest.raises(exc) as info:
        await make_gateway(handler).get_payment_status("TOK")
    assert info.value.message == "upstream says no"


async def test_transport_failure_is_a_gateway_error():
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(GatewayError):
        await make_gateway(handler).get_payment_status("TOK")


async def test_non_json_body_is_a_protocol_error():
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(GatewayProtocolError):
        await make_gateway(handler).get_payment_status("TOK")


async def test_create_without_token_is_a_protocol_error():
    def handler(request):
        return httpx.Response(200, json={"url": "https://x"})

    with pytest.raises(GatewayProtocolError):
        await make_gateway(handler).create_payment_order(
            "ORDER-1", "x", 100, "a@b.cl"
        )


async def test_missing_credentials():
    def handler(request):
        raise AssertionError("must not reach the network")

    with pytest.raises(GatewayAuthError):
        await make_gateway(handler, api_key="").get_payment_status("TOK")


def test_settlement_takes_priority_over_status_code():
    status = PaymentStatus.from_response({
        "status": 2, "commerceOrder": "ORDER-1",
        "paymentData": {"date": "2024-05-01 12:00:00"},
    })
    assert status.resolve_order_status() == "paid"


@pytest.mark.parametrize("code,expected", [
    (0, "pending"), (1, "paid"), (2, "cancelled"), (3, "rejected"),
    (9, "pending"),
])
def test_status_code_mapping(code, expected):
    status = PaymentStatus.from_response({"status": code})
    assert status.resolve_order_status() == expected


def test_status_without_code_is_a_protocol_error():
    with pytest.raises(GatewayProtocolError):
        PaymentStatus.from_response({"commerceOrder": "ORDER-1"})


async def test_refund_create_posts_signed_form():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(parse_qsl(request.content.decode()))
        return httpx.Response(200, json={"token": "REF1", "status": "created",
                                         "flowRefundOrder": 9})

    out = await make_gateway(handler).create_refund(
        "REFUND-1", "buyer@example.com", 5000,
        "http://shop/refund-callback", flow_trx_id=42,
    )

    assert out["token"] == "REF1"
    assert seen["path"] == "/api/refund/create"
    params = seen["params"]
    assert params["amount"] == "5000"
    assert params["flowTrxId"] == "42"
    assert "commerceTrxId" not in params
    assert verify(params, params["s"], SECRET)
