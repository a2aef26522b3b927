from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TypedDict

import httpx

from . import config
from .errors import (
    GatewayError, GatewayAuthError, GatewayBadRequest, GatewayProtocolError,
    InvalidAmount,
)
from .logs import get_logger, short
from .model.db import (
    ORDER_PENDING, ORDER_PAID, ORDER_CANCELLED, ORDER_REJECTED,
)
from .signature import signed_params

log = get_logger("flowpay")

FLOW_BASE_URLS = {
    "production": "https://www.flow.cl/api",
    "sandbox": "https://sandbox.flow.cl/api",
}

# numeric status reported by the authority -> order status
STATUS_CODES = {
    0: ORDER_PENDING,
    1: ORDER_PAID,
    2: ORDER_CANCELLED,
    3: ORDER_REJECTED,
}


class CreatePaymentResult(TypedDict):
    token: str
    redirect_url: str
    external_order_id: Optional[int]


@dataclass
class PaymentStatus:
    status_code: int
    commerce_order: Optional[str]
    amount: Optional[float]
    currency: Optional[str]
    settlement_date: Optional[str] = None
    external_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def resolve_order_status(self) -> str:
        # A settlement date proves the funds moved; the authority has been
        # seen reporting status 2 for settled payments.
        if self.settlement_date:
            return ORDER_PAID
        return STATUS_CODES.get(self.status_code, ORDER_PENDING)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "PaymentStatus":
        if not isinstance(data, dict) or "status" not in data:
            raise GatewayProtocolError()
        try:
            code = int(data["status"])
        except (TypeError, ValueError):
            raise GatewayProtocolError()
        settlement = data.get("paymentData") or {}
        return cls(
            status_code=code,
            commerce_order=data.get("commerceOrder"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            settlement_date=(
                settlement.get("date") if isinstance(settlement, dict)
                else None
            ) or None,
            external_order_id=data.get("flowOrder"),
            raw=data,
        )


class FlowPay:
    """Client for the Flow payment authority (signed form/query requests)."""

    def __init__(self, http: httpx.AsyncClient, *, api_key: str,
                 secret_key: str, environment: str = "sandbox",
                 timeout: float = config.HTTP_TIMEOUT_SECONDS):
        self.http = http
        self.api_key = api_key
        self.secret_key = secret_key
        self.base_url = FLOW_BASE_URLS.get(
            environment, FLOW_BASE_URLS["sandbox"]
        )
        self.timeout = timeout

    # ----------------------------
    # transport
    # ----------------------------
    def _signed(self, params: Dict[str, Any]) -> Dict[str, str]:
        if not self.api_key or not self.secret_key:
            raise GatewayAuthError("Faltan las credenciales de Flow")
        return signed_params(params, self.api_key, self.secret_key)

    async def _request(self, method: str, path: str,
                       params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        signed = self._signed(params)
        try:
            if method == "GET":
                r = await self.http.get(url, params=signed,
                                        timeout=self.timeout)
            else:
                r = await self.http.post(url, data=signed,
                                         timeout=self.timeout)
        except httpx.TimeoutException as e:
            log.error("flow request timed out", path=path)
            raise GatewayError("Tiempo de espera agotado con Flow") from e
        except httpx.HTTPError as e:
            log.error("flow request failed", path=path, error=str(e))
            raise GatewayError("Error de conexión con Flow") from e

        try:
            body = r.json()
        except ValueError:
            body = None

        if r.status_code >= 400:
            message = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("error")
            log.error("flow api error", path=path, status=r.status_code,
                      message=message)
            if r.status_code == 400:
                raise GatewayBadRequest(message)
            if r.status_code in (401, 403):
                raise GatewayAuthError(message)
            raise GatewayError(message or f"Error {r.status_code} de Flow")

        if not isinstance(body, dict):
            raise GatewayProtocolError()
        return body

    # ----------------------------
    # payments
    # ----------------------------
    async def create_payment_order(
        self, commerce_order: str, subject: str, amount: Any,
        payer_email: str, currency: Optional[str] = None,
        return_url: Optional[str] = None,
        confirmation_url: Optional[str] = None,
        optional: Optional[Dict[str, Any]] = None,
    ) -> CreatePaymentResult:
        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise InvalidAmount()
        if value != value or value <= 0:  # NaN or non-positive
            raise InvalidAmount()

        params: Dict[str, Any] = {
            "commerceOrder": str(commerce_order),
            "subject": str(subject),
            "currency": currency or config.FLOW_CURRENCY,
            # CLP has no decimals
            "amount": int(round(value)),
            "email": str(payer_email),
            "urlReturn": return_url,
            "urlConfirmation": confirmation_url,
        }
        if optional:
            params.update(optional)

        log.info("creating payment order", commerce_order=commerce_order,
                 amount=params["amount"])
        data = await self._request("POST", "/payment/create", params)

        token = data.get("token")
        url = data.get("url")
        if not token or not url:
            log.error("flow create response incomplete",
                      commerce_order=commerce_order, keys=sorted(data))
            raise GatewayProtocolError()
        return {
            "token": token,
            "redirect_url": f"{url}?token={token}",
            "external_order_id": data.get("flowOrder"),
        }

    async def get_payment_status(self, token: str) -> PaymentStatus:
        data = await self._request(
            "GET", "/payment/getStatus", {"token": token}
        )
        status = PaymentStatus.from_response(data)
        log.debug("payment status", token=short(token, 20),
                  status=status.status_code,
                  commerce_order=status.commerce_order,
                  settled=bool(status.settlement_date))
        return status

    async def get_payment_status_by_commerce_order(
            self, commerce_order: str
    ) -> PaymentStatus:
        data = await self._request(
            "GET", "/payment/getStatusByCommerceOrder",
            {"commerceOrder": commerce_order},
        )
        return PaymentStatus.from_response(data)

    # ----------------------------
    # refunds
    # ----------------------------
    async def create_refund(
        self, refund_commerce_order: str, receiver_email: str,
        amount: Any, confirmation_url: str,
        commerce_trx_id: Optional[str] = None,
        flow_trx_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise InvalidAmount()
        if value != value or value <= 0:
            raise InvalidAmount()
        data = await self._request("POST", "/refund/create", {
            "refundCommerceOrder": refund_commerce_order,
            "receiverEmail": receiver_email,
            "amount": int(round(value)),
            "urlCallBack": confirmation_url,
            "commerceTrxId": commerce_trx_id,
            "flowTrxId": flow_trx_id,
        })
        if "token" not in data:
            raise GatewayProtocolError()
        return data

    async def get_refund_status(self, token: str) -> Dict[str, Any]:
        return await self._request(
            "GET", "/refund/getStatus", {"token": token}
        )

    async def cancel_refund(self, token: str) -> Dict[str, Any]:
        return await self._request(
            "POST", "/refund/cancel", {"token": token}
        )


def new_gateway(http: httpx.AsyncClient) -> FlowPay:
    return FlowPay(
        http,
        api_key=config.FLOW_API_KEY,
        secret_key=config.FLOW_SECRET_KEY,
        environment=config.FLOW_ENVIRONMENT,
    )
