"""
Payment notification reconciliation.

    pending -> paid | cancelled | rejected     (terminal, never left)

The payment authority may deliver the same notification many times, out of
order, by GET or POST, as JSON, form or query string. Every step below is
safe to repeat for a given token:

  1. pull the token out of whatever arrived
  2. find the order by stored token, else by the authority's commerceOrder
     (and backfill the token)
  3. ask the authority for the real status, settlement info first
  4. conditional write pending -> terminal
  5. materialize entitlements whenever the order ends up paid
  6. audit (best effort)
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl

import orjson
from fastapi import Request

from .errors import GatewayBadRequest, MissingToken, OrderNotFound
from .flowpay import FlowPay, PaymentStatus
from .logs import get_logger, short
from .materialize import Materializer
from .model import audit
from .model.audit import AuditLogger
from .model.db import Order, ORDER_PAID
from .model.orders import OrderStore

log = get_logger("reconciler")

TOKEN_FIELDS = ("token", "Token", "TOKEN")


async def parse_notification(
        request: Request
) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """(body, query) of an inbound notification; body may be empty."""
    query = dict(request.query_params)
    if request.method == "GET":
        return dict(query), query

    raw = await request.body()
    if not raw or not raw.strip():
        return {}, query
    content_type = request.headers.get("content-type", "")

    if "application/json" in content_type:
        try:
            body = orjson.loads(raw)
        except orjson.JSONDecodeError:
            log.warning("webhook body is not valid json")
            return {}, query
        return (body if isinstance(body, dict) else {}), query

    # form-encoded is what the authority normally sends; also the fallback
    # for a missing or odd content-type
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        log.warning("webhook body is not utf-8")
        return {}, query
    return dict(parse_qsl(text, keep_blank_values=True)), query


def extract_token(body: Dict[str, Any],
                  query: Dict[str, str]) -> Optional[str]:
    for source in (body, query):
        for name in TOKEN_FIELDS:
            value = source.get(name)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def extract_params(body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "token": extract_token(body, {}),
        "status": body.get("status") or body.get("Status"),
        "flow_order": body.get("flowOrder") or body.get("floworder"),
        "error": body.get("error") or body.get("Error"),
    }


@dataclass
class ReconcileResult:
    status: str
    order_id: str
    commerce_order: str
    user_id: str
    transitioned: bool
    amount: int

    def as_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "status": self.status,
            "orderId": self.order_id,
            "commerceOrder": self.commerce_order,
        }


class Reconciler:
    def __init__(self, *, orders: OrderStore, gateway: FlowPay,
                 materializer: Materializer, audit: AuditLogger) -> None:
        self.orders = orders
        self.gateway = gateway
        self.materializer = materializer
        self.audit = audit

    async def resolve_order(
            self, token: str
    ) -> Tuple[Optional[Order], Optional[PaymentStatus]]:
        order = await self.orders.find_by_payment_token(token)
        if order is not None:
            return order, None

        log.info("order not found by token, asking the authority",
                 token=short(token, 20))
        try:
            status = await self.gateway.get_payment_status(token)
        except GatewayBadRequest:
            # the authority does not know this token either
            log.warning("token rejected by the authority",
                        token=short(token, 20))
            return None, None
        if not status.commerce_order:
            return None, status

        order = await self.orders.find_by_commerce_order(
            status.commerce_order
        )
        if order is None:
            log.error("order not found by commerce order",
                      commerce_order=status.commerce_order)
            return None, status

        if not order.payment_token:
            try:
                await self.orders.set_payment_token(
                    order.id, token, status.external_order_id
                )
            except Exception:
                log.warning("token backfill failed", order_id=order.id,
                            exc_info=True)
        return order, status

    async def reconcile(self, token: Optional[str], *,
                        ip: Optional[str] = None,
                        user_agent: Optional[str] = None) -> ReconcileResult:
        if not token:
            raise MissingToken()

        order, status = await self.resolve_order(token)
        if order is None:
            raise OrderNotFound()

        if status is None:
            status = await self.gateway.get_payment_status(token)
        target = status.resolve_order_status()

        transitioned = await self.orders.apply_status(order.id, target)
        order = await self.orders.refresh(order)
        if transitioned:
            log.info("order status changed", order_id=order.id,
                     status=order.status,
                     commerce_order=order.commerce_order)
        elif order.status != target:
            log.info("notification ignored for settled order",
                     order_id=order.id, status=order.status,
                     reported=target)

        result = ReconcileResult(
            status=order.status,
            order_id=order.id,
            commerce_order=order.commerce_order,
            user_id=order.user_id,
            transitioned=transitioned,
            amount=order.total,
        )
        if result.status == ORDER_PAID:
            await self.materializer.materialize(order)

        await self.audit.record(
            audit.ORDER_PAID if transitioned and result.status == ORDER_PAID
            else audit.ORDER_UPDATED,
            "order", result.order_id,
            user_id=result.user_id,
            details={
                "commerce_order": result.commerce_order,
                "status": result.status,
                "total": result.amount,
                "transitioned": transitioned,
            },
            ip_address=ip,
            user_agent=user_agent,
        )
        return result
