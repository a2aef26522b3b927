from __future__ import annotations
import secrets
import time
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from ..helpers import now_ts, new_id
from ..infra.sql import Gated
from .db import (
    Order, OrderItem, Product, ORDER_PENDING, ORDER_PAID, ORDER_TERMINAL,
)


def new_commerce_order() -> str:
    # ORDER-<ms>-<suffix>: unique even for two checkouts in the same ms
    return f"ORDER-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


class OrderStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def create_order(
        self, user_id: str, items: Sequence[Dict[str, Any]],
        customer_email: Optional[str] = None, currency: str = "CLP",
        commerce_order: Optional[str] = None,
    ) -> Order:
        """items: [{"product_id", "quantity"}]; prices are snapshotted."""
        ts = now_ts()
        async with self.gated():
            async with self.db.begin():
                ids = [it["product_id"] for it in items]
                rows = (await self.db.execute(
                    select(Product).where(Product.id.in_(ids),
                                          Product.active.is_(True))
                )).scalars().all()
                products = {p.id: p for p in rows}

                lines = []
                total = 0
                for it in items:
                    product = products.get(it["product_id"])
                    if product is None:
                        raise ValidationError(
                            f"Producto no disponible: {it['product_id']}"
                        )
                    qty = int(it.get("quantity") or 1)
                    total += product.price * qty
                    lines.append((product, qty))

                order = Order(
                    id=new_id(),
                    user_id=user_id,
                    total=total,
                    currency=currency,
                    customer_email=customer_email,
                    status=ORDER_PENDING,
                    commerce_order=commerce_order or new_commerce_order(),
                    created_at=ts,
                    updated_at=ts,
                )
                self.db.add(order)
                await self.db.flush()
                for product, qty in lines:
                    self.db.add(OrderItem(
                        id=new_id(),
                        order_id=order.id,
                        product_id=product.id,
                        quantity=qty,
                        price=product.price,
                        created_at=ts,
                    ))
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self.gated():
            async with self.db.begin():
                return await self.db.get(Order, order_id)

    async def find_by_payment_token(self, token: str) -> Optional[Order]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Order).where(Order.payment_token == token)
                )).scalars().first()

    async def find_by_commerce_order(
            self, commerce_order: str
    ) -> Optional[Order]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Order).where(
                        Order.commerce_order == commerce_order
                    )
                )).scalars().first()

    async def set_payment_token(
        self, order_id: str, token: str,
        reference_number: Optional[str] = None,
    ) -> bool:
        # only fills an empty slot; the first token issued wins
        async with self.gated():
            async with self.db.begin():
                values: Dict[str, Any] = {
                    "payment_token": token, "updated_at": now_ts()
                }
                if reference_number is not None:
                    values["payment_reference_number"] = str(
                        reference_number
                    )
                res = await self.db.execute(
                    update(Order)
                    .where(Order.id == order_id,
                           Order.payment_token.is_(None))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        return res.rowcount == 1

    async def apply_status(self, order_id: str, status: str) -> bool:
        """Move a pending order to a terminal status.

        Returns True if this call made the transition. Terminal orders are
        never rewritten, so replays and late notifications are no-ops.
        """
        if status not in ORDER_TERMINAL:
            return False
        ts = now_ts()
        values: Dict[str, Any] = {"status": status, "updated_at": ts}
        if status == ORDER_PAID:
            values["paid_at"] = ts
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    update(Order)
                    .where(Order.id == order_id,
                           Order.status == ORDER_PENDING)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        return res.rowcount == 1

    async def refresh(self, order: Order) -> Order:
        async with self.gated():
            async with self.db.begin():
                await self.db.refresh(order)
        return order

    async def list_items(self, order_id: str) -> List[OrderItem]:
        async with self.gated():
            async with self.db.begin():
                return list((await self.db.execute(
                    select(OrderItem)
                    .where(OrderItem.order_id == order_id)
                    .order_by(OrderItem.created_at, OrderItem.id)
                )).scalars().all())
