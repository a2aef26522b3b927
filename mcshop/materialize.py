"""
Turns a paid order into entitlements.

For every line item: one License, one UserProduct (entitlement grant) and,
when the buyer has a contact address, one single-use DownloadGrant. Items are
handled independently: a failure on one line is logged and the others are
still materialized. Re-running for the same order is a no-op for lines that
already have a license; the unique (order_id, order_item_id) constraint on
licenses settles concurrent webhook deliveries.
"""
from __future__ import annotations
import secrets
import string
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import now_ts, new_id
from .infra.sql import Gated, insert_or_skip
from .logs import get_logger, short
from .model.db import (
    License, Order, OrderItem, Product, UserProduct, LICENSE_ACTIVE,
)
from .model.downloads import DownloadStore, download_url
from .notify import send_purchase_confirmation

log = get_logger("materializer")

LICENSE_ALPHABET = string.ascii_uppercase + string.digits

EmailLookup = Callable[[str], Awaitable[Optional[str]]]


def generate_license_key(length: int = 32, group: int = 8) -> str:
    raw = "".join(secrets.choice(LICENSE_ALPHABET) for _ in range(length))
    return "-".join(raw[i:i + group] for i in range(0, length, group))


@dataclass
class MaterializedItem:
    order_item_id: str
    product_id: str
    license_id: str
    license_key: str
    created: bool
    download_token: Optional[str] = None


@dataclass
class _Line:
    order_item_id: str
    product_id: str
    product_name: str


class Materializer:
    def __init__(self, *, db: AsyncSession, gated: Gated,
                 downloads: DownloadStore,
                 email_lookup: Optional[EmailLookup] = None) -> None:
        self.db = db
        self.gated = gated
        self.downloads = downloads
        self.email_lookup = email_lookup

    @property
    def _dialect(self) -> str:
        return self.db.bind.dialect.name

    async def _contact_email(self, user_id: str,
                             customer_email: Optional[str]) -> Optional[str]:
        if customer_email:
            return customer_email
        if self.email_lookup is None:
            return None
        try:
            return await self.email_lookup(user_id)
        except Exception:
            log.warning("contact lookup failed", user_id=user_id,
                        exc_info=True)
            return None

    async def _lines(self, order_id: str) -> List[_Line]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(OrderItem.id, OrderItem.product_id, Product.name)
                    .join(Product, Product.id == OrderItem.product_id)
                    .where(OrderItem.order_id == order_id)
                    .order_by(OrderItem.created_at, OrderItem.id)
                )).all()
        return [_Line(*row) for row in rows]

    async def _existing(self, order_id: str,
                        order_item_id: str) -> Optional[Tuple[str, str]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    select(License.id, License.license_key).where(
                        License.order_id == order_id,
                        License.order_item_id == order_item_id,
                    )
                )).first()
        return tuple(row) if row is not None else None

    async def _materialize_item(
        self, order_id: str, user_id: str, line: _Line,
        email: Optional[str],
    ) -> MaterializedItem:
        existing = await self._existing(order_id, line.order_item_id)
        if existing is not None:
            return MaterializedItem(
                order_item_id=line.order_item_id,
                product_id=line.product_id,
                license_id=existing[0], license_key=existing[1],
                created=False,
            )

        ts = now_ts()
        license_id = new_id()
        license_key = generate_license_key()
        grant = None
        if email:
            grant = self.downloads.new_grant(
                user_id, line.product_id, order_id, license_id, now=ts
            )
        async with self.gated():
            async with self.db.begin():
                inserted = await self.db.execute(
                    insert_or_skip(self._dialect, License.__table__,
                                   "order_id", "order_item_id")
                    .values(
                        id=license_id,
                        user_id=user_id,
                        product_id=line.product_id,
                        order_id=order_id,
                        order_item_id=line.order_item_id,
                        license_key=license_key,
                        status=LICENSE_ACTIVE,
                        created_at=ts,
                    )
                )
                if inserted.rowcount == 1:
                    self.db.add(UserProduct(
                        id=new_id(),
                        user_id=user_id,
                        product_id=line.product_id,
                        order_id=order_id,
                        license_id=license_id,
                        created_at=ts,
                    ))
                    if grant is not None:
                        self.db.add(grant)

        if inserted.rowcount != 1:
            # a concurrent delivery created this line's license first
            winner = await self._existing(order_id, line.order_item_id)
            if winner is None:
                raise RuntimeError(
                    f"license for line {line.order_item_id} vanished"
                )
            log.info("license already materialized", order_id=order_id,
                     order_item_id=line.order_item_id)
            return MaterializedItem(
                order_item_id=line.order_item_id,
                product_id=line.product_id,
                license_id=winner[0], license_key=winner[1],
                created=False,
            )

        log.info("license created", order_id=order_id,
                 product_id=line.product_id, license_id=license_id,
                 download=short(grant.download_token if grant else None))
        return MaterializedItem(
            order_item_id=line.order_item_id, product_id=line.product_id,
            license_id=license_id, license_key=license_key,
            created=True,
            download_token=grant.download_token if grant else None,
        )

    async def materialize(self, order: Order) -> List[MaterializedItem]:
        # a failed line rolls back the shared session and expires every
        # instance in it, so only plain values are used past this point
        order_id, user_id = order.id, order.user_id
        commerce_order = order.commerce_order
        customer_email = order.customer_email

        lines = await self._lines(order_id)
        if not lines:
            log.warning("paid order without items", order_id=order_id)
            return []

        email = await self._contact_email(user_id, customer_email)
        done: List[MaterializedItem] = []
        purchased = []
        for line in lines:
            try:
                result = await self._materialize_item(
                    order_id, user_id, line, email
                )
            except Exception:
                # best effort per line: keep going with the siblings
                log.exception("materialization failed", order_id=order_id,
                              order_item_id=line.order_item_id)
                continue
            done.append(result)
            if result.created:
                purchased.append({
                    "name": line.product_name,
                    "download_url": (
                        download_url(result.download_token)
                        if result.download_token else None
                    ),
                })

        if email and purchased:
            try:
                send_purchase_confirmation(email, commerce_order, purchased)
            except Exception:
                log.warning("confirmation email failed", order_id=order_id,
                            exc_info=True)
        return done
