from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from .db import License, Product, LICENSE_ACTIVE, LICENSE_EXPIRED


class LicenseStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def find_by_key(self, license_key: str):
        """(license, product) or (None, None)."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    select(License, Product)
                    .join(Product, Product.id == License.product_id)
                    .where(License.license_key == license_key)
                )).first()
        if row is None:
            return None, None
        return row[0], row[1]

    async def mark_expired(self, license_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    update(License)
                    .where(License.id == license_id,
                           License.status == LICENSE_ACTIVE)
                    .values(status=LICENSE_EXPIRED)
                    .execution_options(synchronize_session=False)
                )

    async def verify(self, license_key: str,
                     product_id: Optional[str] = None,
                     now: Optional[float] = None
                     ) -> Optional[Dict[str, Any]]:
        """Verdict for a license key; None if the key does not exist.

        An active license past its expiry is flipped to expired here.
        """
        license, product = await self.find_by_key(license_key)
        if license is None:
            return None
        if license.status != LICENSE_ACTIVE:
            return {"valid": False, "error": f"Licencia {license.status}",
                    "status": license.status}
        ts = now if now is not None else now_ts()
        if license.expires_at is not None and ts > license.expires_at:
            await self.mark_expired(license.id)
            return {"valid": False, "error": "Licencia expirada",
                    "status": LICENSE_EXPIRED}
        if product_id and license.product_id != product_id:
            return {"valid": False,
                    "error": "La licencia no corresponde a este producto"}
        return {
            "valid": True,
            "license": {
                "id": license.id,
                "product_id": license.product_id,
                "product_name": product.name,
                "status": license.status,
                "expires_at": to_iso(license.expires_at),
            },
        }
