from __future__ import annotations
import os
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..errors import (
    AuthenticationError, ConflictError, ForbiddenError, InternalError,
    NotFoundError, ValidationError,
)
from ..helpers import now_ts, new_id
from ..infra.sql import Gated
from ..logs import get_logger, short
from .db import (
    License, Order, OrderItem, PluginVersion, Product, ProductDownload,
    UserProduct, LICENSE_ACTIVE, ORDER_PAID,
)

log = get_logger("downloads")

TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


def generate_download_token() -> str:
    # 256 bits, rendered as 64 lowercase hex chars
    return secrets.token_hex(32)


def is_valid_download_token(token: Optional[str]) -> bool:
    return bool(token) and TOKEN_RE.match(token) is not None


def download_url(token: str) -> str:
    return f"{config.APP_URL}/downloads/{token}"


@dataclass
class Redemption:
    download_id: str
    product_id: str
    product_name: str
    file_path: str
    file_name: str
    file_size: int


class DownloadStore:
    def __init__(self, *, db: AsyncSession, gated: Gated,
                 storage_dir: str = config.STORAGE_DIR,
                 ttl_seconds: int = config.DOWNLOAD_TTL_SECONDS) -> None:
        self.db = db
        self.gated = gated
        self.storage_dir = storage_dir
        self.ttl = ttl_seconds

    def new_grant(self, user_id: str, product_id: str,
                  order_id: Optional[str], license_id: Optional[str],
                  now: Optional[float] = None) -> ProductDownload:
        """Build an unsaved grant; callers add it inside their own tx."""
        ts = now if now is not None else now_ts()
        return ProductDownload(
            id=new_id(),
            user_id=user_id,
            product_id=product_id,
            order_id=order_id,
            license_id=license_id,
            download_token=generate_download_token(),
            expires_at=ts + self.ttl,
            used=False,
            created_at=ts,
        )

    async def issue(self, user_id: str, product_id: str,
                    order_id: Optional[str] = None,
                    license_id: Optional[str] = None) -> ProductDownload:
        grant = self.new_grant(user_id, product_id, order_id, license_id)
        async with self.gated():
            async with self.db.begin():
                self.db.add(grant)
        log.info("download grant issued", user_id=user_id,
                 product_id=product_id, token=short(grant.download_token))
        return grant

    async def entitlement(self, user_id: str, product_id: str):
        """(user_product, license) or (None, None)."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    select(UserProduct, License)
                    .join(License, License.id == UserProduct.license_id)
                    .where(UserProduct.user_id == user_id,
                           UserProduct.product_id == product_id)
                    .order_by(
                        (License.status == LICENSE_ACTIVE).desc(),
                        UserProduct.created_at.desc(),
                    )
                )).first()
        if row is None:
            return None, None
        return row[0], row[1]

    async def has_paid_order_for(self, user_id: str,
                                 product_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    select(OrderItem.id)
                    .join(Order, Order.id == OrderItem.order_id)
                    .where(OrderItem.product_id == product_id,
                           Order.user_id == user_id,
                           Order.status == ORDER_PAID)
                    .limit(1)
                )).first()
        return row is not None

    async def check_access(
        self, user_id: str, product_id: str,
        denied: str = "Ya no tienes acceso a este producto",
    ) -> Optional[UserProduct]:
        user_product, license = await self.entitlement(user_id, product_id)
        if user_product is None:
            if not await self.has_paid_order_for(user_id, product_id):
                raise ForbiddenError(denied)
            return None
        if license is not None and license.status != LICENSE_ACTIVE:
            raise ForbiddenError(
                "Tu licencia para este producto no está activa"
            )
        return user_product

    async def _file_path(self, product: Product) -> Optional[str]:
        async with self.gated():
            async with self.db.begin():
                active = (await self.db.execute(
                    select(PluginVersion.jar_file_path)
                    .where(PluginVersion.product_id == product.id,
                           PluginVersion.is_active.is_(True))
                    .order_by(PluginVersion.created_at.desc())
                )).scalars().first()
        return active or product.jar_file_path

    async def downloadable(self, product_id: str) -> Product:
        async with self.gated():
            async with self.db.begin():
                product = (await self.db.execute(
                    select(Product).where(Product.id == product_id)
                )).scalars().first()
        if product is None or not await self._file_path(product):
            raise NotFoundError("Producto no encontrado o sin archivo")
        return product

    def _resolve_on_disk(self, rel_path: str) -> str:
        root = os.path.realpath(self.storage_dir)
        full = os.path.realpath(os.path.join(root, rel_path.lstrip("/")))
        if os.path.commonpath([root, full]) != root:
            raise NotFoundError("Archivo no encontrado para este producto")
        return full

    async def redeem(self, token: str, user_id: Optional[str],
                     now: Optional[float] = None) -> Redemption:
        if not is_valid_download_token(token):
            raise ValidationError("Token inválido")
        ts = now if now is not None else now_ts()

        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    select(ProductDownload, Product)
                    .join(Product, Product.id == ProductDownload.product_id)
                    .where(ProductDownload.download_token == token)
                    .execution_options(populate_existing=True)
                )).first()
        if row is None:
            raise NotFoundError("Token de descarga no válido")
        grant, product = row[0], row[1]

        if user_id is None:
            raise AuthenticationError(
                "Debes estar autenticado para descargar"
            )
        if grant.user_id != user_id:
            raise ForbiddenError(
                "No tienes permiso para descargar este archivo"
            )
        if grant.used:
            raise ConflictError(
                "Este enlace de descarga ya fue utilizado. "
                "Genera uno nuevo desde tu dashboard."
            )
        if ts > grant.expires_at:
            raise ConflictError(
                "Este enlace de descarga ha expirado. "
                "Genera uno nuevo desde tu dashboard."
            )

        rel_path = await self._file_path(product)
        if not rel_path:
            raise NotFoundError("Archivo no encontrado para este producto")
        full = self._resolve_on_disk(rel_path)
        try:
            size = os.path.getsize(full)
        except FileNotFoundError:
            raise NotFoundError("Archivo no encontrado para este producto")
        except OSError as e:
            log.error("storage failure", path=rel_path, error=str(e))
            raise InternalError("Error al descargar el archivo")

        await self.check_access(user_id, grant.product_id)

        # check-and-set: of two concurrent redemptions only one flips it
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    update(ProductDownload)
                    .where(ProductDownload.id == grant.id,
                           ProductDownload.used.is_(False),
                           ProductDownload.expires_at >= ts)
                    .values(used=True, used_at=ts)
                    .execution_options(synchronize_session=False)
                )
        if res.rowcount != 1:
            raise ConflictError(
                "Este enlace de descarga ya fue utilizado. "
                "Genera uno nuevo desde tu dashboard."
            )

        return Redemption(
            download_id=grant.id,
            product_id=grant.product_id,
            product_name=product.name,
            file_path=full,
            file_name=os.path.basename(rel_path) or "plugin.jar",
            file_size=size,
        )
