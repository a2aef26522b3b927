from __future__ import annotations
import secrets
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..helpers import now_ts, new_id
from ..infra.sql import Gated
from .db import (
    ExecutedCommand, GameItem, GameMoney, MinecraftOrder, MinecraftServer,
    Order, OrderItem, Product, Rank, RankCommand,
    CMD_FAILED, CMD_PENDING, CMD_SUCCESS,
    MC_APPLIED, MC_FAILED, MC_PENDING, MC_RETRYING, ORDER_PAID,
)


def generate_api_key() -> str:
    raw = secrets.token_hex(16).upper()
    return "-".join(raw[i:i + 8] for i in range(0, len(raw), 8))


def generate_api_secret() -> str:
    return secrets.token_hex(32)


def server_public(server: MinecraftServer) -> Dict[str, Any]:
    # api_secret is only ever shown by create_server's caller
    return {
        "id": server.id,
        "name": server.name,
        "host": server.host,
        "port": server.port,
        "api_key": server.api_key,
        "api_secret": "***hidden***",
        "webhook_url": server.webhook_url,
        "rcon_host": server.rcon_host,
        "rcon_port": server.rcon_port,
        "active": server.active,
        "created_at": server.created_at,
    }


class MinecraftStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    # ----------------------------
    # servers
    # ----------------------------
    async def create_server(
        self, name: str, host: str, port: int = 25565,
        webhook_url: Optional[str] = None,
        rcon_host: Optional[str] = None, rcon_port: Optional[int] = None,
        rcon_password: Optional[str] = None,
    ) -> MinecraftServer:
        server = MinecraftServer(
            id=new_id(),
            name=name,
            host=host,
            port=port or 25565,
            api_key=generate_api_key(),
            api_secret=generate_api_secret(),
            webhook_url=webhook_url or None,
            rcon_host=rcon_host or None,
            rcon_port=rcon_port or 25575,
            rcon_password=rcon_password or None,
            active=True,
            created_at=now_ts(),
        )
        async with self.gated():
            async with self.db.begin():
                self.db.add(server)
        return server

    async def list_servers(self) -> List[MinecraftServer]:
        async with self.gated():
            async with self.db.begin():
                return list((await self.db.execute(
                    select(MinecraftServer)
                    .order_by(MinecraftServer.created_at.desc())
                )).scalars().all())

    async def get_server(self, server_id: str,
                         active_only: bool = True
                         ) -> Optional[MinecraftServer]:
        stmt = select(MinecraftServer).where(MinecraftServer.id == server_id)
        if active_only:
            stmt = stmt.where(MinecraftServer.active.is_(True))
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(stmt)).scalars().first()

    async def get_active_server_by_api_key(
            self, api_key: str
    ) -> Optional[MinecraftServer]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(MinecraftServer).where(
                        MinecraftServer.api_key == api_key,
                        MinecraftServer.active.is_(True),
                    )
                )).scalars().first()

    # ----------------------------
    # fulfillment templates
    # ----------------------------
    async def rank_for_product(self, product_id: str) -> Optional[Rank]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Rank).where(Rank.product_id == product_id)
                )).scalars().first()

    async def rank_commands(self, rank_id: str,
                            server_id: str) -> List[RankCommand]:
        async with self.gated():
            async with self.db.begin():
                return list((await self.db.execute(
                    select(RankCommand)
                    .where(RankCommand.rank_id == rank_id,
                           or_(RankCommand.server_id.is_(None),
                               RankCommand.server_id == server_id))
                    .order_by(RankCommand.execution_order.asc(),
                              RankCommand.id.asc())
                )).scalars().all())

    async def game_item_for_product(
            self, product_id: str
    ) -> Optional[GameItem]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(GameItem).where(GameItem.product_id == product_id)
                )).scalars().first()

    async def game_money_for_product(
            self, product_id: str
    ) -> Optional[GameMoney]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(GameMoney)
                    .where(GameMoney.product_id == product_id)
                )).scalars().first()

    # ----------------------------
    # minecraft orders
    # ----------------------------
    async def create_minecraft_order(
        self, order_id: str, username: str, uuid: str,
        server_id: Optional[str] = None,
    ) -> MinecraftOrder:
        ts = now_ts()
        mo = MinecraftOrder(
            id=new_id(),
            order_id=order_id,
            server_id=server_id,
            minecraft_username=username,
            minecraft_uuid=uuid,
            status=MC_PENDING,
            retry_count=0,
            created_at=ts,
            updated_at=ts,
        )
        async with self.gated():
            async with self.db.begin():
                self.db.add(mo)
        return mo

    async def get_minecraft_order(
            self, minecraft_order_id: str
    ) -> Optional[MinecraftOrder]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(MinecraftOrder)
                    .where(MinecraftOrder.id == minecraft_order_id)
                    .execution_options(populate_existing=True)
                )).scalars().first()

    async def minecraft_orders_for(self, order_id: str
                                   ) -> List[MinecraftOrder]:
        async with self.gated():
            async with self.db.begin():
                return list((await self.db.execute(
                    select(MinecraftOrder)
                    .where(MinecraftOrder.order_id == order_id)
                    .order_by(MinecraftOrder.created_at)
                )).scalars().all())

    async def order_lines(self, order_id: str):
        """[(OrderItem, Product)] in purchase order."""
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(OrderItem, Product)
                    .join(Product, Product.id == OrderItem.product_id)
                    .where(OrderItem.order_id == order_id)
                    .order_by(OrderItem.created_at, OrderItem.id)
                )).all()

    async def order_status(self, order_id: str) -> Optional[str]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Order.status).where(Order.id == order_id)
                )).scalar_one_or_none()

    def _unclaimed(self, now: float):
        return or_(MinecraftOrder.claimed_until.is_(None),
                   MinecraftOrder.claimed_until < now)

    async def claim(self, minecraft_order_id: str,
                    lease: float = config.DISPATCH_LEASE_SECONDS) -> bool:
        """Hold an open order for one push; False if someone else has it."""
        ts = now_ts()
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    update(MinecraftOrder)
                    .where(MinecraftOrder.id == minecraft_order_id,
                           MinecraftOrder.status.in_(
                               (MC_PENDING, MC_RETRYING)),
                           self._unclaimed(ts))
                    .values(claimed_until=ts + lease)
                    .execution_options(synchronize_session=False)
                )
        return res.rowcount == 1

    async def release(self, minecraft_order_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    update(MinecraftOrder)
                    .where(MinecraftOrder.id == minecraft_order_id)
                    .values(claimed_until=None)
                    .execution_options(synchronize_session=False)
                )

    async def mark_applied(self, minecraft_order_id: str) -> bool:
        ts = now_ts()
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    update(MinecraftOrder)
                    .where(MinecraftOrder.id == minecraft_order_id,
                           MinecraftOrder.status != MC_APPLIED)
                    .values(status=MC_APPLIED, applied_at=ts,
                            error_message=None, claimed_until=None,
                            updated_at=ts)
                    .execution_options(synchronize_session=False)
                )
        return res.rowcount == 1

    async def mark_failed_attempt(
        self, minecraft_order_id: str, error: Optional[str],
        max_retries: int,
    ) -> Optional[str]:
        """retrying (retry_count + 1) or failed once retries run out."""
        mo = await self.get_minecraft_order(minecraft_order_id)
        if mo is None or mo.status == MC_APPLIED:
            return None
        retries = (mo.retry_count or 0) + 1
        status = MC_FAILED if retries >= max_retries else MC_RETRYING
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    update(MinecraftOrder)
                    .where(MinecraftOrder.id == minecraft_order_id,
                           MinecraftOrder.status != MC_APPLIED)
                    .values(status=status, retry_count=retries,
                            error_message=error, claimed_until=None,
                            updated_at=now_ts())
                    .execution_options(synchronize_session=False)
                )
        return status

    async def confirm(self, minecraft_order_id: str, success: bool,
                      error_message: Optional[str] = None,
                      server_id: Optional[str] = None) -> Optional[str]:
        """Plugin-side outcome. Applied is final; returns the new status."""
        ts = now_ts()
        status = MC_APPLIED if success else MC_FAILED
        values: Dict[str, Any] = {"status": status, "claimed_until": None,
                                  "updated_at": ts}
        if success:
            values["applied_at"] = ts
            values["error_message"] = None
        elif error_message:
            values["error_message"] = error_message
        stmt = (
            update(MinecraftOrder)
            .where(MinecraftOrder.id == minecraft_order_id,
                   MinecraftOrder.status != MC_APPLIED)
        )
        if server_id is not None:
            stmt = stmt.where(or_(MinecraftOrder.server_id.is_(None),
                                  MinecraftOrder.server_id == server_id))
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    stmt.values(**values)
                    .execution_options(synchronize_session=False)
                )
        return status if res.rowcount == 1 else None

    async def retrying_orders(self, limit: int = 20) -> List[MinecraftOrder]:
        async with self.gated():
            async with self.db.begin():
                return list((await self.db.execute(
                    select(MinecraftOrder)
                    .where(MinecraftOrder.status == MC_RETRYING,
                           self._unclaimed(now_ts()))
                    .order_by(MinecraftOrder.updated_at.asc())
                    .limit(limit)
                )).scalars().all())

    async def pending_orders(
        self, server_id: str, limit: int = 10,
        lease: float = config.DISPATCH_LEASE_SECONDS,
    ) -> List[Dict[str, Any]]:
        """Oldest pending orders for a server (or unassigned), paid only.

        Every order handed out is leased to the polling plugin, so neither a
        push nor the next poll picks it up before the plugin confirms it or
        the lease runs out.
        """
        ts = now_ts()
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(MinecraftOrder, Order)
                    .join(Order, Order.id == MinecraftOrder.order_id)
                    .where(MinecraftOrder.status == MC_PENDING,
                           Order.status == ORDER_PAID,
                           self._unclaimed(ts),
                           or_(MinecraftOrder.server_id.is_(None),
                               MinecraftOrder.server_id == server_id))
                    .order_by(MinecraftOrder.created_at.asc())
                    .limit(limit)
                )).all()
                leased = []
                for mo, order in rows:
                    res = await self.db.execute(
                        update(MinecraftOrder)
                        .where(MinecraftOrder.id == mo.id,
                               MinecraftOrder.status == MC_PENDING,
                               self._unclaimed(ts))
                        .values(claimed_until=ts + lease)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount == 1:
                        leased.append((mo, order))
        out = []
        for mo, order in leased:
            out.append({
                "id": mo.id,
                "order_id": mo.order_id,
                "server_id": mo.server_id,
                "minecraft_username": mo.minecraft_username,
                "minecraft_uuid": mo.minecraft_uuid,
                "status": mo.status,
                "retry_count": mo.retry_count,
                "created_at": mo.created_at,
                "order": {
                    "id": order.id,
                    "status": order.status,
                    "user_id": order.user_id,
                    "order_items": await self._expand_items(order.id,
                                                            server_id),
                },
            })
        return out

    async def _expand_items(self, order_id: str,
                            server_id: str) -> List[Dict[str, Any]]:
        items = []
        for item, product in await self.order_lines(order_id):
            entry: Dict[str, Any] = {
                "id": item.id,
                "quantity": item.quantity,
                "product": {
                    "id": product.id,
                    "name": product.name,
                    "product_type": product.product_type,
                },
            }
            if product.product_type == "rank":
                rank = await self.rank_for_product(product.id)
                if rank is not None:
                    entry["product"]["rank"] = {
                        "id": rank.id,
                        "name": rank.name,
                        "luckperms_group": rank.luckperms_group,
                        "commands": [
                            {"command": c.command,
                             "command_type": c.command_type,
                             "execution_order": c.execution_order}
                            for c in await self.rank_commands(rank.id,
                                                              server_id)
                        ],
                    }
            elif product.product_type == "item":
                gi = await self.game_item_for_product(product.id)
                if gi is not None:
                    entry["product"]["game_item"] = {
                        "item_id": gi.item_id,
                        "quantity": gi.quantity,
                        "commands": gi.commands or [],
                    }
            elif product.product_type == "money":
                gm = await self.game_money_for_product(product.id)
                if gm is not None:
                    entry["product"]["game_money"] = {
                        "amount": gm.amount,
                        "currency_type": gm.currency_type,
                        "command": gm.command,
                    }
            items.append(entry)
        return items

    # ----------------------------
    # executed commands
    # ----------------------------
    async def record_command(
        self, server_id: str, command: str, command_type: str,
        minecraft_order_id: Optional[str] = None,
        command_key: Optional[str] = None,
    ) -> ExecutedCommand:
        row = ExecutedCommand(
            id=new_id(),
            minecraft_order_id=minecraft_order_id,
            server_id=server_id,
            command_key=command_key,
            command=command,
            command_type=command_type,
            status=CMD_PENDING,
            created_at=now_ts(),
        )
        async with self.gated():
            async with self.db.begin():
                self.db.add(row)
        return row

    async def finish_command(
        self, executed_command_id: str, success: bool,
        response: Optional[str] = None, error: Optional[str] = None,
        server_id: Optional[str] = None,
    ) -> bool:
        stmt = update(ExecutedCommand).where(
            ExecutedCommand.id == executed_command_id
        )
        if server_id is not None:
            stmt = stmt.where(ExecutedCommand.server_id == server_id)
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    stmt.values(
                        status=CMD_SUCCESS if success else CMD_FAILED,
                        response=response,
                        error_message=error,
                        executed_at=now_ts(),
                    ).execution_options(synchronize_session=False)
                )
        return res.rowcount == 1

    async def succeeded_keys(self, minecraft_order_id: str) -> Set[str]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(ExecutedCommand.command_key)
                    .where(ExecutedCommand.minecraft_order_id
                           == minecraft_order_id,
                           ExecutedCommand.status == CMD_SUCCESS,
                           ExecutedCommand.command_key.is_not(None))
                )).scalars().all()
        return set(rows)
