"""
Remote command dispatch to registered game servers.

A purchased rank / item / money product expands into one or more command
strings that run, in declared order, on the target server. Every command is
written to ``executed_commands`` as pending before it is sent and updated
once the server answers (a timeout counts as failed). A failing command does
not stop the batch; the batch fails if any command failed and reports the
last error seen. The per-command rows are the detailed record.

The dispatcher never retries by itself. A failed batch moves the
MinecraftOrder to ``retrying``; ``RetrySupervisor`` re-runs it later and only
commands whose key has no ``success`` row are sent again, so item and money
grants are not handed out twice.
"""
from __future__ import annotations
import asyncio
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Set

import httpx
import orjson

from . import config
from .logs import get_logger
from .model.db import (
    GameItem, GameMoney, MinecraftOrder, MinecraftServer, Rank, ORDER_PAID,
    MC_APPLIED, MC_FAILED,
)
from .model.minecraft import MinecraftStore
from .rcon import RconClient, RconError
from .signature import sign_payload

log = get_logger("dispatcher")

# Only these placeholders are substituted. Values go in verbatim: no
# escaping for the target command syntax. Player names are checked against
# the Minecraft username pattern at checkout, which is the only guard.
PLACEHOLDERS = frozenset(
    ("username", "uuid", "group", "item", "amount", "quantity")
)
_PLACEHOLDER_RE = re.compile(r"\{([a-z_]+)\}")

DEFAULT_RANK_COMMAND = "lp user {username} parent set {group}"
DEFAULT_ITEM_COMMAND = "give {username} {item} {quantity}"
DEFAULT_MONEY_COMMANDS = {
    "vault": "eco give {username} {amount}",
    "playerpoints": "points give {username} {amount}",
}


def render_command(template: str, values: Mapping[str, object]) -> str:
    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name in PLACEHOLDERS and name in values:
            return str(values[name])
        return m.group(0)
    return _PLACEHOLDER_RE.sub(_sub, template)


@dataclass
class PlannedCommand:
    command: str
    command_type: str = "console"
    key: Optional[str] = None


@dataclass
class CommandResult:
    success: bool
    response: Optional[str] = None
    error: Optional[str] = None
    executed_command_id: Optional[str] = None
    skipped: bool = False


@dataclass
class BatchResult:
    success: bool
    error: Optional[str] = None
    results: List[CommandResult] = field(default_factory=list)


RconFactory = Callable[[MinecraftServer], RconClient]


def default_rcon_factory(server: MinecraftServer) -> RconClient:
    return RconClient(server.rcon_host, server.rcon_port or 25575,
                      server.rcon_password or "",
                      timeout=config.HTTP_TIMEOUT_SECONDS)


class CommandDispatcher:
    def __init__(self, *, store: MinecraftStore, http: httpx.AsyncClient,
                 rcon_factory: RconFactory = default_rcon_factory,
                 timeout: float = config.HTTP_TIMEOUT_SECONDS,
                 max_retries: int = config.DISPATCH_MAX_RETRIES) -> None:
        self.store = store
        self.http = http
        self.rcon_factory = rcon_factory
        self.timeout = timeout
        self.max_retries = max_retries

    # ----------------------------
    # channels
    # ----------------------------
    async def _via_webhook(self, server: MinecraftServer, command: str,
                           command_type: str,
                           executed_command_id: Optional[str]
                           ) -> CommandResult:
        body = orjson.dumps({
            "command": command,
            "command_type": command_type,
            "server_id": server.id,
            "executed_command_id": executed_command_id,
        })
        try:
            r = await self.http.post(
                server.webhook_url,
                content=body,
                headers={
                    "content-type": "application/json",
                    "x-api-key": server.api_key,
                    "x-signature": sign_payload(body, server.api_secret),
                },
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            return CommandResult(False, error="Tiempo de espera agotado")
        except httpx.HTTPError as e:
            return CommandResult(False, error=f"Error de conexión: {e}")

        if r.status_code >= 400:
            return CommandResult(
                False,
                error=f"Error del servidor: {r.status_code} - {r.text}"
            )
        try:
            data = r.json()
        except ValueError:
            return CommandResult(False, error="Respuesta inválida del plugin")
        if not isinstance(data, dict):
            return CommandResult(False, error="Respuesta inválida del plugin")
        return CommandResult(
            bool(data.get("success")),
            response=data.get("response"),
            error=data.get("error"),
        )

    async def _via_rcon(self, server: MinecraftServer,
                        command: str) -> CommandResult:
        try:
            async with self.rcon_factory(server) as rcon:
                response = await rcon.command(command)
        except asyncio.TimeoutError:
            return CommandResult(False, error="Tiempo de espera agotado")
        except (RconError, OSError) as e:
            return CommandResult(False, error=f"Error RCON: {e}")
        return CommandResult(True, response=response)

    async def execute_command(
        self, server: MinecraftServer, command: str,
        command_type: str = "console",
        minecraft_order_id: Optional[str] = None,
        command_key: Optional[str] = None,
    ) -> CommandResult:
        row = await self.store.record_command(
            server.id, command, command_type,
            minecraft_order_id=minecraft_order_id, command_key=command_key,
        )
        try:
            if server.webhook_url:
                result = await self._via_webhook(server, command,
                                                 command_type, row.id)
            elif server.rcon_host and server.rcon_password:
                result = await self._via_rcon(server, command)
            else:
                result = CommandResult(
                    False,
                    error="No hay método de ejecución configurado para "
                          "este servidor",
                )
        except Exception as e:
            log.exception("command dispatch crashed", server_id=server.id)
            result = CommandResult(False, error=str(e) or "Error desconocido")

        result.executed_command_id = row.id
        await self.store.finish_command(row.id, result.success,
                                        response=result.response,
                                        error=result.error)
        if not result.success:
            log.warning("command failed", server_id=server.id,
                        command=command, error=result.error)
        return result

    async def run_batch(self, server: MinecraftServer,
                        planned: List[PlannedCommand],
                        minecraft_order_id: Optional[str] = None,
                        skip_keys: Optional[Set[str]] = None
                        ) -> BatchResult:
        skip_keys = skip_keys or set()
        ok = True
        last_error = None
        results = []
        for p in planned:
            if p.key is not None and p.key in skip_keys:
                results.append(CommandResult(True, skipped=True))
                continue
            result = await self.execute_command(
                server, p.command, p.command_type,
                minecraft_order_id=minecraft_order_id, command_key=p.key,
            )
            results.append(result)
            if not result.success:
                ok = False
                last_error = result.error
        return BatchResult(ok, last_error, results)

    # ----------------------------
    # templates
    # ----------------------------
    async def plan_rank(self, server: MinecraftServer, username: str,
                        uuid: str, rank: Rank,
                        key_prefix: str = "") -> List[PlannedCommand]:
        values = {"username": username, "uuid": uuid,
                  "group": rank.luckperms_group}
        commands = await self.store.rank_commands(rank.id, server.id)
        if not commands:
            return [PlannedCommand(
                render_command(DEFAULT_RANK_COMMAND, values), "luckperms",
                f"{key_prefix}0" if key_prefix else None,
            )]
        return [
            PlannedCommand(
                render_command(c.command, values),
                c.command_type or "luckperms",
                f"{key_prefix}{i}" if key_prefix else None,
            )
            for i, c in enumerate(commands)
        ]

    def plan_item(self, username: str, uuid: str, item: GameItem,
                  key_prefix: str = "") -> List[PlannedCommand]:
        values = {"username": username, "uuid": uuid,
                  "quantity": item.quantity, "item": item.item_id or ""}
        templates = list(item.commands or [])
        if not templates:
            values["item"] = item.item_id or "diamond"
            templates = [DEFAULT_ITEM_COMMAND]
        return [
            PlannedCommand(render_command(t, values), "console",
                           f"{key_prefix}{i}" if key_prefix else None)
            for i, t in enumerate(templates)
        ]

    def plan_money(self, username: str, uuid: str, money: GameMoney,
                   key_prefix: str = "") -> Optional[List[PlannedCommand]]:
        values = {"username": username, "uuid": uuid,
                  "amount": money.amount}
        template = money.command or DEFAULT_MONEY_COMMANDS.get(
            money.currency_type
        )
        if template is None:
            return None
        return [PlannedCommand(render_command(template, values), "console",
                               f"{key_prefix}0" if key_prefix else None)]

    # ----------------------------
    # per product type
    # ----------------------------
    async def apply_rank(self, server: MinecraftServer, username: str,
                         uuid: str, rank: Rank,
                         minecraft_order_id: Optional[str] = None
                         ) -> BatchResult:
        planned = await self.plan_rank(server, username, uuid, rank)
        return await self.run_batch(server, planned, minecraft_order_id)

    async def apply_item(self, server: MinecraftServer, username: str,
                         uuid: str, item: GameItem,
                         minecraft_order_id: Optional[str] = None
                         ) -> BatchResult:
        planned = self.plan_item(username, uuid, item)
        return await self.run_batch(server, planned, minecraft_order_id)

    async def apply_money(self, server: MinecraftServer, username: str,
                          uuid: str, money: GameMoney,
                          minecraft_order_id: Optional[str] = None
                          ) -> BatchResult:
        planned = self.plan_money(username, uuid, money)
        if planned is None:
            return BatchResult(
                False,
                "Tipo de moneda no soportado sin comando personalizado",
            )
        return await self.run_batch(server, planned, minecraft_order_id)

    # ----------------------------
    # whole minecraft order
    # ----------------------------
    async def fulfill(self, minecraft_order_id: str) -> Optional[BatchResult]:
        """Push every command of a MinecraftOrder to its server.

        Returns None when there is nothing to push: unknown or settled
        order, unpaid order, or no assigned server with a channel (the
        plugin then picks the order up through pending-orders),
        or another push or a plugin poll holds the order.
        """
        mo = await self.store.get_minecraft_order(minecraft_order_id)
        if mo is None or mo.status in (MC_APPLIED, MC_FAILED):
            return None
        if await self.store.order_status(mo.order_id) != ORDER_PAID:
            return None
        if not mo.server_id:
            return None
        server = await self.store.get_server(mo.server_id)
        if server is None:
            return None
        if not server.webhook_url and not (server.rcon_host
                                           and server.rcon_password):
            return None
        if not await self.store.claim(mo.id):
            log.info("minecraft order already being delivered",
                     minecraft_order_id=mo.id)
            return None
        try:
            return await self._push(server, mo)
        finally:
            await self.store.release(mo.id)

    async def _push(self, server: MinecraftServer,
                    mo: MinecraftOrder) -> BatchResult:
        planned: List[PlannedCommand] = []
        errors: List[str] = []
        for item, product in await self.store.order_lines(mo.order_id):
            prefix = f"{item.id}:"
            username, uuid = mo.minecraft_username, mo.minecraft_uuid
            if product.product_type == "rank":
                rank = await self.store.rank_for_product(product.id)
                if rank is None:
                    errors.append(f"Rango no configurado: {product.name}")
                    continue
                planned += await self.plan_rank(server, username, uuid,
                                                rank, prefix)
            elif product.product_type == "item":
                gi = await self.store.game_item_for_product(product.id)
                if gi is None:
                    errors.append(f"Item no configurado: {product.name}")
                    continue
                planned += self.plan_item(username, uuid, gi, prefix)
            elif product.product_type == "money":
                gm = await self.store.game_money_for_product(product.id)
                money = (self.plan_money(username, uuid, gm, prefix)
                         if gm is not None else None)
                if money is None:
                    errors.append(
                        "Tipo de moneda no soportado sin comando "
                        f"personalizado: {product.name}"
                    )
                    continue
                planned += money

        skip = await self.store.succeeded_keys(mo.id)
        batch = await self.run_batch(server, planned, mo.id, skip)
        if errors:
            batch.success = False
            batch.error = batch.error or errors[-1]

        if batch.success:
            await self.store.mark_applied(mo.id)
            log.info("minecraft order applied", minecraft_order_id=mo.id,
                     commands=len(planned), skipped=len(skip))
        else:
            status = await self.store.mark_failed_attempt(
                mo.id, batch.error, self.max_retries
            )
            log.warning("minecraft order not applied",
                        minecraft_order_id=mo.id, status=status,
                        error=batch.error)
        return batch

    async def fulfill_order(self, order_id: str) -> Dict[str, Optional[bool]]:
        out: Dict[str, Optional[bool]] = {}
        for mo in await self.store.minecraft_orders_for(order_id):
            try:
                batch = await self.fulfill(mo.id)
            except Exception:
                log.exception("fulfillment crashed",
                              minecraft_order_id=mo.id)
                out[mo.id] = False
                continue
            out[mo.id] = None if batch is None else batch.success
        return out


class RetrySupervisor:
    """Periodically re-drives MinecraftOrders left in ``retrying``."""

    def __init__(self, make_dispatcher, interval: float,
                 batch_size: int = 20) -> None:
        # make_dispatcher: async context manager factory yielding a
        # CommandDispatcher bound to a fresh session
        self.make_dispatcher = make_dispatcher
        self.interval = interval
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> int:
        async with self.make_dispatcher() as dispatcher:
            due = await dispatcher.store.retrying_orders(self.batch_size)
            for mo in due:
                try:
                    await dispatcher.fulfill(mo.id)
                except Exception:
                    log.exception("retry crashed", minecraft_order_id=mo.id)
        return len(due)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                n = await self.sweep()
                if n:
                    log.info("retry sweep", orders=n)
            except Exception:
                log.exception("retry sweep failed")

    def start(self) -> None:
        if self._task is None and self.interval > 0:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
