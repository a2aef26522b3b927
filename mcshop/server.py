from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlencode

import httpx
import orjson
import redis.asyncio as redis
from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import FileResponse, ORJSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_201_CREATED, HTTP_303_SEE_OTHER

from . import config
from .dispatch import CommandDispatcher, RetrySupervisor
from .errors import (
    AuthenticationError, ForbiddenError, NotFoundError, RateLimited,
    ShopError, ValidationError,
)
from .flowpay import FlowPay, new_gateway
from .helpers import client_info, is_valid_email, to_iso
from .identity import Identity, IdentityClient
from .infra.ratelimit import new_limiter, limits_for, bucket_for
from .infra.ratelimit import BACKEND as RATE_LIMIT_BACKEND
from .infra.sql import Database
from .logs import configure_logging, get_logger, short
from .materialize import Materializer
from .model import audit
from .model.audit import AuditLogger
from .model.db import Base, ORDER_PAID
from .model.downloads import DownloadStore, download_url
from .model.licenses import LicenseStore
from .model.minecraft import MinecraftStore, server_public
from .model.orders import OrderStore
from .mojang import validate_username
from .pluginauth import PluginAuthGate
from .reconcile import (
    Reconciler, extract_params, extract_token, parse_notification,
)

configure_logging()
log = get_logger("server")

database = Database(config.DATABASE_URL)
SessionAsync = database.sessions
gated = database.gated


async def rate_limit(request: Request) -> None:
    limiter = getattr(request.app.state, "limiter", None)
    if limiter is None:
        return
    path = request.url.path
    limit, window = limits_for(path)
    ip, _ = client_info(request.headers)
    if ip is None and request.client is not None:
        ip = request.client.host
    allowed, retry_after = await limiter.hit(
        f"{bucket_for(path)}:{ip or 'unknown'}", limit, window
    )
    if not allowed:
        log.warning("rate limited", path=path, ip=ip)
        raise RateLimited(
            retry_after,
            "Demasiadas solicitudes. Por favor intenta más tarde.",
        )


app = FastAPI(
    title="MCShop",
    default_response_class=ORJSONResponse,
    dependencies=[Depends(rate_limit)],
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)


@app.exception_handler(ShopError)
async def _shop_error(request: Request, exc: ShopError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        log.error("request failed", path=request.url.path,
                  error=exc.message, kind=type(exc).__name__)
    return ORJSONResponse({"error": exc.message},
                          status_code=exc.status_code, headers=headers)


# ----------------------------
# Dependencies
# ----------------------------
async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


def get_http(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def get_gateway(http: httpx.AsyncClient = Depends(get_http)) -> FlowPay:
    return new_gateway(http)


def get_identity(
        http: httpx.AsyncClient = Depends(get_http)
) -> IdentityClient:
    return IdentityClient(http)


def get_orders(db: AsyncSession = Depends(get_db)) -> OrderStore:
    return OrderStore(db=db, gated=gated)


def get_audit(db: AsyncSession = Depends(get_db)) -> AuditLogger:
    return AuditLogger(db=db, gated=gated)


def get_downloads(db: AsyncSession = Depends(get_db)) -> DownloadStore:
    return DownloadStore(db=db, gated=gated)


def get_minecraft(db: AsyncSession = Depends(get_db)) -> MinecraftStore:
    return MinecraftStore(db=db, gated=gated)


def get_plugin_gate(
        store: MinecraftStore = Depends(get_minecraft)
) -> PluginAuthGate:
    return PluginAuthGate(store)


def get_reconciler(
    db: AsyncSession = Depends(get_db),
    gateway: FlowPay = Depends(get_gateway),
    identity: IdentityClient = Depends(get_identity),
) -> Reconciler:
    materializer = Materializer(
        db=db, gated=gated,
        downloads=DownloadStore(db=db, gated=gated),
        email_lookup=identity.email_for,
    )
    return Reconciler(
        orders=OrderStore(db=db, gated=gated),
        gateway=gateway,
        materializer=materializer,
        audit=AuditLogger(db=db, gated=gated),
    )


async def optional_user(
    request: Request,
    identity: IdentityClient = Depends(get_identity),
) -> Optional[Identity]:
    auth = request.headers.get("authorization") or ""
    if auth[:7].lower() == "bearer ":
        user = await identity.user_for_token(auth[7:].strip())
        if user is not None:
            request.session["identity"] = user.to_session()
        return user
    return Identity.from_session(request.session.get("identity"))


async def current_user(
        user: Optional[Identity] = Depends(optional_user)
) -> Identity:
    if user is None:
        raise AuthenticationError("No autorizado")
    return user


async def require_admin(user: Identity = Depends(current_user)) -> Identity:
    if not user.is_admin:
        raise ForbiddenError("Solo administradores")
    return user


@asynccontextmanager
async def dispatcher_scope():
    # background work outlives the request session; bring our own
    async with SessionAsync() as session:
        yield CommandDispatcher(
            store=MinecraftStore(db=session, gated=gated),
            http=app.state.http,
        )


async def fulfill_in_background(order_id: str) -> None:
    try:
        async with dispatcher_scope() as dispatcher:
            outcome = await dispatcher.fulfill_order(order_id)
        if outcome:
            log.info("fulfillment pushed", order_id=order_id,
                     outcome=outcome)
    except Exception:
        log.exception("background fulfillment failed", order_id=order_id)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info("mcshop starting", flow_environment=config.FLOW_ENVIRONMENT,
             rate_limit_backend=RATE_LIMIT_BACKEND,
             retry_interval=config.DISPATCH_RETRY_INTERVAL)


@app.on_event("startup")
async def _db_init():
    await database.create_all(Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=config.HTTP_TIMEOUT_SECONDS,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if RATE_LIMIT_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _limiter_start():
    app.state.limiter = new_limiter(r=getattr(app.state, "redis", None))


@app.on_event("startup")
async def _supervisor_start():
    app.state.supervisor = RetrySupervisor(
        dispatcher_scope, config.DISPATCH_RETRY_INTERVAL
    )
    app.state.supervisor.start()


@app.on_event("shutdown")
async def _supervisor_stop():
    supervisor = getattr(app.state, "supervisor", None)
    if supervisor is not None:
        await supervisor.stop()
        app.state.supervisor = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await database.dispose()


# ----------------------------
# Checkout
# ----------------------------
@app.post("/api/checkout")
async def create_checkout(
    payload: dict,
    request: Request,
    user: Identity = Depends(current_user),
    orders: OrderStore = Depends(get_orders),
    minecraft: MinecraftStore = Depends(get_minecraft),
    gateway: FlowPay = Depends(get_gateway),
    http: httpx.AsyncClient = Depends(get_http),
):
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("Faltan parámetros requeridos")
    for it in items:
        if not isinstance(it, dict) or not it.get("product_id"):
            raise ValidationError("Faltan parámetros requeridos")
        try:
            qty = int(it.get("quantity") or 1)
        except (TypeError, ValueError):
            qty = 0
        if qty < 1:
            raise ValidationError("Cantidad inválida")

    email = (payload.get("customer_email") or user.email or "").strip()
    if not is_valid_email(email):
        raise ValidationError(
            "customer_email es requerido y debe ser un email válido"
        )

    player = None
    username = (payload.get("minecraft_username") or "").strip()
    server_id = payload.get("server_id") or None
    if username:
        player = await validate_username(http, username)
        if not player.valid:
            raise ValidationError(player.error)
    if server_id is not None:
        if await minecraft.get_server(server_id) is None:
            raise ValidationError("Servidor no encontrado")

    order = await orders.create_order(user.id, items, customer_email=email,
                                      currency=config.FLOW_CURRENCY)
    if player is not None:
        await minecraft.create_minecraft_order(
            order.id, player.name or username, player.uuid, server_id
        )

    payment = await gateway.create_payment_order(
        order.commerce_order,
        f"Compra MCShop {order.commerce_order}",
        order.total,
        email,
        currency=order.currency,
        return_url=f"{config.APP_URL}/api/payment/finalize",
        confirmation_url=f"{config.APP_URL}/api/payment/webhook",
    )
    # the webhook can still find the order by commerceOrder without it
    try:
        await orders.set_payment_token(order.id, payment["token"],
                                       payment["external_order_id"])
    except Exception:
        log.warning("payment token not stored", order_id=order.id,
                    exc_info=True)

    log.info("checkout created", order_id=order.id,
             commerce_order=order.commerce_order, total=order.total,
             token=short(payment["token"], 20))
    return {
        "order_id": order.id,
        "commerce_order": order.commerce_order,
        "redirect_url": payment["redirect_url"],
        "token": payment["token"],
        "amount": order.total,
        "currency": order.currency,
    }


# ----------------------------
# Payment authority
# ----------------------------
@app.get("/api/payment/status")
async def payment_status(
    token: Optional[str] = None,
    commerceOrder: Optional[str] = None,
    gateway: FlowPay = Depends(get_gateway),
):
    if not token and not commerceOrder:
        raise ValidationError("Token o commerceOrder requerido")
    if token:
        status = await gateway.get_payment_status(token)
    else:
        status = await gateway.get_payment_status_by_commerce_order(
            commerceOrder
        )
    return {**status.raw, "orderStatus": status.resolve_order_status()}


@app.api_route("/api/payment/finalize", methods=["GET", "POST"])
async def payment_finalize(request: Request):
    # browser return from the authority; the webhook does the real work
    try:
        body, query = await parse_notification(request)
        params = extract_params(body)
        params["token"] = params["token"] or extract_token({}, query)
    except Exception:
        log.exception("finalize parsing failed")
        params = {"error": "Error al procesar la finalización del pago"}

    if params.get("error"):
        log.error("payment finalize error", error=params["error"],
                  token=short(params.get("token"), 20))
        qs = {"error": params["error"]}
        if params.get("token"):
            qs["token"] = params["token"]
        target = f"{config.APP_URL}/checkout/error?{urlencode(qs)}"
    else:
        qs = {}
        if params.get("token"):
            qs["token"] = params["token"]
        if params.get("status"):
            qs["status"] = str(params["status"])
        if params.get("flow_order"):
            qs["flowOrder"] = str(params["flow_order"])
        target = f"{config.APP_URL}/checkout/success?{urlencode(qs)}"
    return RedirectResponse(url=target, status_code=HTTP_303_SEE_OTHER)


@app.api_route("/api/payment/webhook", methods=["GET", "POST"])
async def payment_webhook(
    request: Request,
    background: BackgroundTasks,
    reconciler: Reconciler = Depends(get_reconciler),
):
    try:
        body, query = await parse_notification(request)
        token = extract_token(body, query)
        ip, user_agent = client_info(request.headers)
        result = await reconciler.reconcile(token, ip=ip,
                                            user_agent=user_agent)
    except (ValidationError, NotFoundError):
        raise
    except Exception:
        # anything else: let the authority retry the notification
        log.exception("webhook processing failed")
        return ORJSONResponse(
            {"error": "Error interno del servidor"}, status_code=500
        )

    if result.transitioned and result.status == ORDER_PAID:
        background.add_task(fulfill_in_background, result.order_id)
    return result.as_response()


# ----------------------------
# API: Order status (polled by success page)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    user: Identity = Depends(current_user),
    orders: OrderStore = Depends(get_orders),
    minecraft: MinecraftStore = Depends(get_minecraft),
):
    order = await orders.get(order_id)
    if order is None or (order.user_id != user.id and not user.is_admin):
        raise NotFoundError("Orden no encontrada")
    items = await orders.list_items(order.id)
    mc_orders = await minecraft.minecraft_orders_for(order.id)
    return {
        "order_id": order.id,
        "commerce_order": order.commerce_order,
        "status": order.status,
        "total": order.total,
        "currency": order.currency,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "items": [
            {"product_id": it.product_id, "quantity": it.quantity,
             "price": it.price}
            for it in items
        ],
        "minecraft": [
            {"id": mo.id, "status": mo.status,
             "minecraft_username": mo.minecraft_username,
             "retry_count": mo.retry_count,
             "error_message": mo.error_message}
            for mo in mc_orders
        ],
    }


# ----------------------------
# Downloads
# ----------------------------
@app.post("/api/downloads/generate")
async def generate_download(
    payload: dict,
    request: Request,
    user: Identity = Depends(current_user),
    downloads: DownloadStore = Depends(get_downloads),
    audit_log: AuditLogger = Depends(get_audit),
):
    product_id = payload.get("product_id")
    if not product_id:
        raise ValidationError("product_id es requerido")

    user_product = await downloads.check_access(
        user.id, product_id,
        denied="No tienes acceso a este producto. Debes comprarlo primero.",
    )
    product = await downloads.downloadable(product_id)
    grant = await downloads.issue(
        user.id, product_id,
        order_id=payload.get("order_id") or (
            user_product.order_id if user_product else None
        ),
        license_id=user_product.license_id if user_product else None,
    )

    ip, user_agent = client_info(request.headers)
    await audit_log.record(
        audit.DOWNLOAD_GENERATED, "product", product_id,
        user_id=user.id,
        details={
            "product_name": product.name,
            "download_token": short(grant.download_token),
            "expires_at": to_iso(grant.expires_at),
        },
        ip_address=ip, user_agent=user_agent,
    )
    return {
        "success": True,
        "download_url": download_url(grant.download_token),
        "expires_at": to_iso(grant.expires_at),
        "token": grant.download_token,
    }


@app.get("/downloads/{token}")
async def download_file(
    token: str,
    request: Request,
    user: Optional[Identity] = Depends(optional_user),
    downloads: DownloadStore = Depends(get_downloads),
    audit_log: AuditLogger = Depends(get_audit),
):
    redemption = await downloads.redeem(token, user.id if user else None)

    ip, user_agent = client_info(request.headers)
    await audit_log.record(
        audit.DOWNLOAD_COMPLETED, "product", redemption.product_id,
        user_id=user.id,
        details={
            "download_id": redemption.download_id,
            "product_name": redemption.product_name,
            "file_name": redemption.file_name,
            "file_size": redemption.file_size,
        },
        ip_address=ip, user_agent=user_agent,
    )
    log.info("download served", user_id=user.id,
             product_id=redemption.product_id, token=short(token))
    return FileResponse(
        redemption.file_path,
        filename=redemption.file_name,
        media_type="application/java-archive",
        headers={"Cache-Control": "no-store"},
    )


# ----------------------------
# Licenses
# ----------------------------
@app.post("/api/licenses/verify")
async def verify_license(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
    audit_log: AuditLogger = Depends(get_audit),
):
    license_key = payload.get("license_key")
    if not license_key:
        raise ValidationError("license_key es requerido")
    verdict = await LicenseStore(db=db, gated=gated).verify(
        license_key, payload.get("product_id")
    )
    if verdict is None:
        return ORJSONResponse(
            {"valid": False, "error": "Licencia no encontrada"},
            status_code=404,
        )

    ip, user_agent = client_info(request.headers)
    await audit_log.record(
        audit.LICENSE_VERIFIED, "license",
        verdict["license"]["id"] if verdict["valid"] else None,
        details={"valid": verdict["valid"],
                 "product_id": payload.get("product_id")},
        ip_address=ip, user_agent=user_agent,
    )
    return verdict


# ----------------------------
# Minecraft
# ----------------------------
@app.get("/api/minecraft/validate")
async def minecraft_validate(
    username: Optional[str] = None,
    http: httpx.AsyncClient = Depends(get_http),
):
    if not username:
        raise ValidationError("Username es requerido")
    return (await validate_username(http, username)).as_response()


def _json_body(raw: bytes) -> dict:
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError:
        raise ValidationError("Body JSON inválido")
    if not isinstance(data, dict):
        raise ValidationError("Body JSON inválido")
    return data


@app.get("/api/minecraft/plugin/pending-orders")
async def plugin_pending_orders(
    request: Request,
    gate: PluginAuthGate = Depends(get_plugin_gate),
    store: MinecraftStore = Depends(get_minecraft),
):
    server, _ = await gate.authenticate_request(request)
    orders = await store.pending_orders(server.id,
                                        config.PENDING_ORDERS_LIMIT)
    return {"success": True, "orders": orders}


@app.post("/api/minecraft/plugin/execute")
async def plugin_execute(
    request: Request,
    gate: PluginAuthGate = Depends(get_plugin_gate),
    store: MinecraftStore = Depends(get_minecraft),
):
    server, raw = await gate.authenticate_request(request)
    data = _json_body(raw)
    if not data.get("command"):
        raise ValidationError("Comando requerido")

    executed_command_id = data.get("executed_command_id")
    if executed_command_id:
        updated = await store.finish_command(
            executed_command_id, bool(data.get("success")),
            response=data.get("response"), error=data.get("error"),
            server_id=server.id,
        )
        log.info("command result reported", server_id=server.id,
                 executed_command_id=executed_command_id,
                 success=bool(data.get("success")), updated=updated)
    return {"success": True, "message": "Comando reportado correctamente"}


@app.post("/api/minecraft/plugin/confirm-order")
async def plugin_confirm_order(
    request: Request,
    gate: PluginAuthGate = Depends(get_plugin_gate),
    store: MinecraftStore = Depends(get_minecraft),
):
    server, raw = await gate.authenticate_request(request)
    data = _json_body(raw)
    minecraft_order_id = data.get("minecraft_order_id")
    if not minecraft_order_id:
        raise ValidationError("minecraft_order_id requerido")

    status = await store.confirm(
        minecraft_order_id, bool(data.get("success")),
        error_message=data.get("error_message"), server_id=server.id,
    )
    if status is None:
        log.info("confirmation ignored", server_id=server.id,
                 minecraft_order_id=minecraft_order_id)
    else:
        log.info("minecraft order confirmed", server_id=server.id,
                 minecraft_order_id=minecraft_order_id, status=status)
    return {"success": True, "message": "Orden actualizada correctamente"}


# ----------------------------
# Admin
# ----------------------------
@app.get("/api/admin/servers")
async def admin_list_servers(
    admin: Identity = Depends(require_admin),
    store: MinecraftStore = Depends(get_minecraft),
):
    return {"servers": [server_public(s)
                        for s in await store.list_servers()]}


@app.post("/api/admin/servers", status_code=HTTP_201_CREATED)
async def admin_create_server(
    payload: dict,
    request: Request,
    admin: Identity = Depends(require_admin),
    store: MinecraftStore = Depends(get_minecraft),
    audit_log: AuditLogger = Depends(get_audit),
):
    name = (payload.get("name") or "").strip()
    host = (payload.get("host") or "").strip()
    if not name or not host:
        raise ValidationError("name y host son requeridos")

    server = await store.create_server(
        name, host,
        port=payload.get("port") or 25565,
        webhook_url=payload.get("webhook_url"),
        rcon_host=payload.get("rcon_host"),
        rcon_port=payload.get("rcon_port"),
        rcon_password=payload.get("rcon_password"),
    )
    ip, user_agent = client_info(request.headers)
    await audit_log.record(
        audit.ADMIN_ACTION, "minecraft_server", server.id,
        user_id=admin.id, details={"op": "create_server", "name": name},
        ip_address=ip, user_agent=user_agent,
    )
    # the only time the secret leaves the server
    return {"server": {**server_public(server),
                       "api_secret": server.api_secret}}


@app.post("/api/admin/minecraft-orders/{minecraft_order_id}/retry")
async def admin_retry_minecraft_order(
    minecraft_order_id: str,
    request: Request,
    admin: Identity = Depends(require_admin),
    store: MinecraftStore = Depends(get_minecraft),
    http: httpx.AsyncClient = Depends(get_http),
    audit_log: AuditLogger = Depends(get_audit),
):
    if await store.get_minecraft_order(minecraft_order_id) is None:
        raise NotFoundError("Orden de Minecraft no encontrada")
    dispatcher = CommandDispatcher(store=store, http=http)
    batch = await dispatcher.fulfill(minecraft_order_id)
    mo = await store.get_minecraft_order(minecraft_order_id)

    ip, user_agent = client_info(request.headers)
    await audit_log.record(
        audit.ADMIN_ACTION, "minecraft_order", minecraft_order_id,
        user_id=admin.id,
        details={"op": "retry", "pushed": batch is not None,
                 "status": mo.status},
        ip_address=ip, user_agent=user_agent,
    )
    return {
        "success": True,
        "pushed": batch is not None,
        "status": mo.status,
        "error": batch.error if batch is not None else None,
    }


@app.get("/api/admin/audit-logs")
async def admin_audit_logs(
    limit: int = 100,
    offset: int = 0,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    user_id: Optional[str] = None,
    admin: Identity = Depends(require_admin),
    audit_log: AuditLogger = Depends(get_audit),
):
    rows = await audit_log.recent(limit=limit, offset=offset, action=action,
                                  resource_type=resource_type,
                                  user_id=user_id)
    return {
        "logs": [
            {
                "id": r.id,
                "user_id": r.user_id,
                "action": r.action,
                "resource_type": r.resource_type,
                "resource_id": r.resource_id,
                "details": r.details,
                "ip_address": r.ip_address,
                "user_agent": r.user_agent,
                "created_at": to_iso(r.created_at),
            }
            for r in rows
        ],
        "total": len(rows),
        "limit": limit,
        "offset": offset,
    }
