import inspect
import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="mcshop-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/test.db"
os.environ["STORAGE_DIR"] = os.path.join(_TMP, "storage")
os.environ["APP_URL"] = "http://testserver"
os.environ["FLOW_API_KEY"] = "test-api-key"
os.environ["FLOW_SECRET_KEY"] = "test-secret-key"
os.environ["FLOW_ENVIRONMENT"] = "sandbox"
os.environ["DISPATCH_RETRY_INTERVAL"] = "0"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["IDENTITY_URL"] = ""
os.environ["LOG_JSON"] = "0"
os.environ["LOG_LEVEL"] = "WARNING"

import json  # noqa: E402
from typing import Any, Callable, Dict, List, Optional  # noqa: E402
from urllib.parse import parse_qsl  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi import Request  # noqa: E402
from sqlalchemy import func, select  # noqa: E402

from mcshop import server  # noqa: E402
from mcshop.helpers import now_ts, new_id  # noqa: E402
from mcshop.identity import Identity  # noqa: E402
from mcshop.model.db import (  # noqa: E402
    Base, Order, OrderItem, Product, ORDER_PENDING,
)
from mcshop.model.minecraft import MinecraftStore  # noqa: E402

STORAGE_DIR = os.environ["STORAGE_DIR"]
FLOW_HOST = "sandbox.flow.cl"
MOJANG_HOST = "api.mojang.com"
PLUGIN_HOST = "plugin.test"


# ----------------------------
# fake upstreams
# ----------------------------
class FakeFlow:
    """Just enough of the payment authority's REST surface."""

    def __init__(self) -> None:
        self.statuses: Dict[str, Dict[str, Any]] = {}
        self.created: List[Dict[str, str]] = []
        self.fail_with: Optional[int] = None
        self._seq = 0

    def set_status(self, token: str, status: int, commerce_order: str,
                   amount: int = 15000, settled: bool = False) -> None:
        self.statuses[token] = {
            "flowOrder": 1000 + len(self.statuses),
            "commerceOrder": commerce_order,
            "status": status,
            "amount": amount,
            "currency": "CLP",
            "paymentData": {"date": "2024-01-01 10:00:00"} if settled
            else {"date": None},
        }

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            return httpx.Response(self.fail_with,
                                  json={"message": "boom"})
        if request.url.path.endswith("/payment/create"):
            params = dict(parse_qsl(request.content.decode()))
            self.created.append(params)
            self._seq += 1
            return httpx.Response(200, json={
                "token": f"flow-token-{self._seq}",
                "url": "https://sandbox.flow.cl/app/web/pay.php",
                "flowOrder": 5000 + self._seq,
            })
        if request.url.path.endswith("/payment/getStatus"):
            token = request.url.params.get("token")
            if token not in self.statuses:
                return httpx.Response(400, json={"message": "token"})
            return httpx.Response(200, json=self.statuses[token])
        return httpx.Response(404, json={"message": "not found"})


class Upstreams:
    def __init__(self) -> None:
        self.flow = FakeFlow()
        self.mojang: Dict[str, str] = {}
        self.plugin_requests: List[httpx.Request] = []
        self.plugin: Callable[[Dict[str, Any]], Any] = (
            lambda cmd: {"success": True, "response": "ok"}
        )
        self.client = httpx.AsyncClient(
            transport=httpx.MockTransport(self.handle)
        )

    async def handle(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == FLOW_HOST:
            return self.flow.handle(request)
        if host == MOJANG_HOST:
            name = request.url.path.rsplit("/", 1)[-1]
            uuid = self.mojang.get(name.lower())
            if uuid is None:
                return httpx.Response(204)
            return httpx.Response(200, json={"id": uuid, "name": name})
        if host == PLUGIN_HOST:
            self.plugin_requests.append(request)
            out = self.plugin(json.loads(request.content))
            if inspect.isawaitable(out):
                out = await out
            if isinstance(out, httpx.Response):
                return out
            return httpx.Response(200, json=out)
        return httpx.Response(502)


# ----------------------------
# fixtures
# ----------------------------
async def _test_user(request: Request) -> Optional[Identity]:
    uid = request.headers.get("x-test-user")
    if not uid:
        return None
    return Identity(id=uid, email=f"{uid}@example.com",
                    role=request.headers.get("x-test-role"))


@pytest.fixture(autouse=True)
async def fresh_db():
    async with server.database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await server.database.dispose()


@pytest.fixture
async def upstreams():
    u = Upstreams()
    yield u
    await u.client.aclose()


@pytest.fixture
async def client(upstreams):
    app = server.app
    app.dependency_overrides[server.optional_user] = _test_user
    async with app.router.lifespan_context(app):
        await app.state.http.aclose()
        app.state.http = upstreams.client
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(
            transport=transport, base_url="http://testserver"
        ) as c:
            yield c
    app.dependency_overrides.clear()


@pytest.fixture
async def db():
    async with server.SessionAsync() as session:
        yield session


class Seed:
    def __init__(self, session) -> None:
        self.db = session

    async def add(self, *objs):
        async with self.db.begin():
            self.db.add_all(objs)
        return objs[0] if len(objs) == 1 else objs

    async def product(self, name: str = "SuperPlugin", price: int = 15000,
                      product_type: str = "plugin",
                      jar_file_path: Optional[str] = None) -> Product:
        return await self.add(Product(
            id=new_id(), name=name, price=price, product_type=product_type,
            jar_file_path=jar_file_path, active=True, created_at=now_ts(),
        ))

    async def order(self, user_id: str, products: List[Product],
                    commerce_order: Optional[str] = None,
                    payment_token: Optional[str] = None,
                    customer_email: Optional[str] = "buyer@example.com",
                    status: str = ORDER_PENDING) -> Order:
        ts = now_ts()
        order = Order(
            id=new_id(), user_id=user_id,
            total=sum(p.price for p in products), currency="CLP",
            customer_email=customer_email, status=status,
            commerce_order=commerce_order or f"ORDER-{new_id()[:10]}",
            payment_token=payment_token, created_at=ts, updated_at=ts,
        )
        await self.add(order)
        for i, p in enumerate(products):
            await self.add(OrderItem(
                id=new_id(), order_id=order.id, product_id=p.id,
                quantity=1, price=p.price, created_at=ts + i * 0.001,
            ))
        return order

    async def server(self, webhook_url: Optional[str] = None, **kw):
        store = MinecraftStore(db=self.db, gated=server.gated)
        return await store.create_server(
            kw.pop("name", "Survival"), kw.pop("host", "mc.example.com"),
            webhook_url=webhook_url, **kw,
        )

    async def count(self, model, **where) -> int:
        stmt = select(func.count()).select_from(model)
        for k, v in where.items():
            stmt = stmt.where(getattr(model, k) == v)
        async with self.db.begin():
            return (await self.db.execute(stmt)).scalar_one()

    async def all(self, model, **where):
        stmt = select(model).execution_options(populate_existing=True)
        for k, v in where.items():
            stmt = stmt.where(getattr(model, k) == v)
        async with self.db.begin():
            return list((await self.db.execute(stmt)).scalars().all())


@pytest.fixture
def seed(db):
    return Seed(db)


@pytest.fixture
def storage():
    os.makedirs(STORAGE_DIR, exist_ok=True)
    return STORAGE_DIR
