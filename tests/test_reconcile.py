import asyncio

from mcshop import materialize
from mcshop.helpers import now_ts, new_id
from mcshop.materialize import Materializer
from mcshop.model.db import (
    AuditLog, License, Order, OrderItem, ProductDownload, UserProduct,
)


async def _paid_order(seed, upstreams, token="tok-1",
                      commerce_order="ORDER-1700000000", settled=False,
                      status=1, stored_token=True):
    product = await seed.product(price=15000)
    order = await seed.order("user-1", [product],
                             commerce_order=commerce_order,
                             payment_token=token if stored_token else None)
    upstreams.flow.set_status(token, status, commerce_order, 15000,
                              settled=settled)
    return order


async def test_paid_notification_materializes_everything(client, seed,
                                                          upstreams):
    order = await _paid_order(seed, upstreams)

    r = await client.post("/api/payment/webhook", data={"token": "tok-1"})

    assert r.status_code == 200
    assert r.json() == {"success": True, "status": "paid",
                        "orderId": order.id,
                        "commerceOrder": "ORDER-1700000000"}
    [stored] = await seed.all(Order, id=order.id)
    assert stored.status == "paid"
    assert stored.paid_at is not None
    assert stored.total == 15000
    assert await seed.count(License, order_id=order.id) == 1
    assert await seed.count(UserProduct, order_id=order.id) == 1
    assert await seed.count(ProductDownload, order_id=order.id) == 1
    [entry] = await seed.all(AuditLog, action="order_paid")
    assert entry.resource_id == order.id
    assert entry.details["commerce_order"] == "ORDER-1700000000"


async def test_replays_do_not_duplicate_entitlements(client, seed,
                                                     upstreams):
    order = await _paid_order(seed, upstreams)

    responses = [
        await client.post("/api/payment/webhook", data={"token": "tok-1"}),
        await client.post("/api/payment/webhook", json={"token": "tok-1"}),
        await client.get("/api/payment/webhook", params={"token": "tok-1"}),
        await client.post("/api/payment/webhook",
                          content=b"TOKEN=tok-1",
                          headers={"content-type": "text/plain"}),
    ]

    assert [r.status_code for r in responses] == [200] * 4
    assert {r.json()["status"] for r in responses} == {"paid"}
    assert await seed.count(License, order_id=order.id) == 1
    assert await seed.count(UserProduct, order_id=order.id) == 1
    assert await seed.count(ProductDownload, order_id=order.id) == 1
    # only the delivery that made the transition is audited as a payment
    assert await seed.count(AuditLog, action="order_paid") == 1
    assert await seed.count(AuditLog, action="order_updated") == 3


async def test_settlement_beats_cancelled_status(client, seed, upstreams):
    order = await _paid_order(seed, upstreams, status=2, settled=True)

    r = await client.post("/api/payment/webhook", data={"token": "tok-1"})

    assert r.json()["status"] == "paid"
    [stored] = await seed.all(Order, id=order.id)
    assert stored.status == "paid"


async def test_terminal_status_is_never_rewritten(client, seed, upstreams):
    order = await _paid_order(seed, upstreams, status=2)

    r = await client.post("/api/payment/webhook", data={"token": "tok-1"})
    assert r.json()["status"] == "cancelled"

    # the authority changes its mind later; the order stays cancelled
    upstreams.flow.set_status("tok-1", 1, "ORDER-1700000000")
    r = await client.post("/api/payment/webhook", data={"token": "tok-1"})
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert await seed.count(License, order_id=order.id) == 0
    [entry, _] = await seed.all(AuditLog, action="order_updated")
    assert entry.details["status"] == "cancelled"


async def test_pending_status_leaves_order_pending(client, seed, upstreams):
    order = await _paid_order(seed, upstreams, status=0)

    r = await client.post("/api/payment/webhook", data={"token": "tok-1"})

    assert r.json()["status"] == "pending"
    assert await seed.count(License, order_id=order.id) == 0


async def test_order_found_by_commerce_order_and_token_backfilled(
        client, seed, upstreams):
    order = await _paid_order(seed, upstreams, stored_token=False)

    r = await client.post("/api/payment/webhook", data={"token": "tok-1"})

    assert r.status_code == 200
    assert r.json()["orderId"] == order.id
    [stored] = await seed.all(Order, id=order.id)
    assert stored.payment_token == "tok-1"
    assert stored.status == "paid"


async def test_missing_token_is_400(client):
    r = await client.post("/api/payment/webhook", data={"other": "x"})
    assert r.status_code == 400
    assert r.json() == {"error": "Token requerido"}


async def test_unknown_order_is_404(client, upstreams):
    upstreams.flow.set_status("tok-x", 1, "ORDER-UNKNOWN")

    r = await client.post("/api/payment/webhook", data={"token": "tok-x"})

    assert r.status_code == 404
    assert r.json() == {"error": "Orden no encontrada"}


async def test_gateway_failure_is_a_retryable_500(client, seed, upstreams):
    order = await _paid_order(seed, upstreams)
    upstreams.flow.fail_with = 503

    r = await client.post("/api/payment/webhook", data={"token": "tok-1"})

    assert r.status_code == 500
    assert r.json() == {"error": "Error interno del servidor"}
    [stored] = await seed.all(Order, id=order.id)
    assert stored.status == "pending"


async def test_no_download_grant_without_contact_address(client, seed,
                                                         upstreams):
    product = await seed.product()
    order = await seed.order("user-1", [product], payment_token="tok-2",
                             customer_email=None)
    upstreams.flow.set_status("tok-2", 1, order.commerce_order)

    r = await client.post("/api/payment/webhook", data={"token": "tok-2"})

    assert r.json()["status"] == "paid"
    assert await seed.count(License, order_id=order.id) == 1
    assert await seed.count(ProductDownload, order_id=order.id) == 0


async def test_multi_item_order_gets_one_license_per_line(client, seed,
                                                          upstreams):
    a = await seed.product(name="A", price=1000)
    b = await seed.product(name="B", price=2000)
    order = await seed.order("user-1", [a, b], payment_token="tok-3")
    upstreams.flow.set_status("tok-3", 1, order.commerce_order, 3000)

    for _ in range(2):
        await client.post("/api/payment/webhook", data={"token": "tok-3"})

    licenses = await seed.all(License, order_id=order.id)
    assert sorted(lic.product_id for lic in licenses) == sorted([a.id, b.id])
    assert len({lic.license_key for lic in licenses}) == 2


async def test_token_unknown_everywhere_is_404(client, upstreams):
    r = await client.post("/api/payment/webhook", data={"token": "bogus"})

    assert r.status_code == 404
    assert r.json() == {"error": "Orden no encontrada"}

    # an unreachable authority is still worth a retry
    upstreams.flow.fail_with = 503
    r = await client.post("/api/payment/webhook", data={"token": "bogus"})
    assert r.status_code == 500


async def _two_line_order(seed, upstreams, token):
    a = await seed.product(name="A", price=1000)
    b = await seed.product(name="B", price=2000)
    order = await seed.order("user-1", [a, b], payment_token=token)
    upstreams.flow.set_status(token, 1, order.commerce_order, 3000)
    items = sorted(await seed.all(OrderItem, order_id=order.id),
                   key=lambda i: i.created_at)
    return order, items


async def test_failed_line_does_not_block_its_siblings(client, seed,
                                                       upstreams,
                                                       monkeypatch):
    order, (line_a, line_b) = await _two_line_order(seed, upstreams, "tok-4")
    other = await _paid_order(seed, upstreams, token="tok-o",
                              commerce_order="ORDER-OTHER")
    [other_item] = await seed.all(OrderItem, order_id=other.id)
    await seed.add(License(
        id=new_id(), user_id="user-2", product_id=other_item.product_id,
        order_id=other.id, order_item_id=other_item.id,
        license_key="TAKEN", status="active", created_at=now_ts(),
    ))
    # the first key generated collides with an existing license
    keys = iter(["TAKEN"])
    real_key = materialize.generate_license_key
    monkeypatch.setattr(materialize, "generate_license_key",
                        lambda: next(keys, None) or real_key())

    r = await client.post("/api/payment/webhook", data={"token": "tok-4"})

    assert r.status_code == 200
    assert r.json()["status"] == "paid"
    assert await seed.count(License, order_item_id=line_a.id) == 0
    assert await seed.count(License, order_item_id=line_b.id) == 1
    assert await seed.count(UserProduct, order_id=order.id) == 1

    # a replay finishes the missing line only
    r = await client.post("/api/payment/webhook", data={"token": "tok-4"})
    assert r.status_code == 200
    assert await seed.count(License, order_item_id=line_a.id) == 1
    assert await seed.count(License, order_item_id=line_b.id) == 1
    assert await seed.count(UserProduct, order_id=order.id) == 2


async def test_lost_license_race_keeps_the_winner(client, seed, upstreams,
                                                  monkeypatch):
    order, (line_a, line_b) = await _two_line_order(seed, upstreams, "tok-5")
    # another delivery already wrote line A, after our lookup missed it
    winner = await seed.add(License(
        id=new_id(), user_id="user-1", product_id=line_a.product_id,
        order_id=order.id, order_item_id=line_a.id,
        license_key="WINNER", status="active", created_at=now_ts(),
    ))
    lookups = []
    real_existing = Materializer._existing

    async def stale_first_lookup(self, order_id, order_item_id):
        lookups.append(order_item_id)
        if len(lookups) == 1:
            return None
        return await real_existing(self, order_id, order_item_id)

    monkeypatch.setattr(Materializer, "_existing", stale_first_lookup)

    r = await client.post("/api/payment/webhook", data={"token": "tok-5"})

    assert r.status_code == 200
    assert r.json()["status"] == "paid"
    [lic_a] = await seed.all(License, order_item_id=line_a.id)
    assert lic_a.id == winner.id
    assert lic_a.license_key == "WINNER"
    assert await seed.count(License, order_item_id=line_b.id) == 1


async def test_concurrent_deliveries_materialize_once(client, seed,
                                                      upstreams):
    order, items = await _two_line_order(seed, upstreams, "tok-6")

    responses = await asyncio.gather(*[
        client.post("/api/payment/webhook", data={"token": "tok-6"})
        for _ in range(4)
    ])

    assert [r.status_code for r in responses] == [200] * 4
    for item in items:
        assert await seed.count(License, order_item_id=item.id) == 1
    assert await seed.count(UserProduct, order_id=order.id) == 2
    assert await seed.count(ProductDownload, order_id=order.id) == 2
    assert await seed.count(AuditLog, action="order_paid") == 1
