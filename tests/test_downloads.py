import asyncio
import os

from mcshop.helpers import now_ts, new_id
from mcshop.materialize import generate_license_key
from mcshop.model.db import (
    AuditLog, License, OrderItem, ProductDownload, UserProduct,
)
from mcshop.model.downloads import (
    generate_download_token, is_valid_download_token,
)

USER = {"x-test-user": "user-1"}


async def _entitled(seed, storage, license_status="active",
                    write_file=True, expires_in=3600):
    jar = f"plugins/{new_id()}.jar"
    if write_file:
        os.makedirs(os.path.join(storage, "plugins"), exist_ok=True)
        with open(os.path.join(storage, jar), "wb") as f:
            f.write(b"PK\x03\x04fake-jar")
    product = await seed.product(jar_file_path=jar)
    order = await seed.order("user-1", [product], status="paid")
    [item] = await seed.all(OrderItem, order_id=order.id)
    ts = now_ts()
    lic = await seed.add(License(
        id=new_id(), user_id="user-1", product_id=product.id,
        order_id=order.id, order_item_id=item.id,
        license_key=generate_license_key(), status=license_status,
        created_at=ts,
    ))
    await seed.add(UserProduct(
        id=new_id(), user_id="user-1", product_id=product.id,
        order_id=order.id, license_id=lic.id, created_at=ts,
    ))
    grant = await seed.add(ProductDownload(
        id=new_id(), user_id="user-1", product_id=product.id,
        order_id=order.id, license_id=lic.id,
        download_token=generate_download_token(),
        expires_at=ts + expires_in, used=False, created_at=ts,
    ))
    return product, grant


def test_token_format():
    token = generate_download_token()
    assert len(token) == 64
    assert is_valid_download_token(token)
    assert not is_valid_download_token(token.upper())
    assert not is_valid_download_token(token[:-1])
    assert not is_valid_download_token("g" * 64)


async def test_download_is_served_once(client, seed, storage):
    product, grant = await _entitled(seed, storage)
    url = f"/downloads/{grant.download_token}"

    r = await client.get(url, headers=USER)
    assert r.status_code == 200
    assert r.content == b"PK\x03\x04fake-jar"
    assert r.headers["content-disposition"].startswith("attachment")
    [entry] = await seed.all(AuditLog, action="download_completed")
    assert entry.resource_id == product.id

    again = await client.get(url, headers=USER)
    assert again.status_code == 410
    assert "ya fue utilizado" in again.json()["error"]


async def test_concurrent_redemptions_serve_exactly_one(client, seed,
                                                        storage):
    _, grant = await _entitled(seed, storage)
    url = f"/downloads/{grant.download_token}"

    results = await asyncio.gather(
        client.get(url, headers=USER), client.get(url, headers=USER)
    )

    assert sorted(r.status_code for r in results) == [200, 410]
    [stored] = await seed.all(ProductDownload, id=grant.id)
    assert stored.used is True
    assert stored.used_at is not None


async def test_malformed_token_is_400(client):
    r = await client.get("/downloads/not-a-token", headers=USER)
    assert r.status_code == 400
    assert r.json() == {"error": "Token inválido"}


async def test_unknown_token_is_404(client):
    r = await client.get(f"/downloads/{'a' * 64}", headers=USER)
    assert r.status_code == 404
    assert r.json() == {"error": "Token de descarga no válido"}


async def test_anonymous_is_401(client, seed, storage):
    _, grant = await _entitled(seed, storage)
    r = await client.get(f"/downloads/{grant.download_token}")
    assert r.status_code == 401


async def test_other_user_is_403(client, seed, storage):
    _, grant = await _entitled(seed, storage)
    r = await client.get(f"/downloads/{grant.download_token}",
                         headers={"x-test-user": "intruder"})
    assert r.status_code == 403
    assert r.json() == {
        "error": "No tienes permiso para descargar este archivo"
    }
    [stored] = await seed.all(ProductDownload, id=grant.id)
    assert stored.used is False


async def test_expired_grant_is_410(client, seed, storage):
    _, grant = await _entitled(seed, storage, expires_in=-1)
    r = await client.get(f"/downloads/{grant.download_token}", headers=USER)
    assert r.status_code == 410
    assert "ha expirado" in r.json()["error"]


async def test_revoked_license_is_403(client, seed, storage):
    _, grant = await _entitled(seed, storage, license_status="revoked")
    r = await client.get(f"/downloads/{grant.download_token}", headers=USER)
    assert r.status_code == 403
    assert r.json() == {
        "error": "Tu licencia para este producto no está activa"
    }


async def test_missing_file_is_404_and_grant_stays_unused(client, seed,
                                                          storage):
    _, grant = await _entitled(seed, storage, write_file=False)
    r = await client.get(f"/downloads/{grant.download_token}", headers=USER)
    assert r.status_code == 404
    assert r.json() == {"error": "Archivo no encontrado para este producto"}
    [stored] = await seed.all(ProductDownload, id=grant.id)
    assert stored.used is False


async def test_generate_issues_a_fresh_link(client, seed, storage):
    product, _ = await _entitled(seed, storage)

    r = await client.post("/api/downloads/generate",
                          json={"product_id": product.id}, headers=USER)

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["download_url"] == (
        f"http://testserver/downloads/{body['token']}"
    )
    assert await seed.count(ProductDownload, product_id=product.id) == 2
    [entry] = await seed.all(AuditLog, action="download_generated")
    assert entry.details["download_token"] == body["token"][:8] + "..."

    served = await client.get(f"/downloads/{body['token']}", headers=USER)
    assert served.status_code == 200


async def test_generate_requires_a_purchase(client, seed, storage):
    product = await seed.product(jar_file_path="plugins/x.jar")
    r = await client.post("/api/downloads/generate",
                          json={"product_id": product.id}, headers=USER)
    assert r.status_code == 403
    assert r.json() == {
        "error": "No tienes acceso a este producto. Debes comprarlo primero."
    }


async def test_generate_requires_login(client):
    r = await client.post("/api/downloads/generate",
                          json={"product_id": "x"})
    assert r.status_code == 401
