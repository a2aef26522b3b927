import httpx

from mcshop.identity import Identity, IdentityClient


def test_admin_needs_an_explicit_role_claim():
    assert Identity.from_user(
        {"id": "u1", "app_metadata": {"role": "admin"}}
    ).is_admin
    assert Identity.from_user({"id": "u1", "role": "admin"}).is_admin
    assert not Identity.from_user(
        {"id": "u1", "user_metadata": {"is_admin": True}}
    ).is_admin


def test_session_round_trip():
    ident = Identity(id="u1", email="a@b.cl", role="admin")
    assert Identity.from_session(ident.to_session()) == ident
    assert Identity.from_session(None) is None
    assert Identity.from_session({"email": "x"}) is None


async def test_bearer_lookup():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.headers["authorization"] != "Bearer good":
            return httpx.Response(401)
        return httpx.Response(200, json={"id": "u1", "email": "a@b.cl"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler)
    ) as http:
        client = IdentityClient(http, base_url="http://idp.test/auth/v1",
                                api_key="anon")
        user = await client.user_for_token("good")
        nobody = await client.user_for_token("bad")

    assert user == Identity(id="u1", email="a@b.cl")
    assert nobody is None
    assert seen[0].url.path == "/auth/v1/user"
    assert seen[0].headers["apikey"] == "anon"


async def test_disabled_client_never_calls_out():
    def handler(request):
        raise AssertionError("must not reach the network")

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler)
    ) as http:
        client = IdentityClient(http, base_url="", api_key="")
        assert await client.user_for_token("tok") is None
        assert await client.email_for("u1") is None
