"""
Authentication of requests coming from the game-server plugins.

A plugin sends ``X-API-Key`` and ``X-Signature``: the hex HMAC-SHA256 of
the raw request body under its server's ``api_secret``. GET requests have
no body, so the signed string is the compact JSON of the query parameters
(``{"a":"1"}``, insertion order, no spaces).

Unknown key, inactive server and wrong signature all fail the same way.
"""
from __future__ import annotations
import json
from typing import Optional

from fastapi import Request

from .errors import AuthenticationError
from .logs import get_logger
from .model.db import MinecraftServer
from .model.minecraft import MinecraftStore
from .signature import verify_payload

log = get_logger("pluginauth")

MISSING_HEADERS = "API Key y Signature requeridos"


def query_payload(request: Request) -> str:
    return json.dumps(dict(request.query_params), separators=(",", ":"),
                      ensure_ascii=False)


class PluginAuthGate:
    def __init__(self, store: MinecraftStore) -> None:
        self.store = store

    async def authenticate(self, api_key: Optional[str],
                           signature: Optional[str],
                           raw: str | bytes) -> MinecraftServer:
        if not api_key or not signature:
            raise AuthenticationError(MISSING_HEADERS)
        server = await self.store.get_active_server_by_api_key(api_key)
        if server is None or not verify_payload(raw, signature,
                                                server.api_secret):
            log.warning("plugin auth rejected",
                        known_key=server is not None)
            raise AuthenticationError()
        return server

    async def authenticate_request(
            self, request: Request
    ) -> tuple[MinecraftServer, bytes]:
        """(server, raw body). The body is read once and returned."""
        api_key = request.headers.get("x-api-key")
        signature = request.headers.get("x-signature")
        if request.method == "GET":
            raw = b""
            server = await self.authenticate(api_key, signature,
                                             query_payload(request))
        else:
            raw = await request.body()
            server = await self.authenticate(api_key, signature, raw)
        return server, raw
