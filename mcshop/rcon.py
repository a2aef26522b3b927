"""
Minimal Source RCON client (the remote console spoken by Minecraft servers).

Packet layout, little endian:
    int32 length | int32 request id | int32 type | body | 0x00 0x00
"""
from __future__ import annotations
import asyncio
import itertools
import struct
from typing import Optional

SERVERDATA_AUTH = 3
SERVERDATA_EXECCOMMAND = 2
SERVERDATA_RESPONSE_VALUE = 0

MAX_BODY = 4096


class RconError(Exception):
    pass


class RconAuthError(RconError):
    pass


def encode_packet(request_id: int, kind: int, body: str) -> bytes:
    payload = struct.pack("<ii", request_id, kind)
    payload += body.encode("utf-8") + b"\x00\x00"
    return struct.pack("<i", len(payload)) + payload


async def read_packet(reader: asyncio.StreamReader):
    (length,) = struct.unpack("<i", await reader.readexactly(4))
    if length < 10 or length > MAX_BODY + 10:
        raise RconError(f"bad packet length {length}")
    data = await reader.readexactly(length)
    request_id, kind = struct.unpack("<ii", data[:8])
    body = data[8:-2].decode("utf-8", errors="replace")
    return request_id, kind, body


class RconClient:
    def __init__(self, host: str, port: int, password: str,
                 timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def __aenter__(self) -> "RconClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), self.timeout
        )
        try:
            await self._authenticate()
        except BaseException:
            await self.close()
            raise

    async def _authenticate(self) -> None:
        request_id = next(self._ids)
        await self._send(request_id, SERVERDATA_AUTH, self.password)
        # some servers send an empty RESPONSE_VALUE before the auth reply
        while True:
            got_id, kind, _ = await asyncio.wait_for(
                read_packet(self._reader), self.timeout
            )
            if kind == SERVERDATA_RESPONSE_VALUE:
                continue
            if got_id == -1 or got_id != request_id:
                raise RconAuthError("RCON authentication failed")
            return

    async def _send(self, request_id: int, kind: int, body: str) -> None:
        if self._writer is None:
            raise RconError("not connected")
        self._writer.write(encode_packet(request_id, kind, body))
        await self._writer.drain()

    async def command(self, command: str) -> str:
        if self._reader is None:
            raise RconError("not connected")
        request_id = next(self._ids)
        await self._send(request_id, SERVERDATA_EXECCOMMAND, command)
        got_id, _, body = await asyncio.wait_for(
            read_packet(self._reader), self.timeout
        )
        if got_id != request_id:
            raise RconError("out of order RCON response")
        return body

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
            self._reader = None
