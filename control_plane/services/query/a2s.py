"""Source engine A2S_INFO query over UDP.

Request: FF FF FF FF 'T' "Source Engine Query\\0" [challenge]
A server may answer with an S2C_CHALLENGE (0x41) first; the request is then
repeated with the 4-byte challenge appended. The info reply header is 0x49.
Split (multi-packet) replies are not supported.
"""

import asyncio
import struct
from dataclasses import dataclass
from typing import Optional

import structlog

from control_plane.domain.models import Instance
from control_plane.services.query.base import (
    QueryAdapter,
    QueryContext,
    QueryResult,
    config_float,
)

logger = structlog.get_logger(__name__)

SIMPLE_HEADER = b"\xff\xff\xff\xff"
A2S_INFO_REQUEST = SIMPLE_HEADER + b"TSource Engine Query\x00"
S2C_CHALLENGE = 0x41
S2A_INFO = 0x49


class A2SProtocolError(ValueError):
    pass


@dataclass(frozen=True)
class A2SInfo:
    name: str
    map: str
    folder: str
    game: str
    players: int
    max_players: int
    bots: int


def _read_cstring(data: bytes, offset: int) -> tuple[str, int]:
    end = data.find(b"\x00", offset)
    if end < 0:
        raise A2SProtocolError("Unterminated string in A2S reply")
    return data[offset:end].decode("utf-8", errors="replace"), end + 1


def parse_info(data: bytes) -> A2SInfo:
    """Decode an S2A_INFO reply (including the 4-byte simple header)."""
    if len(data) < 6 or not data.startswith(SIMPLE_HEADER) or data[4] != S2A_INFO:
        raise A2SProtocolError("Not an A2S_INFO reply")

    offset = 6  # header + type byte + protocol version
    name, offset = _read_cstring(data, offset)
    map_name, offset = _read_cstring(data, offset)
    folder, offset = _read_cstring(data, offset)
    game, offset = _read_cstring(data, offset)
    if len(data) < offset + 5:
        raise A2SProtocolError("Truncated A2S_INFO reply")
    # app id (short), players, max players, bots
    _app_id, players, max_players, bots = struct.unpack_from("<hBBB", data, offset)
    return A2SInfo(
        name=name,
        map=map_name,
        folder=folder,
        game=game,
        players=players,
        max_players=max_players,
        bots=bots,
    )


def challenge_from(data: bytes) -> Optional[bytes]:
    if len(data) >= 9 and data.startswith(SIMPLE_HEADER) and data[4] == S2C_CHALLENGE:
        return data[5:9]
    return None


class _DatagramReader(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.queue.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)

    async def receive(self) -> bytes:
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item


async def fetch_info(host: str, port: int, timeout: float) -> A2SInfo:
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        _DatagramReader, remote_addr=(host, port)
    )
    try:
        transport.sendto(A2S_INFO_REQUEST)
        data = await asyncio.wait_for(protocol.receive(), timeout)
        challenge = challenge_from(data)
        if challenge is not None:
            transport.sendto(A2S_INFO_REQUEST + challenge)
            data = await asyncio.wait_for(protocol.receive(), timeout)
        return parse_info(data)
    finally:
        transport.close()


class A2SQueryAdapter(QueryAdapter):
    name = "a2s"

    SUPPORTED_TYPES = ("a2s", "steam_a2s", "source")

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def supports(self, query_type: str) -> bool:
        return query_type in self.SUPPORTED_TYPES

    async def query(self, instance: Instance, context: QueryContext) -> QueryResult:
        port = context.probe_port
        if not context.host or port is None:
            return QueryResult.unavailable("Query endpoint missing.")

        timeout = config_float(context.config, "timeout", self.timeout)
        try:
            info = await fetch_info(context.host, port, timeout)
        except asyncio.TimeoutError:
            return QueryResult.unavailable("Query timed out.")
        except A2SProtocolError as e:
            logger.warning("query_a2s_invalid_reply", instance_id=instance.id, error=str(e))
            return QueryResult.unavailable("Invalid query response.")
        except OSError as e:
            logger.warning("query_a2s_unavailable", instance_id=instance.id, error=str(e))
            return QueryResult.unavailable("Query endpoint unavailable.")

        return QueryResult(
            status="online",
            players=info.players,
            max_players=info.max_players,
            message=info.map or None,
        )
