"""Source RCON query over TCP.

Packets are little-endian: int32 size, int32 id, int32 type, body, two NULs.
Authenticates with SERVERDATA_AUTH, runs one command and parses the player
count out of the reply text.
"""

import asyncio
import re
import struct
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

SERVERDATA_AUTH = 3
SERVERDATA_AUTH_RESPONSE = 2
SERVERDATA_EXECCOMMAND = 2
SERVERDATA_RESPONSE_VALUE = 0

AUTH_ID = 1
COMMAND_ID = 2
MAX_PACKET_SIZE = 4096 + 10

DEFAULT_COMMAND = "list"

_PLAYER_PATTERNS = (
    # "There are 3 of a max of 20 players online"
    re.compile(r"(\d+)\s+of\s+a\s+max\s+of\s+(\d+)", re.IGNORECASE),
    # "players : 3 humans, 0 bots (20/0 max)" / "players : 3 (20 max)"
    re.compile(r"players\s*:\s*(\d+)[^(\n]*\((\d+)", re.IGNORECASE),
    # "3/20"
    re.compile(r"(\d+)\s*/\s*(\d+)"),
)


class RconError(Exception):
    pass


class RconAuthError(RconError):
    pass


def encode_packet(request_id: int, packet_type: int, body: str) -> bytes:
    payload = struct.pack("<ii", request_id, packet_type) + body.encode("utf-8") + b"\x00\x00"
    return struct.pack("<i", len(payload)) + payload


async def read_packet(reader: asyncio.StreamReader) -> tuple[int, int, str]:
    (size,) = struct.unpack("<i", await reader.readexactly(4))
    if size < 10 or size > MAX_PACKET_SIZE:
        raise RconError(f"Invalid RCON packet size: {size}")
    data = await reader.readexactly(size)
    request_id, packet_type = struct.unpack_from("<ii", data)
    body = data[8:-2].decode("utf-8", errors="replace")
    return request_id, packet_type, body


def parse_players(text: str) -> tuple[Optional[int], Optional[int]]:
    """Extract (players, max_players) from a command reply."""
    for pattern in _PLAYER_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1)), int(match.group(2))
    return None, None


async def run_command(
    host: str, port: int, password: str, command: str, timeout: float
) -> str:
    reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    try:
        writer.write(encode_packet(AUTH_ID, SERVERDATA_AUTH, password))
        await writer.drain()

        # Some servers send an empty RESPONSE_VALUE before the auth response
        while True:
            request_id, packet_type, _ = await asyncio.wait_for(read_packet(reader), timeout)
            if packet_type == SERVERDATA_AUTH_RESPONSE:
                break
        if request_id == -1:
            raise RconAuthError("RCON authentication failed")

        writer.write(encode_packet(COMMAND_ID, SERVERDATA_EXECCOMMAND, command))
        await writer.drain()
        request_id, packet_type, body = await asyncio.wait_for(read_packet(reader), timeout)
        if packet_type != SERVERDATA_RESPONSE_VALUE:
            raise RconError(f"Unexpected RCON packet type: {packet_type}")
        return body
    finally:
        writer.close()


class RconQueryAdapter(QueryAdapter):
    name = "rcon"

    SUPPORTED_TYPES = ("rcon", "source_rcon")

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def supports(self, query_type: str) -> bool:
        return query_type in self.SUPPORTED_TYPES

    async def query(self, instance: Instance, context: QueryContext) -> QueryResult:
        if not context.host or context.rcon_port is None:
            return QueryResult.unavailable("RCON endpoint missing.")

        password = context.config.get("password") or context.config.get("rcon_password")
        if not isinstance(password, str) or not password:
            return QueryResult.unavailable("RCON password missing.")

        command = context.config.get("command")
        if not isinstance(command, str) or not command.strip():
            command = DEFAULT_COMMAND

        timeout = config_float(context.config, "timeout", self.timeout)
        try:
            reply = await run_command(
                context.host, context.rcon_port, password, command.strip(), timeout
            )
        except RconAuthError:
            return QueryResult.unavailable("RCON authentication failed.")
        except asyncio.TimeoutError:
            return QueryResult.unavailable("Query timed out.")
        except (RconError, asyncio.IncompleteReadError, OSError) as e:
            logger.warning("query_rcon_unavailable", instance_id=instance.id, error=str(e))
            return QueryResult.unavailable("Query endpoint unavailable.")

        players, max_players = parse_players(reply)
        return QueryResult(status="online", players=players, max_players=max_players)
