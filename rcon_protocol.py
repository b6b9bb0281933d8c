import asyncio
import itertools
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from errors import AuthError, ProtocolError, RconConnectionReset, RconTimeout, classify_os_error


class PacketType(IntEnum):
    """
    Packet types of the Source-style RCON protocol.
    AUTH_RESPONSE and EXECCOMMAND share the value 2; direction tells them apart.
    """
    RESPONSE_VALUE = 0
    EXECCOMMAND = 2
    AUTH_RESPONSE = 2
    AUTH = 3


# size field counts id + type + body + two NUL terminators
_HEADER = struct.Struct('<iii')
_MIN_SIZE = 10
MAX_RESPONSE_SIZE = 1 << 20
AUTH_FAILED_ID = -1


@dataclass
class Packet:
    request_id: int
    packet_type: int
    body: str


def encode_packet(request_id: int, packet_type: int, body: str) -> bytes:
    """
    Builds one wire packet.
    Format: 4 bytes size | 4 bytes request id | 4 bytes type | body | 0x00 0x00
    """
    payload = body.encode('utf-8')
    size = 4 + 4 + len(payload) + 2
    return _HEADER.pack(size, request_id, packet_type) + payload + b'\x00\x00'


def decode_packet(data: bytes) -> Packet:
    """
    Parses the part of a packet that follows the size field.
    Raises ProtocolError when the data is too short or not NUL-terminated.
    """
    if len(data) < _MIN_SIZE:
        raise ProtocolError(f"Packet too short ({len(data)} bytes)")
    request_id, packet_type = struct.unpack('<ii', data[:8])
    if data[-2:] != b'\x00\x00':
        raise ProtocolError("Packet body is not NUL-terminated")
    body = data[8:-2].decode('utf-8', errors='replace')
    return Packet(request_id, packet_type, body)


class RconConnection:
    """
    One TCP connection to a game server's RCON port.

    open() and authenticate() make up the handshake; execute() sends a command
    and waits for the response carrying the same request id. Socket failures
    surface as TransportError subclasses, a rejected password as AuthError.
    """

    def __init__(self, host: str, port: int, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._ids = itertools.count(1)
        self._io_lock = asyncio.Lock()
        self.authenticated = False

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def open(self) -> None:
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise RconTimeout(f"ETIMEDOUT: connect to {self.host}:{self.port} timed out")
        except OSError as e:
            raise classify_os_error(e) from e

    async def authenticate(self, password: str) -> None:
        """
        Sends the password and waits for the AUTH_RESPONSE packet.
        Source servers send an empty RESPONSE_VALUE first; it is skipped.
        """
        if not self.is_open:
            await self.open()
        async with self._io_lock:
            req_id = next(self._ids)
            await self._send(req_id, PacketType.AUTH, password)
            while True:
                packet = await self._recv()
                if packet.request_id == AUTH_FAILED_ID:
                    raise AuthError("RCON authentication failed: bad password")
                if packet.packet_type == PacketType.AUTH_RESPONSE:
                    break
        self.authenticated = True

    async def execute(self, command: str, timeout: Optional[float] = None) -> str:
        if not self.is_open:
            raise RconConnectionReset("RCON not connected")
        limit = self.timeout if timeout is None else timeout
        async with self._io_lock:
            req_id = next(self._ids)
            await self._send(req_id, PacketType.EXECCOMMAND, command)
            try:
                return await asyncio.wait_for(self._recv_matching(req_id), timeout=limit)
            except asyncio.TimeoutError:
                raise RconTimeout(f"ETIMEDOUT: no response to '{command}' within {limit}s")

    async def close(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        self.authenticated = False
        if writer is None:
            return
        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
        except (OSError, asyncio.TimeoutError):
            pass

    def abort(self) -> None:
        """
        Drops the socket immediately, without waiting. Used by forced resets,
        which must not suspend.
        """
        writer = self._writer
        self._reader = None
        self._writer = None
        self.authenticated = False
        if writer is not None:
            writer.transport.abort()

    async def _recv_matching(self, req_id: int) -> str:
        while True:
            packet = await self._recv()
            if packet.request_id == req_id:
                return packet.body

    async def _send(self, req_id: int, packet_type: int, body: str) -> None:
        writer = self._writer
        if writer is None:
            raise RconConnectionReset("RCON not connected")
        try:
            writer.write(encode_packet(req_id, packet_type, body))
            await writer.drain()
        except OSError as e:
            raise classify_os_error(e) from e

    async def _recv(self) -> Packet:
        """
        Reads exactly one packet.
        Raises RconConnectionReset if the connection closes mid-packet.
        """
        reader = self._reader
        if reader is None:
            raise RconConnectionReset("RCON not connected")
        try:
            size_bytes = await reader.readexactly(4)
            (size,) = struct.unpack('<i', size_bytes)
            if size < _MIN_SIZE or size > MAX_RESPONSE_SIZE:
                raise ProtocolError(f"Bad packet size: {size}")
            data = await reader.readexactly(size)
        except asyncio.IncompleteReadError as e:
            raise RconConnectionReset("ECONNRESET: connection closed before full packet was received") from e
        except OSError as e:
            raise classify_os_error(e) from e
        return decode_packet(data)
