"""
Shared fixtures: an in-process RCON server, fake game process and RCON
doubles, a recording event bus and a virtual clock for restart timing.
"""

import asyncio
import struct

import pytest

from events import EventBus
from rcon_protocol import AUTH_FAILED_ID, PacketType, encode_packet
from rcon_session import CommandOutcome, RconSessionManager

RCON_PASSWORD = "secret"


class FakeRconServer:
    """Speaks just enough of the RCON protocol for the session tests."""

    def __init__(self, password: str = RCON_PASSWORD):
        self.password = password
        self.host = "127.0.0.1"
        self.port = None
        self.responses = {}
        self.commands = []
        self.handshakes = 0
        self.connections = 0
        self.auth_delay = 0.0
        self.drop_next = 0
        self.silent = False
        self.garbled = False
        self._server = None
        self._writers = []

    async def start(self):
        self._server = await asyncio.start_server(self._handle, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self):
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle(self, reader, writer):
        self.connections += 1
        self._writers.append(writer)
        try:
            while True:
                (size,) = struct.unpack("<i", await reader.readexactly(4))
                data = await reader.readexactly(size)
                req_id, ptype = struct.unpack("<ii", data[:8])
                body = data[8:-2].decode("utf-8")
                if ptype == PacketType.AUTH:
                    self.handshakes += 1
                    if self.auth_delay:
                        await asyncio.sleep(self.auth_delay)
                    ok = body == self.password
                    writer.write(encode_packet(req_id, PacketType.RESPONSE_VALUE, ""))
                    writer.write(encode_packet(req_id if ok else AUTH_FAILED_ID, PacketType.AUTH_RESPONSE, ""))
                else:
                    self.commands.append(body)
                    if self.drop_next:
                        self.drop_next -= 1
                        return
                    if self.silent:
                        continue
                    if self.garbled:
                        # body without its NUL terminators
                        writer.write(struct.pack("<iii", 10, req_id, PacketType.RESPONSE_VALUE) + b"ab")
                        await writer.drain()
                        continue
                    reply = self.responses.get(body, f"ok: {body}")
                    writer.write(encode_packet(req_id, PacketType.RESPONSE_VALUE, reply))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


class FakeProcess:
    """Stands in for the game process; records what the restart did to it."""

    def __init__(self, alive: bool = True, start_on_launch: bool = True, dies_on_quit: bool = True):
        self.alive = alive
        self.start_on_launch = start_on_launch
        self.dies_on_quit = dies_on_quit
        self.launches = 0
        self.kills = 0

    async def is_alive(self) -> bool:
        return self.alive

    async def launch(self) -> None:
        self.launches += 1
        if self.start_on_launch:
            self.alive = True

    async def kill(self) -> None:
        self.kills += 1
        self.alive = False


class VirtualClock:
    """Sleep advances virtual time instantly; hooks fire once their time is reached."""

    def __init__(self):
        self.now = 0.0
        self._hooks = []

    def time(self) -> float:
        return self.now

    def at(self, when: float, fn) -> None:
        self._hooks.append((when, fn))

    async def sleep(self, delay: float) -> None:
        self.now += delay
        due = [h for h in self._hooks if h[0] <= self.now]
        for hook in due:
            self._hooks.remove(hook)
            hook[1]()
        await asyncio.sleep(0)


class FakeRcon:
    """Session double for the orchestrator; every command is stamped with virtual time."""

    def __init__(self, clock: VirtualClock, process: FakeProcess):
        self.clock = clock
        self.process = process
        self.is_connected = True
        self.commands = []
        self.failing = set()
        self.hanging = set()
        self.connect_results = []
        self.starting_history = []
        self.resets = 0

    async def connect(self) -> bool:
        ok = self.connect_results.pop(0) if self.connect_results else True
        self.is_connected = ok
        return ok

    async def execute(self, command, skip_log=False, retry=True) -> CommandOutcome:
        self.commands.append((self.clock.now, command))
        if command in self.hanging:
            await asyncio.Event().wait()
        if command in self.failing:
            return CommandOutcome(False, error="Game server is not running.")
        if command == "quit" and self.process.dies_on_quit:
            self.process.alive = False
            return CommandOutcome(False, error="Connection was reset.", disconnected=True)
        return CommandOutcome(True, response="ok")

    def set_server_starting(self, value: bool) -> None:
        self.starting_history.append(value)

    def force_reset_connection_state(self) -> None:
        self.resets += 1
        self.is_connected = False

    def mark_disconnected(self, reason: str) -> None:
        self.is_connected = False

    def sent(self):
        return [c for _, c in self.commands]


class RecordingBus(EventBus):
    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, topic, payload=None):
        self.published.append((topic, payload))
        super().publish(topic, payload)

    def topics(self):
        return [t for t, _ in self.published]

    def payloads(self, topic):
        return [p for t, p in self.published if t == topic]


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
async def rcon_server():
    server = FakeRconServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def make_session(rcon_server, bus):
    """Factory for sessions pointed at the fake server with short timings."""
    created = []

    def _make(**overrides):
        options = dict(
            host=rcon_server.host,
            port=rcon_server.port,
            password=RCON_PASSWORD,
            events=bus,
            auth_timeout=2.0,
            command_timeout=1.0,
            server_check_timeout=1.0,
            reconnect_base_delay=0.01,
            reconnect_max_delay=0.05,
            max_reconnect_attempts=3,
            error_log_cooldown=0.0,
        )
        options.update(overrides)
        session = RconSessionManager(**options)
        created.append(session)
        return session

    yield _make
    for session in created:
        await session.close()


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def process():
    return FakeProcess()


@pytest.fixture
def fake_rcon(clock, process):
    return FakeRcon(clock, process)
