"""
Tests for RconSessionManager: single-flight connects, forced resets,
reconnect with backoff, the starting guard and health checks.
"""

import asyncio

import pytest

from errors import AuthError
from events import Topic
from rcon_protocol import RconConnection
from rcon_session import (
    SERVER_NOT_RUNNING_MSG,
    SERVER_STARTING_MSG,
    ConnectionState,
    RconSessionManager,
)

from conftest import FakeProcess


class TestConnect:
    """connect() shares one attempt and never resurrects a stale one."""

    async def test_connect_authenticates_and_publishes(self, make_session, rcon_server, bus):
        session = make_session()
        assert await session.connect() is True
        assert session.state is ConnectionState.CONNECTED
        assert session.is_connected
        assert rcon_server.handshakes == 1
        assert Topic.RCON_CONNECTED in bus.topics()
        assert session.get_state()["state"] == "connected"
        assert session.get_config()["connected"] is True

    async def test_concurrent_connects_share_one_handshake(self, make_session, rcon_server):
        rcon_server.auth_delay = 0.1
        session = make_session()
        results = await asyncio.gather(*(session.connect() for _ in range(10)))
        assert results == [True] * 10
        assert rcon_server.handshakes == 1
        assert rcon_server.connections == 1

    async def test_connect_when_already_connected_is_noop(self, make_session, rcon_server):
        session = make_session()
        await session.connect()
        assert await session.connect() is True
        assert rcon_server.handshakes == 1

    async def test_reset_during_handshake_discards_attempt(self, make_session, rcon_server):
        rcon_server.auth_delay = 0.3
        session = make_session()
        attempt = asyncio.create_task(session.connect())
        await asyncio.sleep(0.1)
        session.force_reset_connection_state()
        assert await attempt is False
        assert session.state is ConnectionState.DISCONNECTED
        assert not session.is_connected

    async def test_attempt_finishing_after_reset_is_discarded(self, make_session, rcon_server):
        holder = {}

        class ResettingConnection(RconConnection):
            async def authenticate(self, password):
                await super().authenticate(password)
                holder["session"].force_reset_connection_state()

        session = make_session(connection_factory=ResettingConnection)
        holder["session"] = session
        version = session.version
        assert await session.connect() is False
        assert session.version == version + 1
        assert session.state is ConnectionState.DISCONNECTED
        assert not session.is_connected

    async def test_bad_password_raises_auth_error(self, make_session):
        session = make_session(password="wrong")
        with pytest.raises(AuthError):
            await session.connect()
        assert session.state is ConnectionState.DISCONNECTED

    async def test_not_running_skips_handshake(self, make_session, rcon_server):
        session = make_session(process_controller=FakeProcess(alive=False))
        assert await session.connect() is False
        assert rcon_server.handshakes == 0

    async def test_failed_process_check_still_attempts(self, make_session, rcon_server):
        class BrokenProcess(FakeProcess):
            async def is_alive(self):
                raise RuntimeError("psutil exploded")

        session = make_session(process_controller=BrokenProcess())
        assert await session.connect() is True
        assert rcon_server.handshakes == 1

    async def test_force_reset_keeps_starting_guard(self, make_session):
        session = make_session()
        await session.connect()
        session.set_server_starting(True)
        session.force_reset_connection_state()
        assert session.server_starting is True
        assert not session.is_connected

    async def test_reload_config_reads_active_server(self, make_session, rcon_server, tmp_path):
        from settings_store import SettingsStore

        store = SettingsStore(tmp_path / "servers.json")
        store.save_servers([{"id": "a", "rcon_host": "127.0.0.1", "rcon_port": rcon_server.port,
                             "rcon_password": "secret", "active": True}])
        session = make_session(port=1, password="", settings_store=store)
        assert await session.connect() is True
        assert session.port == rcon_server.port


class TestExecute:
    """execute() hides transport trouble behind a CommandOutcome."""

    async def test_execute_connects_lazily(self, make_session, rcon_server):
        session = make_session()
        outcome = await session.execute("players")
        assert outcome.success
        assert outcome.response == "ok: players"
        assert rcon_server.commands == ["players"]

    async def test_empty_response_reads_as_success(self, make_session, rcon_server):
        rcon_server.responses["save"] = ""
        session = make_session()
        outcome = await session.execute("save")
        assert outcome.success
        assert outcome.response == "Command executed successfully"

    async def test_dropped_connection_reconnects_and_retries_once(self, make_session, rcon_server):
        session = make_session()
        await session.connect()
        rcon_server.drop_next = 1
        outcome = await session.execute("players")
        assert outcome.success
        assert rcon_server.commands == ["players", "players"]
        assert rcon_server.handshakes == 2

    async def test_no_retry_reports_disconnect(self, make_session, rcon_server):
        session = make_session()
        await session.connect()
        rcon_server.drop_next = 1
        outcome = await session.execute("quit", retry=False)
        assert not outcome.success
        assert outcome.disconnected
        assert rcon_server.commands == ["quit"]
        assert not session.is_connected

    async def test_starting_guard_short_circuits(self, make_session, rcon_server):
        session = make_session()
        session.set_server_starting(True)
        outcome = await session.execute("players")
        assert not outcome.success
        assert outcome.error == SERVER_STARTING_MSG
        assert rcon_server.commands == []

    async def test_server_not_running(self, make_session):
        session = make_session(process_controller=FakeProcess(alive=False))
        outcome = await session.execute("players")
        assert outcome.error == SERVER_NOT_RUNNING_MSG

    async def test_auth_failure_is_friendly(self, make_session):
        session = make_session(password="wrong")
        outcome = await session.execute("players")
        assert not outcome.success
        assert "Authentication failed" in outcome.error

    async def test_refused_connection_is_friendly(self, make_session, rcon_server):
        session = make_session()
        await rcon_server.stop()
        outcome = await session.execute("players")
        assert not outcome.success
        assert outcome.error.startswith("Cannot connect to server")

    async def test_to_dict_shapes(self, make_session):
        session = make_session()
        ok = await session.execute("players")
        assert ok.to_dict() == {"success": True, "response": "ok: players"}
        session.set_server_starting(True)
        busy = await session.execute("players")
        assert busy.to_dict() == {"success": False, "error": SERVER_STARTING_MSG}


class TestReconnect:
    def test_backoff_is_exponential_and_capped(self):
        session = RconSessionManager(reconnect_base_delay=5.0, reconnect_max_delay=30.0)
        assert [session.backoff_delay(n) for n in range(1, 6)] == [5.0, 10.0, 20.0, 30.0, 30.0]

    async def test_concurrent_reconnects_share_one_attempt(self, make_session, rcon_server):
        session = make_session()
        await session.connect()
        session.mark_disconnected("test")
        results = await asyncio.gather(session.reconnect(), session.reconnect(), session.reconnect())
        assert results == [True, True, True]
        assert rcon_server.handshakes == 2

    async def test_reconnect_refused_while_starting(self, make_session, rcon_server):
        session = make_session()
        session.set_server_starting(True)
        assert await session.reconnect() is False
        assert rcon_server.handshakes == 0

    async def test_reconnect_gives_up_after_max_attempts(self, make_session, rcon_server):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        session = make_session(sleep=fake_sleep, reconnect_base_delay=1.0, reconnect_max_delay=3.0)
        await rcon_server.stop()
        assert await session.reconnect() is False
        assert delays == [1.0, 2.0, 3.0]
        assert session.reconnect_attempts == 0

    async def test_reset_aborts_reconnect_loop(self, make_session, rcon_server):
        session = make_session()

        async def resetting_sleep(delay):
            session.force_reset_connection_state()

        session._sleep = resetting_sleep
        assert await session.reconnect() is False
        assert rcon_server.handshakes == 0


class TestHealth:
    async def test_health_check_reports_not_connected(self, make_session):
        session = make_session()
        report = await session.health_check()
        assert not report.healthy
        assert report.reason == "Not connected"

    async def test_healthy_check(self, make_session):
        session = make_session()
        await session.connect()
        report = await session.health_check()
        assert report.healthy
        assert report.last_command is not None

    async def test_failures_past_threshold_force_reset(self, make_session, rcon_server, bus):
        session = make_session(max_health_failures=3)
        await session.connect()
        rcon_server.garbled = True
        version = session.version
        for _ in range(2):
            await session.health_tick()
        assert session.consecutive_health_failures == 2
        assert session.is_connected
        await session.health_tick()
        assert session.version == version + 1
        assert session.state is ConnectionState.DISCONNECTED
        assert session.consecutive_health_failures == 0
        assert {"reason": "reset", "version": version + 1} in bus.payloads(Topic.RCON_DISCONNECTED)

    async def test_reset_socket_marks_disconnected_at_once(self, make_session, rcon_server):
        session = make_session()
        await session.connect()
        rcon_server.drop_next = 1
        report = await session.health_check()
        assert not report.healthy
        assert not session.is_connected

    async def test_unanswered_health_command_marks_disconnected_at_once(self, make_session, rcon_server, bus):
        session = make_session(command_timeout=0.1)
        await session.connect()
        rcon_server.silent = True
        report = await session.health_check()
        assert not report.healthy
        assert not session.is_connected
        assert session.state is ConnectionState.DISCONNECTED
        assert {"reason": "health-check", "version": session.version} in bus.payloads(Topic.RCON_DISCONNECTED)

    async def test_auto_reconnect_tick_connects_when_running(self, make_session, rcon_server):
        session = make_session(process_controller=FakeProcess(alive=True))
        await session.auto_reconnect_tick()
        assert session.is_connected

    async def test_auto_reconnect_tick_idle_when_down(self, make_session, rcon_server):
        session = make_session(process_controller=FakeProcess(alive=False))
        await session.auto_reconnect_tick()
        assert not session.is_connected
        assert rcon_server.handshakes == 0

    async def test_starting_failsafe_clears_guard(self, make_session):
        session = make_session(starting_failsafe=0.05)
        session.set_server_starting(True)
        await asyncio.sleep(0.1)
        assert session.server_starting is False
