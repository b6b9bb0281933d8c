"""
RCON session manager.

Keeps exactly one authenticated RCON connection to the active game server and
hides its flakiness from callers:

- connect()/reconnect() are single-flight: concurrent callers share one attempt.
- Every attempt captures the connection version when it starts. A forced reset
  bumps the version, so an attempt that finishes afterwards throws its socket
  away instead of resurrecting a connection nobody wants any more.
- execute() never raises for transport problems; it reconnects once, retries
  once and then returns a CommandOutcome with a short, user-facing error.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import config
from errors import (
    AuthError,
    ControlPlaneError,
    ProtocolError,
    RconConnectionReset,
    RconTimeout,
    TransportError,
    classify_os_error,
    friendly_error,
)
from events import EventBus, Topic
from rcon_protocol import RconConnection

log = logging.getLogger("server_panel.rcon")

SERVER_STARTING_MSG = "Server is starting, please wait..."
SERVER_NOT_RUNNING_MSG = "Game server is not running."


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class CommandOutcome:
    success: bool
    response: str = ""
    error: Optional[str] = None
    disconnected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.success:
            out["response"] = self.response
        else:
            out["error"] = self.error
        return out


@dataclass
class HealthReport:
    healthy: bool
    reason: Optional[str] = None
    last_command: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RconSessionManager:
    def __init__(
        self,
        host: str = config.RCON_DEFAULT_HOST,
        port: int = config.RCON_DEFAULT_PORT,
        password: str = "",
        *,
        events: Optional[EventBus] = None,
        settings_store=None,
        process_controller=None,
        auth_timeout: float = config.RCON_AUTH_TIMEOUT_SEC,
        command_timeout: float = config.RCON_COMMAND_TIMEOUT_SEC,
        server_check_timeout: float = config.RCON_SERVER_CHECK_TIMEOUT_SEC,
        reconnect_base_delay: float = config.RCON_RECONNECT_BASE_DELAY_SEC,
        reconnect_max_delay: float = config.RCON_RECONNECT_MAX_DELAY_SEC,
        max_reconnect_attempts: int = config.RCON_RECONNECT_MAX_ATTEMPTS,
        auto_reconnect_interval: float = config.RCON_AUTO_RECONNECT_SEC,
        health_check_interval: float = config.RCON_HEALTH_CHECK_SEC,
        max_health_failures: int = config.RCON_MAX_HEALTH_FAILURES,
        health_check_command: str = config.RCON_HEALTH_CHECK_COMMAND,
        starting_failsafe: float = config.RCON_STARTING_FAILSAFE_SEC,
        error_log_cooldown: float = config.RCON_ERROR_LOG_COOLDOWN_SEC,
        connection_factory: Callable[..., RconConnection] = RconConnection,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.host = host
        self.port = int(port)
        self.password = password
        self.events = events or EventBus()
        self.settings_store = settings_store
        self.process_controller = process_controller

        self.auth_timeout = auth_timeout
        self.command_timeout = command_timeout
        self.server_check_timeout = server_check_timeout
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.auto_reconnect_interval = auto_reconnect_interval
        self.health_check_interval = health_check_interval
        self.max_health_failures = max_health_failures
        self.health_check_command = health_check_command
        self.starting_failsafe = starting_failsafe
        self.error_log_cooldown = error_log_cooldown
        self._connection_factory = connection_factory
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._version = 0
        self._client: Optional[RconConnection] = None
        self._pending: Set[RconConnection] = set()
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._config_loaded = settings_store is None

        self.server_starting = False
        self._starting_handle: Optional[asyncio.TimerHandle] = None

        self.reconnect_attempts = 0
        self.consecutive_health_failures = 0
        self.last_successful_command: Optional[float] = None
        self.last_health_check: Optional[float] = None
        self._last_error_log = float("-inf")

        self._auto_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None

    # ----------------------------
    # State
    # ----------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._client is not None

    def get_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "state": self._state.value,
            "connected": self.is_connected,
            "version": self._version,
            "last_successful_command": self.last_successful_command,
            "reconnect_attempts": self.reconnect_attempts,
            "auto_reconnect_enabled": self._auto_task is not None,
            "server_starting": self.server_starting,
        }

    def get_state(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "version": self._version,
            "connecting": self._connect_task is not None,
            "reconnecting": self._reconnect_task is not None,
            "health_failures": self.consecutive_health_failures,
        }

    def set_server_starting(self, value: bool) -> None:
        """Raise or clear the guard that keeps background reconnects away during a relaunch."""
        self.server_starting = bool(value)
        if self._starting_handle is not None:
            self._starting_handle.cancel()
            self._starting_handle = None
        if value:
            loop = asyncio.get_running_loop()
            self._starting_handle = loop.call_later(self.starting_failsafe, self._clear_stuck_starting)

    def _clear_stuck_starting(self) -> None:
        self._starting_handle = None
        if self.server_starting:
            log.warning("RCON: server_starting flag was stuck for %.0fs, clearing it", self.starting_failsafe)
            self.server_starting = False

    # ----------------------------
    # Config
    # ----------------------------
    async def _load_config(self) -> None:
        if self._config_loaded or self.settings_store is None:
            return
        try:
            cfg = await asyncio.to_thread(self.settings_store.get_active_server_config)
        except Exception as e:
            log.debug("Could not load RCON config from settings: %s", e)
            return
        if cfg is not None and cfg.rcon_password:
            self.host = cfg.rcon_host or config.RCON_DEFAULT_HOST
            self.port = int(cfg.rcon_port or config.RCON_DEFAULT_PORT)
            self.password = cfg.rcon_password
            log.info("RCON config loaded from active server")
        self._config_loaded = True

    async def reload_config(self) -> None:
        """Re-read credentials (active server changed). Drops the current connection."""
        self._config_loaded = self.settings_store is None
        if self.is_connected:
            await self.disconnect()
        await self._load_config()

    async def update_config(self, host: Optional[str] = None, port: Optional[int] = None,
                            password: Optional[str] = None) -> None:
        self.host = host or self.host
        self.port = int(port or self.port)
        self.password = password or self.password
        if self.is_connected:
            await self.disconnect()

    # ----------------------------
    # Connect / disconnect
    # ----------------------------
    async def connect(self) -> bool:
        """Connect and authenticate, sharing any attempt already in flight.

        Returns False when the game server is not running or the attempt was
        invalidated by a forced reset. Raises AuthError or a TransportError
        subclass when the handshake itself fails.
        """
        if self.is_connected:
            return True
        task = self._connect_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._do_connect())
            task.add_done_callback(self._clear_connect_task)
            self._connect_task = task
        return await asyncio.shield(task)

    def _clear_connect_task(self, task: asyncio.Task) -> None:
        if self._connect_task is task:
            self._connect_task = None

    async def _do_connect(self) -> bool:
        start_version = self._version

        await self._load_config()
        if self._version != start_version:
            log.info("RCON: connection attempt cancelled (force reset occurred)")
            return False

        if self.process_controller is not None:
            try:
                running = await asyncio.wait_for(self.process_controller.is_alive(), self.server_check_timeout)
                if not running:
                    log.debug("RCON: skipping connection - server is not running")
                    return False
            except Exception as e:
                log.debug("RCON: server check failed (%s), attempting connection anyway", e)

        if self._version != start_version:
            log.info("RCON: connection attempt cancelled (force reset occurred)")
            return False
        if self.is_connected:
            return True

        log.info("RCON: creating new client for %s:%s (version %s)", self.host, self.port, start_version)
        self._state = ConnectionState.CONNECTING
        conn = self._connection_factory(self.host, self.port, timeout=self.command_timeout)
        self._pending.add(conn)
        try:
            await asyncio.wait_for(self._handshake(conn), timeout=self.auth_timeout)
        except asyncio.TimeoutError:
            err: ControlPlaneError = RconTimeout(f"Authentication timed out after {self.auth_timeout}s")
            return self._connect_failed(conn, start_version, err)
        except ControlPlaneError as e:
            return self._connect_failed(conn, start_version, e)
        except OSError as e:
            return self._connect_failed(conn, start_version, classify_os_error(e))

        if self._version != start_version:
            log.info("RCON: connection succeeded but version changed - discarding stale connection")
            self._discard(conn)
            return False

        self._pending.discard(conn)
        old = self._client
        if old is not None and old is not conn:
            old.abort()
        self._client = conn
        self._state = ConnectionState.CONNECTED
        self.reconnect_attempts = 0
        self.consecutive_health_failures = 0
        log.info("RCON connected to %s:%s", self.host, self.port)
        self.events.publish(Topic.RCON_CONNECTED, {"host": self.host, "port": self.port, "version": self._version})
        return True

    async def _handshake(self, conn: RconConnection) -> None:
        await conn.open()
        await conn.authenticate(self.password)

    def _connect_failed(self, conn: RconConnection, start_version: int, err: ControlPlaneError) -> bool:
        self._discard(conn)
        if self._version != start_version:
            log.debug("RCON: stale connection attempt failed after reset: %s", err)
            return False
        self._state = ConnectionState.DISCONNECTED
        self._log_connect_failure(err)
        raise err

    def _log_connect_failure(self, err: ControlPlaneError) -> None:
        now = time.monotonic()
        if now - self._last_error_log < self.error_log_cooldown:
            return
        self._last_error_log = now
        if isinstance(err, TransportError):
            log.warning("RCON connection failed (server may be offline): %s", err)
        else:
            log.error("RCON connection failed: %s", err)

    def _discard(self, conn: RconConnection) -> None:
        self._pending.discard(conn)
        conn.abort()

    async def disconnect(self) -> None:
        was_connected = self._state is ConnectionState.CONNECTED
        client = self._client
        self._client = None
        self._state = ConnectionState.DISCONNECTED
        self.last_successful_command = None
        if client is not None:
            await client.close()
        if was_connected:
            log.info("RCON disconnected")
            self.events.publish(Topic.RCON_DISCONNECTED, {"reason": "disconnect", "version": self._version})

    def mark_disconnected(self, reason: str) -> None:
        client = self._client
        self._client = None
        if client is not None:
            client.abort()
        was_connected = self._state is ConnectionState.CONNECTED
        self._state = ConnectionState.DISCONNECTED
        if was_connected:
            self.events.publish(Topic.RCON_DISCONNECTED, {"reason": reason, "version": self._version})

    def force_reset_connection_state(self) -> None:
        """Invalidate every attempt in flight and drop every socket, right now.

        Does not suspend. Attempts that are still running notice the version
        change and discard themselves. The server-starting guard is left alone.
        """
        self._version += 1
        log.info("RCON: force resetting connection state (version %s)", self._version)

        self._connect_task = None
        self._reconnect_task = None
        self.reconnect_attempts = 0
        self.consecutive_health_failures = 0

        for conn in list(self._pending):
            conn.abort()
        self._pending.clear()
        if self._client is not None:
            self._client.abort()
            self._client = None

        self._state = ConnectionState.DISCONNECTED
        log.info("RCON: connection state forcibly reset (ready for new attempt)")
        self.events.publish(Topic.RCON_DISCONNECTED, {"reason": "reset", "version": self._version})

    # ----------------------------
    # Reconnect
    # ----------------------------
    def backoff_delay(self, attempt: int) -> float:
        return min(self.reconnect_base_delay * (2 ** max(0, attempt - 1)), self.reconnect_max_delay)

    async def reconnect(self) -> bool:
        if self.server_starting:
            log.debug("RCON reconnect: skipping - server is starting")
            return False
        if self.is_connected:
            return True
        if self._reconnect_task is not None:
            log.debug("RCON reconnect: already in progress, waiting for existing attempt")
            return await asyncio.shield(self._reconnect_task)
        if self._connect_task is not None:
            log.debug("RCON reconnect: connection in progress, waiting")
            try:
                result = await asyncio.shield(self._connect_task)
                if result or self._reconnect_task is None:
                    return result
            except TransportError:
                pass
            if self._reconnect_task is not None:
                return await asyncio.shield(self._reconnect_task)

        task = asyncio.get_running_loop().create_task(self._do_reconnect())
        task.add_done_callback(self._clear_reconnect_task)
        self._reconnect_task = task
        return await asyncio.shield(task)

    def _clear_reconnect_task(self, task: asyncio.Task) -> None:
        if self._reconnect_task is task:
            self._reconnect_task = None

    async def _do_reconnect(self) -> bool:
        start_version = self._version
        await self.disconnect()

        while self.reconnect_attempts < self.max_reconnect_attempts:
            if self._version != start_version:
                log.debug("RCON reconnect: version changed (force reset), aborting")
                return False

            self.reconnect_attempts += 1
            delay = self.backoff_delay(self.reconnect_attempts)
            log.info("RCON reconnecting... attempt %s (in %.0fs)", self.reconnect_attempts, delay)
            await self._sleep(delay)

            if self._version != start_version:
                log.debug("RCON reconnect: version changed (force reset), aborting")
                return False
            if self.server_starting:
                log.debug("RCON reconnect: server starting, aborting reconnect loop")
                self.reconnect_attempts = 0
                return False
            if self.is_connected:
                self.reconnect_attempts = 0
                return True

            try:
                ok = await self.connect()
            except AuthError:
                self.reconnect_attempts = 0
                raise
            except TransportError as e:
                log.debug("RCON reconnect attempt %s failed: %s", self.reconnect_attempts, e)
                continue
            self.reconnect_attempts = 0
            if ok:
                log.info("RCON reconnected successfully")
            else:
                log.debug("RCON reconnect: server not running, stopping attempts")
            return ok

        log.warning("RCON reconnect: max attempts (%s) reached, giving up. Auto-reconnect will retry later.",
                    self.max_reconnect_attempts)
        self.reconnect_attempts = 0
        return False

    # ----------------------------
    # Commands
    # ----------------------------
    async def _send(self, command: str) -> str:
        client = self._client
        if client is None or not self.is_connected:
            raise RconConnectionReset("RCON not connected")
        response = await client.execute(command, timeout=self.command_timeout)
        self.last_successful_command = time.time()
        return response

    async def execute(self, command: str, skip_log: bool = False, retry: bool = True) -> CommandOutcome:
        """Run one console command.

        skip_log keeps automatic commands (polling, countdown broadcasts) out of
        the command log at INFO level. With retry=False a transport failure is
        reported straight away (outcome.disconnected is set) instead of
        reconnecting and sending the command again.
        """
        if self.server_starting:
            return CommandOutcome(False, error=SERVER_STARTING_MSG)

        if not self.is_connected:
            try:
                if not await self.connect():
                    return CommandOutcome(False, error=SERVER_NOT_RUNNING_MSG)
            except ControlPlaneError as e:
                log.debug("RCON command skipped (connection error): %s", command)
                return CommandOutcome(False, error=friendly_error(e))

        try:
            if not skip_log:
                log.info("RCON executing: %s", command)
            response = await self._send(command)
            return CommandOutcome(True, response=response or "Command executed successfully")
        except ProtocolError as e:
            log.warning("RCON command failed: %s", e)
            return CommandOutcome(False, error=friendly_error(e))
        except TransportError as e:
            log.debug("RCON command failed (connection error): %s: %s", command, e)
            self.mark_disconnected("transport-error")
            if not retry:
                return CommandOutcome(False, error=friendly_error(e), disconnected=True)

        if self.server_starting:
            return CommandOutcome(False, error=SERVER_STARTING_MSG)

        try:
            await self.reconnect()
            if not self.is_connected:
                return CommandOutcome(False, error="RCON reconnection failed")
            response = await self._send(command)
            return CommandOutcome(True, response=response or "Command executed successfully")
        except TransportError as e:
            self.mark_disconnected("transport-error")
            return CommandOutcome(False, error=friendly_error(e), disconnected=True)
        except ControlPlaneError as e:
            return CommandOutcome(False, error=friendly_error(e))

    # ----------------------------
    # Health
    # ----------------------------
    async def health_check(self) -> HealthReport:
        """Check the live connection with a cheap command.

        Any transport failure, a timeout included, drops the socket at once
        since a late reply would desync the stream. A garbled answer only
        counts as a failure; the periodic check resets after enough of them.
        """
        client = self._client
        if not self.is_connected or client is None:
            return HealthReport(False, reason="Not connected")
        try:
            await client.execute(self.health_check_command, timeout=self.command_timeout)
        except TransportError as e:
            log.warning("RCON health check failed: %s", e)
            self.mark_disconnected("health-check")
            return HealthReport(False, reason=str(e))
        except ControlPlaneError as e:
            return HealthReport(False, reason=str(e))
        self.last_successful_command = time.time()
        return HealthReport(True, last_command=self.last_successful_command)

    async def health_tick(self) -> None:
        if not self.is_connected:
            self.consecutive_health_failures = 0
            return
        if self.server_starting:
            return
        report = await self.health_check()
        self.last_health_check = time.time()
        if report.healthy:
            self.consecutive_health_failures = 0
            log.debug("RCON health check: OK")
            return
        self.consecutive_health_failures += 1
        log.warning("RCON health check failed (%s/%s): %s",
                    self.consecutive_health_failures, self.max_health_failures, report.reason)
        if self.consecutive_health_failures >= self.max_health_failures:
            log.error("RCON health check: too many failures, forcing disconnect")
            self.force_reset_connection_state()

    async def auto_reconnect_tick(self) -> None:
        if self.server_starting:
            log.debug("RCON auto-reconnect: skipping - server is starting")
            return
        if self.is_connected or self._connect_task is not None or self._reconnect_task is not None:
            return
        if self.process_controller is None:
            return
        try:
            running = await self.process_controller.is_alive()
        except Exception as e:
            log.debug("RCON auto-reconnect: server check error: %s", e)
            return
        if not running:
            return
        log.info("RCON auto-reconnect: server is running, attempting connection")
        try:
            if await self.connect():
                log.info("RCON auto-reconnect: successfully connected")
        except ControlPlaneError as e:
            log.warning("RCON auto-reconnect: connection failed: %s", e)

    async def _every(self, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        while True:
            await self._sleep(interval)
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("RCON periodic task failed")

    def start_health_check(self) -> None:
        if self._health_task is not None:
            return
        self._health_task = asyncio.get_running_loop().create_task(
            self._every(self.health_check_interval, self.health_tick))
        log.info("RCON health check enabled (%.0fs interval)", self.health_check_interval)

    def stop_health_check(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None
        self.consecutive_health_failures = 0

    def start_auto_reconnect(self) -> None:
        if self._auto_task is None:
            self._auto_task = asyncio.get_running_loop().create_task(
                self._every(self.auto_reconnect_interval, self.auto_reconnect_tick))
            log.info("RCON auto-reconnect enabled (%.0fs interval)", self.auto_reconnect_interval)
        self.start_health_check()

    def stop_auto_reconnect(self) -> None:
        if self._auto_task is not None:
            self._auto_task.cancel()
            self._auto_task = None
            log.info("RCON auto-reconnect disabled")
        self.stop_health_check()

    async def close(self) -> None:
        """Stop background loops and drop the connection."""
        self.stop_auto_reconnect()
        if self._starting_handle is not None:
            self._starting_handle.cancel()
            self._starting_handle = None
        self.server_starting = False
        await self.disconnect()
