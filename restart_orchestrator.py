"""
Safe server restart: warn players, save, quit, wait for the process to die,
relaunch, then wait for RCON to come back.

Every external call is bounded by a timeout so a silent server cannot hang the
sequence. Cancellation is cooperative and honored only until the save starts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import config
import rcon_commands
from errors import ControlPlaneError, OrchestratorAbort, RestartInProgress
from events import EventBus, Topic
from process_controller import ProcessController
from rcon_session import CommandOutcome, RconSessionManager

log = logging.getLogger("server_panel.restart")

STARTED_RCON_PENDING = "started-rcon-pending"
CANCEL_NOTICE = "Server restart has been cancelled."


class RestartPhase(Enum):
    IDLE = "idle"
    VERIFYING_RCON = "verifying-rcon"
    WARNING = "warning"
    SAVING = "saving"
    STOPPING = "stopping"
    WAITING_FOR_DEATH = "waiting-for-death"
    STARTING = "starting"
    WAITING_FOR_PROCESS = "waiting-for-process"
    RECONNECTING_RCON = "reconnecting-rcon"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RestartTimings:
    minute: float = 60.0
    after_last_minute: float = 30.0
    thirty_seconds: float = 25.0
    final: float = 5.0
    immediate: float = 2.0
    after_save: float = 3.0
    after_quit: float = 10.0
    after_kill: float = 5.0
    fast_path_verify: float = 10.0
    poll_interval: float = config.RESTART_POLL_INTERVAL_SEC
    death_poll_attempts: int = config.RESTART_DEATH_POLL_ATTEMPTS
    launch_poll_attempts: int = config.RESTART_LAUNCH_POLL_ATTEMPTS
    message_timeout: float = config.RESTART_MESSAGE_TIMEOUT_SEC
    verify_timeout: float = config.RESTART_VERIFY_TIMEOUT_SEC
    save_timeout: float = config.RESTART_SAVE_TIMEOUT_SEC
    quit_timeout: float = config.RESTART_QUIT_TIMEOUT_SEC
    rcon_reconnect_delays: List[float] = field(
        default_factory=lambda: list(config.RESTART_RCON_RECONNECT_DELAYS_SEC))
    rcon_attempt_timeout: float = config.RESTART_RCON_ATTEMPT_TIMEOUT_SEC


@dataclass
class RestartSession:
    warning_minutes: int
    started_at: float = field(default_factory=time.time)
    phase: RestartPhase = RestartPhase.IDLE
    cancelled: bool = False
    # set once save/quit begins; cancellation is no longer honored
    committed: bool = False


@dataclass
class RestartResult:
    success: bool
    was_running: bool
    phase: str
    message: str = ""
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RestartOrchestrator:
    def __init__(
        self,
        rcon: RconSessionManager,
        process: ProcessController,
        events: Optional[EventBus] = None,
        *,
        warning_minutes: int = config.RESTART_WARNING_MINUTES,
        timings: Optional[RestartTimings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rcon = rcon
        self.process = process
        self.events = events or EventBus()
        self.warning_minutes = warning_minutes
        self.timings = timings or RestartTimings()
        self._sleep = sleep
        self._clock = clock

        self._current: Optional[RestartSession] = None
        self.last_result: Optional[RestartResult] = None
        self.mod_update_restart_pending = False

    @property
    def busy(self) -> bool:
        return self._current is not None

    def get_status(self) -> Dict[str, Any]:
        rs = self._current
        return {
            "busy": rs is not None,
            "phase": rs.phase.value if rs else RestartPhase.IDLE.value,
            "started_at": rs.started_at if rs else None,
            "cancelled": rs.cancelled if rs else False,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "mod_update_restart_pending": self.mod_update_restart_pending,
        }

    def cancel_restart(self) -> bool:
        """Request cancellation. True only while the countdown can still be stopped."""
        rs = self._current
        if rs is None or rs.committed:
            return False
        rs.cancelled = True
        log.info("Restart cancellation requested")
        return True

    async def perform_restart(self, warning_minutes: Optional[int] = None) -> RestartResult:
        if self._current is not None:
            log.info("Restart already in progress, ignoring duplicate request")
            raise RestartInProgress()

        minutes = self.warning_minutes if warning_minutes is None else max(0, int(warning_minutes))
        rs = RestartSession(warning_minutes=minutes)
        self._current = rs
        t0 = self._clock()
        was_running = False
        try:
            was_running = await self._is_running()
            log.info("Auto-restart: server running: %s", was_running)
            if not was_running:
                result = await self._start_stopped_server(rs, t0)
            else:
                result = await self._full_restart(rs, minutes, t0)
        except Exception as e:
            log.exception("Auto-restart failed")
            self.rcon.set_server_starting(False)
            result = self._finish(rs, RestartResult(False, was_running, RestartPhase.FAILED.value,
                                                    str(e), self._elapsed(t0)))
        finally:
            self._current = None
        return result

    async def trigger_mod_update_restart(self, minutes: int = 5) -> Optional[RestartResult]:
        if self.mod_update_restart_pending:
            log.info("Mod update restart already pending")
            return None
        self.mod_update_restart_pending = True
        log.info("Mod update detected - scheduling restart")
        try:
            await rcon_commands.server_message(
                self.rcon, f"Mod updates detected! Server will restart in {minutes} minutes.")
            return await self.perform_restart(minutes)
        finally:
            self.mod_update_restart_pending = False

    # ----------------------------
    # Sequences
    # ----------------------------
    async def _is_running(self) -> bool:
        try:
            running = await self.process.is_alive()
        except Exception as e:
            log.warning("Auto-restart: process check failed: %s", e)
            running = False
        if not running and self.rcon.is_connected:
            log.info("Auto-restart: process check failed but RCON is connected - server IS running")
            running = True
        return running

    async def _start_stopped_server(self, rs: RestartSession, t0: float) -> RestartResult:
        log.info("Auto-restart triggered but server was not running - starting server")
        self._set_phase(rs, RestartPhase.STARTING)
        await self.process.launch()
        self._set_phase(rs, RestartPhase.WAITING_FOR_PROCESS)
        await self._sleep(self.timings.fast_path_verify)
        if await self.process.is_alive():
            return self._finish(rs, RestartResult(True, False, RestartPhase.DONE.value,
                                                  "Server was offline - started successfully", self._elapsed(t0)))
        return self._finish(rs, RestartResult(False, False, RestartPhase.FAILED.value,
                                              "Server was offline - failed to start", self._elapsed(t0)))

    async def _full_restart(self, rs: RestartSession, minutes: int, t0: float) -> RestartResult:
        t = self.timings

        self._set_phase(rs, RestartPhase.VERIFYING_RCON)
        verified = await self._verify_rcon()
        if not verified.success:
            msg = f"RCON not available: {verified.error or 'connection failed'}"
            log.error("Auto-restart failed: %s", msg)
            return self._finish(rs, RestartResult(False, True, RestartPhase.FAILED.value, msg, self._elapsed(t0)))

        log.info("Auto-restart: RCON verified, sending warnings...")
        self._set_phase(rs, RestartPhase.WARNING)
        try:
            await self._countdown(rs, minutes)
        except OrchestratorAbort:
            return await self._cancelled(rs, t0)
        rs.committed = True

        self._set_phase(rs, RestartPhase.SAVING)
        log.info("Auto-restart: saving world...")
        try:
            saved = await asyncio.wait_for(rcon_commands.save(self.rcon, skip_log=True), t.save_timeout)
            if not saved.success:
                log.warning("Auto-restart: save command may have failed: %s", saved.error)
        except asyncio.TimeoutError:
            log.warning("Auto-restart: save timed out after %.0fs", t.save_timeout)
        await self._sleep(t.after_save)

        self._set_phase(rs, RestartPhase.STOPPING)
        log.info("Auto-restart: sending quit command...")
        try:
            await asyncio.wait_for(rcon_commands.quit_server(self.rcon, skip_log=True), t.quit_timeout)
        except asyncio.TimeoutError:
            log.warning("Auto-restart: RCON quit timed out, will force stop")
        await self._sleep(t.after_quit)

        self._set_phase(rs, RestartPhase.WAITING_FOR_DEATH)
        for _ in range(t.death_poll_attempts):
            if not await self.process.is_alive():
                break
            await self._sleep(t.poll_interval)
        if await self.process.is_alive():
            log.warning("Auto-restart: server still running after quit, killing it")
            await self.process.kill()
            await self._sleep(t.after_kill)

        # keeps the session's own reconnect loop away while the game boots
        self.rcon.set_server_starting(True)
        try:
            self._set_phase(rs, RestartPhase.STARTING)
            log.info("Auto-restart: starting server...")
            await self.process.launch()

            self._set_phase(rs, RestartPhase.WAITING_FOR_PROCESS)
            started = False
            for _ in range(t.launch_poll_attempts):
                await self._sleep(t.poll_interval)
                if await self.process.is_alive():
                    started = True
                    log.info("Auto-restart: server process detected as running")
                    break
            if not started:
                log.error("Auto-restart: server stopped but failed to start")
                return self._finish(rs, RestartResult(False, True, RestartPhase.FAILED.value,
                                                      "Server stopped but failed to start", self._elapsed(t0)))

            self._set_phase(rs, RestartPhase.RECONNECTING_RCON)
            connected = await self._staged_reconnect()
        finally:
            self.rcon.set_server_starting(False)

        if connected:
            return self._finish(rs, RestartResult(True, True, RestartPhase.DONE.value,
                                                  "Server restarted successfully (RCON connected)",
                                                  self._elapsed(t0)))
        log.warning("Auto-restart: RCON startup sequence completed - NOT connected (auto-reconnect will keep trying)")
        return self._finish(rs, RestartResult(True, True, STARTED_RCON_PENDING,
                                              "Server restarted successfully (RCON not yet connected)",
                                              self._elapsed(t0)))

    async def _verify_rcon(self) -> CommandOutcome:
        """Connect if needed and run one cheap command, all within verify_timeout."""
        timeout = self.timings.verify_timeout

        async def _players() -> CommandOutcome:
            if not self.rcon.is_connected:
                log.info("Auto-restart: RCON not connected, attempting to connect...")
                try:
                    await self.rcon.connect()
                except ControlPlaneError as e:
                    log.error("Auto-restart: failed to connect RCON: %s", e)
            return await self.rcon.execute("players", skip_log=True)

        try:
            return await asyncio.wait_for(_players(), timeout)
        except asyncio.TimeoutError:
            log.warning("Auto-restart: RCON verification timed out after %.0fs", timeout)
            return CommandOutcome(False, error=f"no response within {timeout:g}s")

    async def _countdown(self, rs: RestartSession, minutes: int) -> None:
        """Broadcast the warnings. Raises OrchestratorAbort when cancelled before the save."""
        t = self.timings
        if minutes > 0:
            for i in range(minutes, 0, -1):
                self._check_cancelled(rs)
                await self._warn(f"Server restarting in {i} minute(s)!")
                await self._sleep(t.minute if i > 1 else t.after_last_minute)
            self._check_cancelled(rs)
            await self._warn("Server restarting in 30 seconds!")
            await self._sleep(t.thirty_seconds)
            self._check_cancelled(rs)
            await self._warn("Server restarting NOW! Please reconnect in a few minutes.")
            await self._sleep(t.final)
        else:
            self._check_cancelled(rs)
            await self._warn("Server restarting NOW!")
            await self._sleep(t.immediate)
        self._check_cancelled(rs)

    @staticmethod
    def _check_cancelled(rs: RestartSession) -> None:
        if rs.cancelled:
            raise OrchestratorAbort("Restart cancelled during countdown")

    async def _staged_reconnect(self) -> bool:
        delays = self.timings.rcon_reconnect_delays
        for i, delay in enumerate(delays, 1):
            log.info("Auto-restart: RCON waiting %.0fs before attempt %s/%s...", delay, i, len(delays))
            await self._sleep(delay)
            # a stuck attempt from earlier must not block this one
            self.rcon.force_reset_connection_state()
            try:
                await asyncio.wait_for(asyncio.shield(self.rcon.connect()), self.timings.rcon_attempt_timeout)
            except asyncio.TimeoutError:
                log.info("Auto-restart: RCON attempt %s timed out after %.0fs", i, self.timings.rcon_attempt_timeout)
                self.rcon.force_reset_connection_state()
                continue
            except ControlPlaneError as e:
                log.info("Auto-restart: RCON attempt %s failed: %s", i, e)
                self.rcon.force_reset_connection_state()
                continue
            if self.rcon.is_connected:
                log.info("Auto-restart: RCON connected after server startup")
                return True
            log.info("Auto-restart: RCON attempt %s - not connected", i)
        return False

    # ----------------------------
    # Helpers
    # ----------------------------
    async def _warn(self, message: str) -> None:
        try:
            outcome = await asyncio.wait_for(
                rcon_commands.server_message(self.rcon, message, skip_log=True), self.timings.message_timeout)
        except asyncio.TimeoutError:
            log.warning("Auto-restart: warning message timed out: %s", message)
            return
        if not outcome.success:
            log.warning("Auto-restart: warning message failed: %s", outcome.error)

    async def _cancelled(self, rs: RestartSession, t0: float) -> RestartResult:
        log.info("Auto-restart: cancelled during countdown")
        await self._warn(CANCEL_NOTICE)
        return self._finish(rs, RestartResult(False, True, RestartPhase.CANCELLED.value,
                                              "Restart cancelled", self._elapsed(t0)))

    def _set_phase(self, rs: RestartSession, phase: RestartPhase) -> None:
        rs.phase = phase
        log.debug("Auto-restart: phase -> %s", phase.value)
        self.events.publish(Topic.RESTART_PHASE, {"phase": phase.value, "started_at": rs.started_at})

    def _finish(self, rs: RestartSession, result: RestartResult) -> RestartResult:
        final = RestartPhase.DONE if result.phase == STARTED_RCON_PENDING else RestartPhase(result.phase)
        if rs.phase is not final:
            self._set_phase(rs, final)
        self.last_result = result
        log.info("Auto-restart finished: %s (took %.0fs)", result.message, result.duration)
        return result

    def _elapsed(self, t0: float) -> float:
        return round(self._clock() - t0, 3)
