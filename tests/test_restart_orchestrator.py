"""
Tests for the restart sequence, run on a virtual clock so the full
countdown takes no wall time.
"""

import asyncio

import pytest

from errors import OrchestratorAbort, RestartInProgress
from events import Topic
from restart_orchestrator import (
    CANCEL_NOTICE,
    STARTED_RCON_PENDING,
    RestartOrchestrator,
    RestartSession,
    RestartTimings,
)


@pytest.fixture
def timings():
    return RestartTimings(
        poll_interval=1.0,
        death_poll_attempts=60,
        launch_poll_attempts=60,
        rcon_reconnect_delays=[60.0, 45.0, 45.0],
    )


@pytest.fixture
def orchestrator(fake_rcon, process, bus, clock, timings):
    return RestartOrchestrator(fake_rcon, process, bus, warning_minutes=5, timings=timings,
                               sleep=clock.sleep, clock=clock.time)


def msg(text):
    return f'servermsg "{text}"'


class TestFullRestart:
    async def test_two_minute_countdown_timeline(self, orchestrator, fake_rcon, process):
        result = await orchestrator.perform_restart(2)
        assert fake_rcon.commands[:7] == [
            (0.0, "players"),
            (0.0, msg("Server restarting in 2 minute(s)!")),
            (60.0, msg("Server restarting in 1 minute(s)!")),
            (90.0, msg("Server restarting in 30 seconds!")),
            (115.0, msg("Server restarting NOW! Please reconnect in a few minutes.")),
            (120.0, "save"),
            (123.0, "quit"),
        ]
        assert result.success
        assert result.was_running
        assert result.phase == "done"
        assert result.message == "Server restarted successfully (RCON connected)"
        assert process.launches == 1
        assert process.kills == 0
        assert fake_rcon.starting_history == [True, False]
        # quit at 123 + 10 settle + 1 launch poll + 60 before the first RCON attempt
        assert result.duration == 194.0

    async def test_zero_minutes_skips_countdown(self, orchestrator, fake_rcon):
        result = await orchestrator.perform_restart(0)
        assert fake_rcon.commands[:4] == [
            (0.0, "players"),
            (0.0, msg("Server restarting NOW!")),
            (2.0, "save"),
            (5.0, "quit"),
        ]
        assert result.phase == "done"

    async def test_default_warning_minutes(self, orchestrator, fake_rcon):
        await orchestrator.perform_restart()
        assert msg("Server restarting in 5 minute(s)!") in fake_rcon.sent()

    async def test_kills_process_that_ignores_quit(self, orchestrator, fake_rcon, process, clock):
        process.dies_on_quit = False
        result = await orchestrator.perform_restart(0)
        assert process.kills == 1
        assert process.launches == 1
        assert result.success

    async def test_launch_that_never_comes_up(self, orchestrator, fake_rcon, process):
        process.start_on_launch = False
        result = await orchestrator.perform_restart(0)
        assert not result.success
        assert result.phase == "failed"
        assert result.message == "Server stopped but failed to start"
        assert fake_rcon.starting_history == [True, False]

    async def test_rcon_never_returns(self, orchestrator, fake_rcon):
        fake_rcon.connect_results = [False, False, False]
        result = await orchestrator.perform_restart(0)
        assert result.success
        assert result.phase == STARTED_RCON_PENDING
        assert fake_rcon.resets == 3
        assert fake_rcon.starting_history == [True, False]
        assert orchestrator.get_status()["phase"] == "idle"

    async def test_rcon_comes_back_on_second_attempt(self, orchestrator, fake_rcon):
        fake_rcon.connect_results = [False, True]
        result = await orchestrator.perform_restart(0)
        assert result.phase == "done"
        assert fake_rcon.resets == 2

    async def test_rcon_verify_failure_aborts(self, orchestrator, fake_rcon, process):
        fake_rcon.failing.add("players")
        result = await orchestrator.perform_restart(1)
        assert not result.success
        assert result.phase == "failed"
        assert result.message.startswith("RCON not available:")
        assert fake_rcon.sent() == ["players"]
        assert process.launches == 0

    async def test_unanswered_rcon_verify_is_bounded(self, orchestrator, fake_rcon, process, timings):
        timings.verify_timeout = 0.05
        fake_rcon.hanging.add("players")
        result = await asyncio.wait_for(orchestrator.perform_restart(0), 2.0)
        assert not result.success
        assert result.phase == "failed"
        assert result.message.startswith("RCON not available:")
        assert fake_rcon.sent() == ["players"]
        assert process.launches == 0
        assert not orchestrator.busy

    async def test_phase_events(self, orchestrator, bus):
        await orchestrator.perform_restart(0)
        phases = [p["phase"] for p in bus.payloads(Topic.RESTART_PHASE)]
        assert phases == [
            "verifying-rcon", "warning", "saving", "stopping", "waiting-for-death",
            "starting", "waiting-for-process", "reconnecting-rcon", "done",
        ]

    async def test_unexpected_error_becomes_failed_result(self, orchestrator, process, fake_rcon):
        async def broken_launch():
            raise RuntimeError("disk on fire")

        process.launch = broken_launch
        result = await orchestrator.perform_restart(0)
        assert not result.success
        assert result.phase == "failed"
        assert "disk on fire" in result.message
        assert fake_rcon.starting_history[-1] is False
        assert not orchestrator.busy


class TestFastPath:
    async def test_offline_server_is_just_started(self, orchestrator, fake_rcon, process, clock):
        process.alive = False
        fake_rcon.is_connected = False
        result = await orchestrator.perform_restart(5)
        assert result.success
        assert not result.was_running
        assert result.phase == "done"
        assert result.message == "Server was offline - started successfully"
        assert fake_rcon.commands == []
        assert process.launches == 1
        assert clock.now == 10.0

    async def test_offline_server_that_fails_to_start(self, orchestrator, fake_rcon, process):
        process.alive = False
        process.start_on_launch = False
        fake_rcon.is_connected = False
        result = await orchestrator.perform_restart(5)
        assert not result.success
        assert result.message == "Server was offline - failed to start"

    async def test_connected_rcon_counts_as_running(self, orchestrator, fake_rcon, process):
        process.alive = False
        result = await orchestrator.perform_restart(0)
        assert result.was_running
        assert "save" in fake_rcon.sent()


class TestCancel:
    async def test_cancel_during_countdown(self, orchestrator, fake_rcon, process, clock):
        clock.at(60.0, orchestrator.cancel_restart)
        result = await orchestrator.perform_restart(2)
        assert result.phase == "cancelled"
        assert not result.success
        assert fake_rcon.sent() == [
            "players",
            msg("Server restarting in 2 minute(s)!"),
            msg(CANCEL_NOTICE),
        ]
        assert process.kills == 0
        assert process.launches == 0

    async def test_cancel_after_commit_is_refused(self, orchestrator, fake_rcon, clock):
        refused = []
        clock.at(121.0, lambda: refused.append(orchestrator.cancel_restart()))
        result = await orchestrator.perform_restart(2)
        assert refused == [False]
        assert result.phase == "done"

    def test_cancel_when_idle(self, orchestrator):
        assert orchestrator.cancel_restart() is False

    async def test_countdown_raises_abort_once_cancelled(self, orchestrator, fake_rcon, clock):
        session = RestartSession(warning_minutes=2)
        clock.at(60.0, lambda: setattr(session, "cancelled", True))
        with pytest.raises(OrchestratorAbort):
            await orchestrator._countdown(session, 2)
        assert fake_rcon.sent() == [msg("Server restarting in 2 minute(s)!")]

    async def test_cancel_before_first_warning(self, orchestrator, fake_rcon, process):
        orchestrator_task = asyncio.create_task(orchestrator.perform_restart(0))
        await asyncio.sleep(0)
        assert orchestrator.cancel_restart() is True
        result = await orchestrator_task
        assert result.phase == "cancelled"
        assert "save" not in fake_rcon.sent()
        assert process.kills == 0


class TestConcurrency:
    async def test_second_restart_is_rejected(self, orchestrator):
        first = asyncio.create_task(orchestrator.perform_restart(1))
        await asyncio.sleep(0)
        assert orchestrator.busy
        with pytest.raises(RestartInProgress):
            await orchestrator.perform_restart(1)
        result = await first
        assert result.success
        assert not orchestrator.busy

    async def test_status_reports_last_result(self, orchestrator):
        await orchestrator.perform_restart(0)
        status = orchestrator.get_status()
        assert status["busy"] is False
        assert status["last_result"]["phase"] == "done"


class TestModUpdateRestart:
    async def test_announces_then_restarts(self, orchestrator, fake_rcon):
        result = await orchestrator.trigger_mod_update_restart(1)
        assert fake_rcon.sent()[0] == msg("Mod updates detected! Server will restart in 1 minutes.")
        assert result.phase == "done"
        assert orchestrator.mod_update_restart_pending is False

    async def test_only_one_pending(self, orchestrator):
        orchestrator.mod_update_restart_pending = True
        assert await orchestrator.trigger_mod_update_restart(1) is None
