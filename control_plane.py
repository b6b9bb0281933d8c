"""
Composition root.

Builds the RCON session, the panel bridge and the restart orchestrator, runs
them on one asyncio loop in a background thread, and lets synchronous code
(the Flask handlers) call into that loop.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Dict, Optional

import config
from errors import BridgeError, ControlPlaneError, RestartInProgress
from events import ALL_TOPICS, EventBus, RecentEvents, log_event
from panel_bridge import PanelBridge
from process_controller import LocalProcessController, ProcessController
from rcon_session import RconSessionManager
from restart_orchestrator import RestartOrchestrator
from settings_store import SettingsStore

log = logging.getLogger("server_panel.control")


class ControlPlaneNotRunning(RuntimeError):
    pass


class ControlPlane:
    """
    Starts/stops the control-plane services on an asyncio loop in a background thread.
    """

    def __init__(self, settings_store: SettingsStore, events: Optional[EventBus] = None,
                 process_controller: Optional[ProcessController] = None,
                 rcon_options: Optional[Dict[str, Any]] = None,
                 bridge_options: Optional[Dict[str, Any]] = None):
        self.settings_store = settings_store
        self.events = events or EventBus()
        self.recent_events = RecentEvents(config.RECENT_EVENTS_MAX)
        self.events.subscribe(ALL_TOPICS, log_event)
        self.events.subscribe(ALL_TOPICS, self.recent_events)

        self._process_override = process_controller
        self._rcon_options = rcon_options or {}
        self._bridge_options = bridge_options or {}

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready = threading.Event()
        self._status = "stopped"
        self._last_error = ""

        self.process: Optional[ProcessController] = None
        self.rcon: Optional[RconSessionManager] = None
        self.bridge: Optional[PanelBridge] = None
        self.orchestrator: Optional[RestartOrchestrator] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._background: set = set()

    # ----------------------------
    # Lifecycle
    # ----------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and self._loop is not None

    def start(self, timeout: float = 10.0) -> None:
        with self._lock:
            if self.running:
                return
            self._ready.clear()
            self._status = "starting"
            self._last_error = ""
            t = threading.Thread(target=self._run_thread, name="ControlPlaneLoop", daemon=True)
            self._thread = t
            t.start()
        if not self._ready.wait(timeout):
            raise ControlPlaneNotRunning("event loop thread did not start")
        try:
            self.call(self._start_services, timeout=timeout)
        except Exception as e:
            self._status = "error"
            self._last_error = str(e)
            raise
        self._status = "running"
        log.info("Control plane started")

    def stop(self, timeout: float = 10.0) -> None:
        with self._lock:
            if not self.running:
                self._status = "stopped"
                return
            self._status = "stopping"
            loop, thread = self._loop, self._thread
        try:
            self.call(self._stop_services, timeout=timeout)
        except Exception:
            log.exception("Error while stopping control plane services")
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout)
        with self._lock:
            self._thread = None
            self._loop = None
            self._status = "stopped"
        log.info("Control plane stopped")

    def _run_thread(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        asyncio.set_event_loop(loop)
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    async def _start_services(self) -> None:
        cfg = await asyncio.to_thread(self.settings_store.get_active_server_config)
        if self._process_override is not None:
            self.process = self._process_override
        elif cfg is not None:
            self.process = LocalProcessController(cfg.install_dir, cfg.start_script, cfg.process_name)
        else:
            self.process = LocalProcessController(None)

        self.rcon = RconSessionManager(events=self.events, settings_store=self.settings_store,
                                       process_controller=self.process, **self._rcon_options)
        self.bridge = PanelBridge(self.events, **self._bridge_options)
        self.orchestrator = RestartOrchestrator(self.rcon, self.process, self.events)

        self.rcon.start_auto_reconnect()
        await self._start_bridge(cfg)
        self._spawn(self._initial_connect())

    async def _start_bridge(self, cfg) -> None:
        if cfg is None or not cfg.bridge_path:
            log.info("Panel bridge path not set, bridge disabled")
            return
        try:
            await asyncio.to_thread(self.bridge.configure, cfg.bridge_path, cfg.server_name)
            await self.bridge.start()
        except (BridgeError, OSError) as e:
            log.warning("Panel bridge not started: %s", e)

    async def _initial_connect(self) -> None:
        try:
            if await self.rcon.connect():
                log.info("RCON connected on startup")
        except ControlPlaneError as e:
            log.info("RCON not available on startup: %s", e)

    async def _stop_services(self) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            self._restart_task.cancel()
        if self.bridge is not None and self.bridge.is_running:
            await self.bridge.stop()
        if self.rcon is not None:
            await self.rcon.close()

    async def reload_active_server(self) -> None:
        """Pick up a changed active server: new RCON credentials, new bridge path."""
        cfg = await asyncio.to_thread(self.settings_store.get_active_server_config)
        if self._process_override is None and cfg is not None:
            proc = LocalProcessController(cfg.install_dir, cfg.start_script, cfg.process_name)
            self.process = proc
            self.rcon.process_controller = proc
            self.orchestrator.process = proc
        await self.rcon.reload_config()
        if self.bridge.is_running:
            await self.bridge.stop()
        await self._start_bridge(cfg)

    # ----------------------------
    # Cross-thread calls
    # ----------------------------
    def _require_loop(self) -> asyncio.AbstractEventLoop:
        loop = self._loop
        if loop is None or not loop.is_running():
            raise ControlPlaneNotRunning("Control plane is not running")
        return loop

    def call(self, coro_fn: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
        """Run coro_fn(*args) on the loop and wait for its result from this (non-loop) thread."""
        loop = self._require_loop()
        fut = asyncio.run_coroutine_threadsafe(coro_fn(*args, **kwargs), loop)
        try:
            return fut.result(timeout)
        except concurrent.futures.TimeoutError:
            fut.cancel()
            raise

    def submit(self, coro_fn: Callable[..., Any], *args, **kwargs) -> concurrent.futures.Future:
        """Fire-and-forget: schedule coro_fn(*args) on the loop. Failures are logged."""
        loop = self._require_loop()
        fut = asyncio.run_coroutine_threadsafe(coro_fn(*args, **kwargs), loop)
        fut.add_done_callback(_log_background_failure)
        return fut

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ----------------------------
    # Restart
    # ----------------------------
    async def start_restart(self, warning_minutes: Optional[int] = None) -> None:
        """Begin a restart in the background. Raises RestartInProgress if one is running."""
        if self.orchestrator.busy or (self._restart_task is not None and not self._restart_task.done()):
            raise RestartInProgress()
        self._restart_task = self._spawn(self.orchestrator.perform_restart(warning_minutes))

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "running": self.running,
                "status": self._status,
                "last_error": self._last_error,
            }


def _log_background_failure(fut: concurrent.futures.Future) -> None:
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        log.error("Background control-plane task failed: %s", exc)
