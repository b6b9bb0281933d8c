"""
File-based command bridge to the script running inside the game server.

The bridge directory holds three files:

    commands.json  written by us     {"commands": [{id, action, args, timestamp}]}
    results.json   written by remote {"results":  [{id, success, data?, error?}]}
    status.json    written by remote {version, serverName, playerCount, players, timestamp}

Commands are appended through one write queue (temp file + os.replace) so two
submissions never interleave. Results are polled, matched to the waiting
caller by id and delivered once. status.json is a heartbeat: the remote side
counts as alive while the file's mtime is recent enough.

A watchdog observer on the directory shortens the latency between the remote
side writing a file and us reading it. Polling keeps running regardless.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

import config
from errors import (
    BridgeCommandError,
    BridgeError,
    BridgeNotConfigured,
    BridgeNotRunning,
    BridgeStaleError,
    BridgeTimeoutError,
)
from events import EventBus, Topic

log = logging.getLogger("server_panel.bridge")

COMMANDS_FILE = "commands.json"
RESULTS_FILE = "results.json"
STATUS_FILE = "status.json"


@dataclass
class BridgeStatus:
    alive: bool = False
    version: Optional[str] = None
    server_name: Optional[str] = None
    player_count: Optional[int] = None
    players: List[str] = field(default_factory=list)
    timestamp: Any = None
    age: Optional[float] = None
    consecutive_failures: int = 0
    waiting: bool = False
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_file(cls, raw: Dict[str, Any], alive: bool, age: float) -> "BridgeStatus":
        known = {"version", "serverName", "playerCount", "players", "timestamp"}
        players = raw.get("players") or []
        if not isinstance(players, list):
            players = []
        return cls(
            alive=alive,
            version=raw.get("version"),
            server_name=raw.get("serverName"),
            player_count=raw.get("playerCount"),
            players=[str(p) for p in players],
            timestamp=raw.get("timestamp"),
            age=age,
            extra={k: v for k, v in raw.items() if k not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update({
            "alive": self.alive,
            "version": self.version,
            "serverName": self.server_name,
            "playerCount": self.player_count,
            "players": list(self.players),
            "timestamp": self.timestamp,
            "age": self.age,
            "consecutiveFailures": self.consecutive_failures,
            "waiting": self.waiting,
        })
        if self.error:
            out["error"] = self.error
        return out

    def same_data(self, other: Optional["BridgeStatus"]) -> bool:
        """Equality ignoring the age, which changes on every check."""
        if other is None:
            return False
        return replace(self, age=None) == replace(other, age=None)


@dataclass
class PendingCommand:
    id: str
    action: str
    future: asyncio.Future
    issued_at: float
    timer: Optional[asyncio.TimerHandle] = None


class _BridgeDirHandler(FileSystemEventHandler):
    # Runs on the watchdog observer thread.
    def __init__(self, bridge: "PanelBridge"):
        super().__init__()
        self._bridge = bridge

    def on_any_event(self, event):
        if event.is_directory:
            return
        path = getattr(event, "dest_path", "") or event.src_path
        self._bridge._on_file_event(os.path.basename(os.fsdecode(path)))


class PanelBridge:
    def __init__(
        self,
        events: Optional[EventBus] = None,
        *,
        poll_interval: float = config.BRIDGE_POLL_INTERVAL_SEC,
        status_check_interval: float = config.BRIDGE_STATUS_CHECK_SEC,
        command_timeout: float = config.BRIDGE_COMMAND_TIMEOUT_SEC,
        status_stale: float = config.BRIDGE_STATUS_STALE_SEC,
        max_consecutive_failures: int = config.BRIDGE_MAX_CONSECUTIVE_FAILURES,
        watch_debounce: float = config.BRIDGE_WATCH_DEBOUNCE_SEC,
        watch_max_retries: int = config.BRIDGE_WATCH_MAX_RETRIES,
        watch_retry_delay: float = config.BRIDGE_WATCH_RETRY_DELAY_SEC,
        seen_results_max: int = config.BRIDGE_SEEN_RESULTS_MAX,
        use_file_watcher: bool = True,
    ):
        self.events = events or EventBus()
        self.poll_interval = poll_interval
        self.status_check_interval = status_check_interval
        self.command_timeout = command_timeout
        self.status_stale = status_stale
        self.max_consecutive_failures = max_consecutive_failures
        self.watch_debounce = watch_debounce
        self.watch_max_retries = watch_max_retries
        self.watch_retry_delay = watch_retry_delay
        self.seen_results_max = seen_results_max
        self.use_file_watcher = use_file_watcher

        self.bridge_path: Optional[Path] = None
        self.is_running = False
        self.mod_status: Optional[BridgeStatus] = None
        self.consecutive_failures = 0

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[str, PendingCommand] = {}
        self._seen: "OrderedDict[str, float]" = OrderedDict()
        self._previous_players: Set[str] = set()
        self._last_status_mtime: Optional[float] = None
        self._write_tail: Optional[asyncio.Task] = None

        self._poll_task: Optional[asyncio.Task] = None
        self._status_task: Optional[asyncio.Task] = None
        self._observer = None
        self._watcher_retries = 0
        self._watch_retry_handle: Optional[asyncio.TimerHandle] = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._dirty: Set[str] = set()
        self._refresh_tasks: Set[asyncio.Task] = set()

    # ----------------------------
    # Paths
    # ----------------------------
    def configure(self, base_path, server_name: Optional[str] = None, is_direct_path: bool = False) -> Path:
        """Point the bridge at its directory and create it if needed.

        With is_direct_path the given path already is the bridge directory.
        Otherwise the layout is {base_path}/panelbridge/{server_name}.
        """
        if not base_path:
            raise BridgeNotConfigured("bridge path is required")
        path = Path(base_path)
        if not is_direct_path:
            path = path / config.BRIDGE_DIR_NAME
            if server_name:
                path = path / server_name
        path.mkdir(parents=True, exist_ok=True)

        self.bridge_path = path
        log.debug("PanelBridge: configured path %s", path)
        self.events.publish(Topic.BRIDGE_CONFIGURED, {"path": str(path)})
        return path

    def auto_detect(self, server_name: str, user_folder=None) -> Path:
        """Find the Zomboid Lua folder (given, or under the user's home) and configure from it."""
        if user_folder:
            candidates = [Path(user_folder)]
        else:
            candidates = [Path.home() / "Zomboid"]
            if os.environ.get("USERPROFILE"):
                candidates.append(Path(os.environ["USERPROFILE"]) / "Zomboid")
        for base in candidates:
            lua = base / "Lua"
            if lua.is_dir():
                return self.configure(lua, server_name)
        raise BridgeNotConfigured(f"Could not find Zomboid Lua folder for server: {server_name}")

    def _file(self, name: str) -> Optional[Path]:
        return self.bridge_path / name if self.bridge_path else None

    @property
    def commands_file(self) -> Optional[Path]:
        return self._file(COMMANDS_FILE)

    @property
    def results_file(self) -> Optional[Path]:
        return self._file(RESULTS_FILE)

    @property
    def status_file(self) -> Optional[Path]:
        return self._file(STATUS_FILE)

    # ----------------------------
    # Lifecycle
    # ----------------------------
    async def start(self) -> None:
        if self.bridge_path is None:
            raise BridgeNotConfigured("Bridge not configured. Call configure() first.")
        if self.is_running:
            log.debug("PanelBridge: already running")
            return

        self._loop = asyncio.get_running_loop()
        self.consecutive_failures = 0
        self._last_status_mtime = None
        self._watcher_retries = 0

        self._poll_task = self._loop.create_task(self._every(self.poll_interval, self.poll_results))
        self._status_task = self._loop.create_task(self._every(self.status_check_interval, self._status_tick))
        self.is_running = True
        self._setup_file_watcher()
        await self.check_mod_status()

        log.info("PanelBridge: started - watching %s", self.bridge_path)
        self.events.publish(Topic.BRIDGE_STARTED, {"path": str(self.bridge_path)})

    async def stop(self) -> None:
        self.is_running = False
        tasks = [t for t in (self._poll_task, self._status_task) if t is not None]
        self._poll_task = self._status_task = None
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._watch_retry_handle is not None:
            self._watch_retry_handle.cancel()
            self._watch_retry_handle = None
        observer = self._teardown_watcher()
        if observer is not None:
            await asyncio.to_thread(observer.join, 2.0)

        for pending in list(self._pending.values()):
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(BridgeNotRunning("Bridge stopped"))
        self._pending.clear()

        log.info("PanelBridge: stopped")
        self.events.publish(Topic.BRIDGE_STOPPED, {"path": str(self.bridge_path) if self.bridge_path else None})

    async def _every(self, interval: float, tick) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("PanelBridge: periodic check failed")

    # ----------------------------
    # Commands
    # ----------------------------
    async def send_command(self, action: str, args: Optional[Dict[str, Any]] = None,
                           require_alive: bool = False) -> Dict[str, Any]:
        """Submit a command and wait for its result.

        Returns {"success": True, "data": ...}. Raises BridgeCommandError when
        the remote side reports failure and BridgeTimeoutError when nothing
        comes back in time. With require_alive a stale heartbeat fails fast
        with BridgeStaleError instead of waiting out the timeout.
        """
        if self.bridge_path is None:
            raise BridgeNotConfigured("Bridge not configured")
        if not self.is_running:
            raise BridgeNotRunning("Bridge not running")
        if require_alive and not self.is_mod_connected():
            raise BridgeStaleError("Mod not connected (status heartbeat is stale)")

        loop = asyncio.get_running_loop()
        cmd_id = str(uuid.uuid4())
        pending = PendingCommand(cmd_id, action, loop.create_future(), time.monotonic())
        pending.timer = loop.call_later(self.command_timeout, self._expire, cmd_id)
        # registered before the write so a fast result is never missed
        self._pending[cmd_id] = pending
        try:
            try:
                await self._enqueue_write({
                    "id": cmd_id,
                    "action": action,
                    "args": args or {},
                    "timestamp": int(time.time() * 1000),
                })
            except OSError as e:
                raise BridgeError(f"Failed to write command {action}: {e}") from e
            return await pending.future
        finally:
            if self._pending.get(cmd_id) is pending:
                del self._pending[cmd_id]
            pending.timer.cancel()

    def _expire(self, cmd_id: str) -> None:
        pending = self._pending.pop(cmd_id, None)
        if pending is not None and not pending.future.done():
            pending.future.set_exception(BridgeTimeoutError(f"Command timeout: {pending.action} (no response from mod)"))

    async def _enqueue_write(self, command: Dict[str, Any]) -> None:
        prev = self._write_tail

        async def _run():
            if prev is not None and not prev.done():
                await asyncio.wait([prev])
            await asyncio.to_thread(self._append_command, command)

        task = asyncio.get_running_loop().create_task(_run())
        self._write_tail = task
        await asyncio.shield(task)

    def _append_command(self, command: Dict[str, Any]) -> None:
        path = self.commands_file
        data: Dict[str, Any] = {"commands": []}
        try:
            text = path.read_text(encoding="utf-8")
            if text.strip():
                loaded = json.loads(text)
                if isinstance(loaded, dict) and isinstance(loaded.get("commands"), list):
                    data = loaded
        except FileNotFoundError:
            pass
        except ValueError as e:
            log.warning("PanelBridge: %s unreadable, starting a fresh queue: %s", path.name, e)

        data["commands"].append(command)
        payload = json.dumps(data, indent=2)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(payload, encoding="utf-8")
        try:
            os.replace(tmp, path)
        except OSError as e:
            # Windows refuses the rename while the game has the file open
            log.warning("PanelBridge: rename failed, using direct write: %s", e)
            path.write_text(payload, encoding="utf-8")
            tmp.unlink(missing_ok=True)

    # ----------------------------
    # Results
    # ----------------------------
    async def poll_results(self) -> None:
        path = self.results_file
        if path is None:
            return
        data = await asyncio.to_thread(_read_json, path)
        if isinstance(data, dict) and isinstance(data.get("results"), list):
            for result in data["results"]:
                if isinstance(result, dict):
                    self._consume_result(result)
        self._sweep_stale()

    def _consume_result(self, result: Dict[str, Any]) -> None:
        result_id = result.get("id")
        if result_id is None or result_id in self._seen:
            return
        self._seen[result_id] = time.monotonic()
        while len(self._seen) > self.seen_results_max:
            self._seen.popitem(last=False)

        pending = self._pending.pop(result_id, None)
        if pending is not None:
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                if result.get("success"):
                    pending.future.set_result({"success": True, "data": result.get("data")})
                else:
                    pending.future.set_exception(BridgeCommandError(result.get("error") or "Command failed"))
        self.events.publish(Topic.BRIDGE_RESULT, result)

    def _sweep_stale(self) -> None:
        max_age = self.command_timeout * 2
        now = time.monotonic()
        for cmd_id, pending in list(self._pending.items()):
            age = now - pending.issued_at
            if age <= max_age:
                continue
            del self._pending[cmd_id]
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(
                    BridgeTimeoutError(f"Command timeout: {pending.action} (no response from mod)"))
            log.warning("PanelBridge: cleaned up stale pending command: %s (age: %.0fs)", pending.action, age)

    # ----------------------------
    # Status heartbeat
    # ----------------------------
    async def _status_tick(self) -> None:
        await self.check_mod_status()
        self._check_watcher()

    async def check_mod_status(self) -> None:
        path = self.status_file
        if path is None:
            self._status_failure("No status file path configured")
            return
        try:
            st = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            self._status_failure("Status file does not exist")
            return
        except OSError as e:
            self._status_failure(f"Stat error: {e}")
            return

        age = max(0.0, time.time() - st.st_mtime)
        alive = age < self.status_stale
        current = self.mod_status

        if (st.st_mtime == self._last_status_mtime and current is not None
                and not current.waiting and current.version):
            current.age = age
            if current.alive and not alive:
                current.alive = False
                log.info("PanelBridge: mod heartbeat is stale (%.0fs old)", age)
                self.events.publish(Topic.BRIDGE_MOD_STATUS, current.to_dict())
            return

        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            self._status_failure(f"Read error: {e}")
            return
        if not text.strip():
            self._status_failure("Status file is empty")
            return
        try:
            raw = json.loads(text)
        except ValueError as e:
            self._status_failure(f"Parse error: {e}")
            return
        if not isinstance(raw, dict):
            self._status_failure("Parse error: status is not an object")
            return

        self._last_status_mtime = st.st_mtime
        self.consecutive_failures = 0
        status = BridgeStatus.from_file(raw, alive=alive, age=age)
        if status.alive:
            self._track_players(status.players)

        if current is None or current.alive != status.alive or not status.same_data(current):
            self.mod_status = status
            self.events.publish(Topic.BRIDGE_MOD_STATUS, status.to_dict())
            if status.alive:
                log.debug("PanelBridge: mod connected (age: %.0fs)", age)
        else:
            current.age = age

    def _status_failure(self, reason: str) -> None:
        self.consecutive_failures += 1
        n = self.consecutive_failures
        if n == 1 or n % 10 == 0:
            log.debug("PanelBridge: status check failed (%sx): %s", n, reason)

        current = self.mod_status
        if current is not None and current.alive and n >= self.max_consecutive_failures:
            # last known metadata and players stay; only liveness changes
            self.mod_status = replace(current, alive=False, error=reason, consecutive_failures=n)
            self.events.publish(Topic.BRIDGE_MOD_STATUS, self.mod_status.to_dict())
            log.warning("PanelBridge: mod marked as disconnected after %s failures", n)
        elif current is None:
            self.mod_status = BridgeStatus(alive=False, waiting=True)

    def _track_players(self, players: List[str]) -> None:
        current = set(players)
        previous = self._previous_players
        for name in sorted(current - previous):
            self.events.publish(Topic.BRIDGE_PLAYER_CONNECT, {"player": name})
        for name in sorted(previous - current):
            self.events.publish(Topic.BRIDGE_PLAYER_DISCONNECT, {"player": name})
        self._previous_players = current

    def is_mod_connected(self) -> bool:
        return self.mod_status is not None and self.mod_status.alive

    # ----------------------------
    # File watcher
    # ----------------------------
    def _setup_file_watcher(self) -> None:
        if not self.use_file_watcher or not self.is_running:
            return
        self._teardown_watcher()
        if self._watcher_retries >= self.watch_max_retries:
            log.warning("PanelBridge: gave up on file watcher after %s attempts, polling only",
                        self.watch_max_retries)
            return
        try:
            observer = Observer()
            observer.schedule(_BridgeDirHandler(self), str(self.bridge_path), recursive=False)
            observer.daemon = True
            observer.start()
        except Exception as e:
            self._watcher_failed(f"could not set up file watcher: {e}")
            return
        self._observer = observer
        log.debug("PanelBridge: file watcher active")

    def _teardown_watcher(self):
        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.stop()
        return observer

    def _watcher_failed(self, reason: str) -> None:
        self._watcher_retries += 1
        log.warning("PanelBridge: %s", reason)
        if self._watcher_retries < self.watch_max_retries and self._loop is not None:
            self._watch_retry_handle = self._loop.call_later(self.watch_retry_delay, self._retry_file_watcher)
        else:
            log.warning("PanelBridge: gave up on file watcher after %s attempts, polling only",
                        self._watcher_retries)

    def _retry_file_watcher(self) -> None:
        self._watch_retry_handle = None
        if self.is_running and self._observer is None:
            log.info("PanelBridge: restarting file watcher (attempt %s/%s)",
                     self._watcher_retries, self.watch_max_retries)
            self._setup_file_watcher()

    def _check_watcher(self) -> None:
        observer = self._observer
        if observer is not None and not observer.is_alive():
            self._teardown_watcher()
            self._watcher_failed("file watcher thread died")

    def _on_file_event(self, name: str) -> None:
        if name not in (STATUS_FILE, RESULTS_FILE):
            return
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._schedule_refresh, name)

    def _schedule_refresh(self, name: str) -> None:
        self._dirty.add(name)
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = self._loop.call_later(self.watch_debounce, self._flush_refresh)

    def _flush_refresh(self) -> None:
        self._debounce_handle = None
        names, self._dirty = self._dirty, set()
        if not self.is_running:
            return
        if STATUS_FILE in names:
            self._spawn(self.check_mod_status())
        if RESULTS_FILE in names:
            self._spawn(self.poll_results())

    def _spawn(self, coro) -> None:
        task = self._loop.create_task(coro)
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_done)

    def _refresh_done(self, task: asyncio.Task) -> None:
        self._refresh_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.debug("PanelBridge: file change handler error: %s", task.exception())

    # ----------------------------
    # Diagnostics
    # ----------------------------
    def get_status(self) -> Dict[str, Any]:
        path = self.status_file
        file_info: Optional[Dict[str, Any]] = None
        if path is not None:
            try:
                st = path.stat()
                file_info = {
                    "exists": True,
                    "path": str(path),
                    "size": st.st_size,
                    "modified": st.st_mtime,
                    "age": round(time.time() - st.st_mtime, 1),
                }
            except FileNotFoundError:
                file_info = {"exists": False, "path": str(path)}
            except OSError as e:
                file_info = {"exists": False, "error": str(e)}

        return {
            "configured": self.bridge_path is not None,
            "bridge_path": str(self.bridge_path) if self.bridge_path else None,
            "is_running": self.is_running,
            "pending_commands": len(self._pending),
            "mod_status": self.mod_status.to_dict() if self.mod_status else None,
            "consecutive_failures": self.consecutive_failures,
            "config": {
                "status_stale": self.status_stale,
                "poll_interval": self.poll_interval,
                "status_check_interval": self.status_check_interval,
                "command_timeout": self.command_timeout,
            },
            "status_file": file_info,
            "has_file_watcher": self._observer is not None,
        }

    # ----------------------------
    # Convenience actions
    # ----------------------------
    async def ping(self) -> Dict[str, Any]:
        if not self.is_running:
            return {"success": False, "error": "Bridge not running"}
        if not self.is_mod_connected():
            return {"success": False, "error": "Mod not connected",
                    "modStatus": self.mod_status.to_dict() if self.mod_status else None}
        try:
            result = await self.send_command("ping")
        except BridgeError as e:
            return {"success": False, "error": str(e)}
        return {**result, "modStatus": self.mod_status.to_dict() if self.mod_status else None}

    async def save_world(self):
        return await self.send_command("saveWorld")

    async def send_server_message(self, message: str, color: str = "white"):
        return await self.send_command("sendServerMessage", {"message": message, "color": color})

    async def get_server_info(self):
        return await self.send_command("getServerInfo")

    async def get_player_details(self, username: str):
        return await self.send_command("getPlayerDetails", {"username": username})

    async def get_world_stats(self):
        return await self.send_command("getWorldStats")


def _read_json(path: Path) -> Optional[Any]:
    """Read a JSON file the remote side may be halfway through writing. None when absent or unparseable."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        log.debug("PanelBridge: could not read %s: %s", path.name, e)
        return None
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None
