"""
Game process control: is it running, start it, kill it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol

import psutil

import config
from errors import ProcessControlError

log = logging.getLogger("server_panel.process")


class ProcessController(Protocol):
    async def is_alive(self) -> bool: ...

    async def launch(self) -> None: ...

    async def kill(self) -> None: ...


class LocalProcessController:
    """
    Controls a dedicated server installed on this machine.

    A process counts as the game server when its name equals process_name
    (and, with an install_dir, its executable lives under it), or when its
    command line carries the server's main-class marker.
    """

    def __init__(self, install_dir: Optional[str], start_script: Optional[str] = None,
                 process_name: Optional[str] = None, marker: str = config.SERVER_PROCESS_MARKER,
                 kill_wait: float = config.PROCESS_KILL_WAIT_SEC):
        self.install_dir = install_dir
        self.start_script = start_script or config.SERVER_START_SCRIPT
        self.process_name = process_name
        self.marker = (marker or "").lower()
        self.kill_wait = kill_wait

    def _matches(self, info: dict) -> bool:
        name = (info.get("name") or "").lower()
        if self.process_name and name == self.process_name.lower():
            if not self.install_dir:
                return True
            exe = info.get("exe") or ""
            if exe and os.path.abspath(exe).lower().startswith(os.path.abspath(self.install_dir).lower()):
                return True
        if self.marker:
            cmdline = " ".join(info.get("cmdline") or []).lower()
            if self.marker in cmdline:
                return True
        return False

    def find_processes(self) -> List[psutil.Process]:
        found = []
        for proc in psutil.process_iter(["name", "exe", "cmdline"]):
            try:
                if self._matches(proc.info):
                    found.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    def script_path(self) -> Path:
        script = Path(self.start_script)
        if not script.is_absolute() and self.install_dir:
            script = Path(self.install_dir) / script
        return script

    async def is_alive(self) -> bool:
        procs = await asyncio.to_thread(self.find_processes)
        return bool(procs)

    async def launch(self) -> None:
        await asyncio.to_thread(self._launch)

    def _launch(self) -> None:
        script = self.script_path()
        if not script.is_file():
            raise ProcessControlError(f"Server start script not found: {script}")
        cwd = str(script.parent)
        log.info("Starting server using: %s", script)
        try:
            if os.name == "nt":
                creationflags = 0
                if hasattr(subprocess, "CREATE_NO_WINDOW"):
                    creationflags |= subprocess.CREATE_NO_WINDOW
                if hasattr(subprocess, "CREATE_NEW_PROCESS_GROUP"):
                    creationflags |= subprocess.CREATE_NEW_PROCESS_GROUP
                subprocess.Popen(
                    ["cmd.exe", "/c", str(script)],
                    cwd=cwd,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    stdin=subprocess.DEVNULL,
                    creationflags=creationflags,
                )
            else:
                subprocess.Popen(
                    ["bash", str(script)],
                    cwd=cwd,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as e:
            raise ProcessControlError(f"Failed to start server: {e}") from e

    async def kill(self) -> None:
        await asyncio.to_thread(self._kill)

    def _kill(self) -> None:
        procs = self.find_processes()
        if not procs:
            log.info("Kill requested but no server process is running")
            return
        for proc in procs:
            try:
                log.warning("Stopping server process (PID %s)", proc.pid)
                proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        _, alive = psutil.wait_procs(procs, timeout=self.kill_wait)
        for proc in alive:
            try:
                log.warning("Force-killing server process (PID %s)", proc.pid)
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                log.debug("Could not kill PID %s: %s", proc.pid, e)
