"""
Server instances storage (servers.json).
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import config

log = logging.getLogger("server_panel.settings")

BASE_DIR = Path(__file__).resolve().parent


class NoServersConfigured(RuntimeError):
    """Raised when an operation requires a managed server but none are configured."""


@dataclass
class ServerConfig:
    id: str
    name: str = ""
    rcon_host: str = config.RCON_DEFAULT_HOST
    rcon_port: int = config.RCON_DEFAULT_PORT
    rcon_password: str = ""
    bridge_path: Optional[str] = None
    server_name: Optional[str] = None
    install_dir: Optional[str] = None
    start_script: Optional[str] = None
    process_name: Optional[str] = None
    active: bool = False

    @classmethod
    def from_dict(cls, s: Dict[str, Any]) -> "ServerConfig":
        return cls(
            id=str(s.get("id") or ""),
            name=s.get("name") or "",
            rcon_host=s.get("rcon_host") or config.RCON_DEFAULT_HOST,
            rcon_port=int(s.get("rcon_port") or config.RCON_DEFAULT_PORT),
            rcon_password=s.get("rcon_password") or "",
            bridge_path=s.get("bridge_path") or None,
            server_name=s.get("server_name") or None,
            install_dir=s.get("install_dir") or None,
            start_script=s.get("start_script") or None,
            process_name=s.get("process_name") or None,
            active=bool(s.get("active")),
        )


class SettingsStore:
    def __init__(self, path=None):
        self.path = Path(path) if path else BASE_DIR / config.SERVERS_FILE
        self._lock = threading.Lock()

    def load_servers(self) -> List[dict]:
        with self._lock:
            p = self.path
            if not p.exists():
                p.write_text(json.dumps({"servers": []}, indent=2), encoding="utf-8")
                return []
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                log.error("Could not read %s: %s", p, e)
                return []
            return data.get("servers", []) or []

    def save_servers(self, servers: List[dict]) -> None:
        with self._lock:
            self.path.write_text(json.dumps({"servers": servers}, indent=2), encoding="utf-8")

    def get_server_by_id(self, server_id: Optional[str]) -> dict:
        servers = self.load_servers()
        if not servers:
            raise NoServersConfigured("No servers configured.")
        sid = (server_id or "").strip()
        if not sid:
            return servers[0]
        for s in servers:
            if s.get("id") == sid:
                return s
        raise KeyError(f"Unknown server_id: {sid}")

    def update_server_fields(self, server_id: str, updates: dict) -> None:
        """Update a server entry in servers.json by id."""
        sid = (server_id or "").strip()
        servers = self.load_servers()
        for s in servers:
            if s.get("id") == sid:
                s.update(updates or {})
                break
        else:
            raise KeyError(f"Unknown server_id: {sid}")
        self.save_servers(servers)

    def set_active(self, server_id: str) -> None:
        servers = self.load_servers()
        if not any(s.get("id") == server_id for s in servers):
            raise KeyError(f"Unknown server_id: {server_id}")
        for s in servers:
            s["active"] = s.get("id") == server_id
        self.save_servers(servers)

    def get_active_server_config(self) -> Optional[ServerConfig]:
        """The server flagged active, else the first one; None when there are none."""
        servers = self.load_servers()
        if not servers:
            return None
        chosen = next((s for s in servers if s.get("active")), servers[0])
        return ServerConfig.from_dict(chosen)
