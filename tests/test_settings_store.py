"""
Tests for servers.json storage.
"""

import json

import pytest

import config
from settings_store import NoServersConfigured, ServerConfig, SettingsStore


@pytest.fixture
def store(tmp_path):
    return SettingsStore(tmp_path / "servers.json")


class TestSettingsStore:
    def test_missing_file_is_created_empty(self, store):
        assert store.load_servers() == []
        assert json.loads(store.path.read_text(encoding="utf-8")) == {"servers": []}

    def test_unreadable_file_reads_as_empty(self, store):
        store.path.write_text("{oops", encoding="utf-8")
        assert store.load_servers() == []

    def test_active_server_preferred(self, store):
        store.save_servers([{"id": "a", "rcon_password": "x"},
                            {"id": "b", "rcon_password": "y", "active": True}])
        assert store.get_active_server_config().id == "b"

    def test_first_server_when_none_active(self, store):
        store.save_servers([{"id": "a"}, {"id": "b"}])
        assert store.get_active_server_config().id == "a"

    def test_no_servers(self, store):
        assert store.get_active_server_config() is None
        with pytest.raises(NoServersConfigured):
            store.get_server_by_id("a")

    def test_get_server_by_id(self, store):
        store.save_servers([{"id": "a"}, {"id": "b"}])
        assert store.get_server_by_id("b")["id"] == "b"
        assert store.get_server_by_id("")["id"] == "a"
        with pytest.raises(KeyError):
            store.get_server_by_id("zzz")

    def test_update_server_fields(self, store):
        store.save_servers([{"id": "a", "rcon_port": 1}])
        store.update_server_fields("a", {"rcon_port": 2})
        assert store.get_server_by_id("a")["rcon_port"] == 2
        with pytest.raises(KeyError):
            store.update_server_fields("nope", {})

    def test_set_active(self, store):
        store.save_servers([{"id": "a", "active": True}, {"id": "b"}])
        store.set_active("b")
        assert [s["active"] for s in store.load_servers()] == [False, True]
        with pytest.raises(KeyError):
            store.set_active("nope")


class TestServerConfig:
    def test_defaults(self):
        cfg = ServerConfig.from_dict({"id": "a"})
        assert cfg.rcon_host == config.RCON_DEFAULT_HOST
        assert cfg.rcon_port == config.RCON_DEFAULT_PORT
        assert cfg.bridge_path is None
        assert cfg.active is False

    def test_port_is_int(self):
        assert ServerConfig.from_dict({"id": "a", "rcon_port": "27016"}).rcon_port == 27016
