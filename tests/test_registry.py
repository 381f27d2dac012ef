"""Tests for pls_registry.py."""
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pls_config import AppConfig
from pls_errors import ConfigError
from pls_registry import AuthMode, RemoteRegistry, RemoteTarget


@pytest.fixture
def registry(tmp_path):
    return RemoteRegistry(AppConfig(data_dir=tmp_path))


# ---------------------------------------------------------------------------
# add
# ---------------------------------------------------------------------------

class TestAdd:
    def test_agent_mode_by_default(self, registry):
        target = registry.add("web1", "deploy@10.0.0.5")
        assert target.auth_mode == AuthMode.AGENT
        assert target.destination == "deploy@10.0.0.5"
        assert target.port == 22
        assert registry.get("web1") == target

    def test_port_and_password(self, registry):
        target = registry.add("db1", "root@db.internal:2222", password=True)
        assert target.port == 2222
        assert target.auth_mode == AuthMode.PASSWORD
        assert target.needs_secret

    def test_key_mode(self, registry, tmp_path):
        key = tmp_path / "id_test"
        key.write_text("not a real key")
        target = registry.add("k1", "me@box", key=str(key))
        assert target.auth_mode == AuthMode.KEY
        assert target.key_path == str(key)

    def test_missing_key_file(self, registry, tmp_path):
        with pytest.raises(ConfigError, match="Key file not found"):
            registry.add("k1", "me@box", key=str(tmp_path / "nope"))

    def test_creates_data_dir(self, registry, tmp_path):
        registry.add("web1", "deploy@host")
        assert (tmp_path / "remotes" / "web1").is_dir()

    def test_duplicate_rejected(self, registry):
        registry.add("web1", "deploy@host")
        with pytest.raises(ConfigError, match="already exists"):
            registry.add("web1", "other@host")
        assert registry.require("web1").user == "deploy"

    @pytest.mark.parametrize("name", ["", "web 1", "web/1", "../etc", "wéb"])
    def test_invalid_names(self, registry, name):
        with pytest.raises(ConfigError):
            registry.add(name, "deploy@host")

    def test_user_required(self, registry):
        with pytest.raises(ConfigError, match="User is required"):
            registry.add("web1", "host.example.com")

    def test_host_required(self, registry):
        with pytest.raises(ConfigError, match="Host must not be empty"):
            registry.add("web1", "deploy@")

    def test_persisted_document(self, registry, tmp_path):
        registry.add("web1", "deploy@host:2200")
        doc = json.loads((tmp_path / "remotes.json").read_text())
        assert doc["remotes"]["web1"] == {"host": "host", "user": "deploy", "port": 2200, "authMode": "agent"}


# ---------------------------------------------------------------------------
# remove / lookup
# ---------------------------------------------------------------------------

class TestRemove:
    def test_remove_deletes_data_dir(self, registry, tmp_path):
        registry.add("web1", "deploy@host")
        history = tmp_path / "remotes" / "web1" / "history.json"
        history.write_text("[]")
        assert registry.remove("web1")
        assert registry.get("web1") is None
        assert not (tmp_path / "remotes" / "web1").exists()

    def test_remove_unknown(self, registry):
        assert not registry.remove("ghost")

    def test_remove_clears_default(self, registry):
        registry.add("web1", "deploy@host")
        registry.set_default("web1")
        registry.remove("web1")
        assert registry.default is None


class TestLookup:
    def test_require_unknown_lists_available(self, registry):
        registry.add("web1", "deploy@host")
        with pytest.raises(ConfigError, match="Available remotes: web1"):
            registry.require("web2")

    def test_validate_reports_all_unknown(self, registry):
        registry.add("web1", "deploy@host")
        with pytest.raises(ConfigError, match="ghost1, ghost2"):
            registry.validate(["web1", "ghost1", "ghost2"])

    def test_validate_preserves_order(self, registry):
        registry.add("b", "u@b")
        registry.add("a", "u@a")
        assert [t.name for t in registry.validate(["a", "b"])] == ["a", "b"]

    def test_empty_registry(self, registry):
        assert registry.all() == {}
        assert registry.default is None


# ---------------------------------------------------------------------------
# work dir / default
# ---------------------------------------------------------------------------

class TestWorkDir:
    def test_set_and_get(self, registry):
        registry.add("web1", "deploy@host")
        registry.set_work_dir("web1", "/srv/app")
        assert registry.get_work_dir("web1") == "/srv/app"

    @pytest.mark.parametrize("clear", ["", "-", None])
    def test_clear(self, registry, clear):
        registry.add("web1", "deploy@host")
        registry.set_work_dir("web1", "/srv/app")
        registry.set_work_dir("web1", clear)
        assert registry.get_work_dir("web1") is None

    def test_unknown_remote(self, registry):
        with pytest.raises(ConfigError):
            registry.set_work_dir("ghost", "/tmp")


class TestDefault:
    def test_set_default(self, registry):
        registry.add("web1", "deploy@host")
        registry.set_default("web1")
        assert registry.default == "web1"
        registry.set_default(None)
        assert registry.default is None

    def test_unknown_default(self, registry):
        with pytest.raises(ConfigError):
            registry.set_default("ghost")


# ---------------------------------------------------------------------------
# corrupt / legacy documents
# ---------------------------------------------------------------------------

class TestDocument:
    def test_corrupt_file_reads_as_empty(self, registry, tmp_path):
        (tmp_path / "remotes.json").write_text("{not json")
        assert registry.all() == {}

    def test_corrupt_file_replaced_on_add(self, registry, tmp_path):
        (tmp_path / "remotes.json").write_text("[1, 2, 3]")
        registry.add("web1", "deploy@host")
        assert list(registry.all()) == ["web1"]

    def test_invalid_entry_skipped(self, registry, tmp_path):
        (tmp_path / "remotes.json").write_text(json.dumps({
            "remotes": {
                "good": {"host": "h", "user": "u"},
                "bad": {"host": "", "user": "u"},
            },
        }))
        assert list(registry.all()) == ["good"]

    def test_auth_mode_inferred_for_old_entries(self):
        assert RemoteTarget.from_dict("a", {"host": "h", "user": "u", "password": True}).auth_mode == AuthMode.PASSWORD
        assert RemoteTarget.from_dict("b", {"host": "h", "user": "u", "key": "~/.ssh/k"}).auth_mode == AuthMode.KEY
        assert RemoteTarget.from_dict("c", {"host": "h", "user": "u"}).auth_mode == AuthMode.AGENT

    def test_invalid_auth_mode(self):
        with pytest.raises(ConfigError, match="authMode"):
            RemoteTarget.from_dict("a", {"host": "h", "user": "u", "authMode": "kerberos"})
