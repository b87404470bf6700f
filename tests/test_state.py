"""
Test cases for the peer registry.
"""

import json
import os
import stat

import pytest

from core import state as state_mod
from core.errors import (
    DuplicateNameError,
    NotFoundError,
    PersistenceError,
    ServerNotInitializedError,
)
from core.models import OPENVPN, WIREGUARD, PeerRecord, PeerStatus, ServerParameters
from core.state import Registry, RegistryState


def server(protocol=WIREGUARD):
    return ServerParameters(protocol=protocol, endpoint="203.0.113.10",
                            listen_port=51820, network_cidr="10.66.66.0/24", public_key="SRV")


def record(name, address="10.66.66.2"):
    return PeerRecord(name=name, address=address, public_key="pub-" + name,
                      issued_at="2024-05-01T12:00:00+00:00", private_key="priv-" + name)


@pytest.fixture
def registry(tmp_path):
    reg = Registry(tmp_path / "wireguard.json")
    reg.save(RegistryState(server=server()))
    return reg


class TestRegistry:
    """Test cases for Registry persistence."""

    def test_missing_registry(self, tmp_path):
        with pytest.raises(ServerNotInitializedError):
            Registry(tmp_path / "nope.json").load()

    def test_round_trip(self, registry):
        registry.append(record("laptop"))
        loaded = registry.load()
        assert loaded.server.public_key == "SRV"
        assert loaded.peers == [record("laptop")]

    def test_file_layout(self, registry):
        registry.append(record("laptop"))
        data = json.loads(registry.path.read_text())
        assert data["version"] == 1
        assert data["server"]["network_cidr"] == "10.66.66.0/24"
        assert data["peers"][0]["name"] == "laptop"
        assert data["peers"][0]["status"] == "active"

    def test_permissions(self, registry):
        assert stat.S_IMODE(registry.path.stat().st_mode) == 0o600

    def test_duplicate_leaves_file_untouched(self, registry):
        registry.append(record("laptop"))
        before = registry.path.read_bytes()
        with pytest.raises(DuplicateNameError):
            registry.append(record("laptop", "10.66.66.3"))
        assert registry.path.read_bytes() == before

    def test_remove_unknown(self, registry):
        before = registry.path.read_bytes()
        with pytest.raises(NotFoundError):
            registry.remove("ghost")
        assert registry.path.read_bytes() == before

    def test_remove_erases_wireguard_peer(self, registry):
        registry.append(record("laptop"))
        removed = registry.remove("laptop")
        assert removed.name == "laptop"
        assert registry.list() == []

    def test_remove_revokes_openvpn_peer(self, tmp_path):
        reg = Registry(tmp_path / "openvpn.json")
        reg.save(RegistryState(server=server(OPENVPN)))
        reg.append(record("phone"))
        reg.remove("phone", at="2024-06-01T00:00:00+00:00")

        peers = reg.list()
        assert len(peers) == 1
        assert peers[0].status is PeerStatus.REVOKED
        assert peers[0].revoked_at == "2024-06-01T00:00:00+00:00"
        assert not reg.exists("phone")

    def test_corrupted_registry(self, registry):
        registry.path.write_text("{not json")
        with pytest.raises(PersistenceError):
            registry.load()

    def test_unknown_version(self, registry):
        data = json.loads(registry.path.read_text())
        data["version"] = 99
        registry.path.write_text(json.dumps(data))
        with pytest.raises(PersistenceError):
            registry.load()

    def test_failed_write_keeps_previous_file(self, registry, monkeypatch):
        registry.append(record("laptop"))
        before = registry.path.read_bytes()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(state_mod.os, "replace", broken_replace)
        with pytest.raises(PersistenceError):
            registry.append(record("phone", "10.66.66.3"))

        monkeypatch.undo()
        assert registry.path.read_bytes() == before
        leftovers = [f for f in os.listdir(registry.path.parent) if f.startswith(".wireguard.json.")]
        assert leftovers == []
