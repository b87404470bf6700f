"""
Test cases for the WireGuard peer lifecycle.
"""

import logging
import multiprocessing
import stat
import subprocess

import pytest

from core.errors import (
    DuplicateNameError,
    InvalidNameError,
    NotFoundError,
    PoolExhaustedError,
    ReconciliationError,
    ServerNotInitializedError,
    VpnError,
)
from core.models import WIREGUARD
from wg_backend import init_server as wg_init
from wg_backend.keys import generate_keypair
from wg_backend.wgconf import parse_client_conf, parse_server_conf
from wg_backend.wireguard import WireGuardManager, format_endpoint

from conftest import FIXED_NOW, FakeController


def add_client(settings, name):
    WireGuardManager(settings.with_overrides(apply=False)).add(name)


class TestInitServer:
    """Test cases for WireGuard server initialization."""

    def test_fresh_server(self, settings):
        state = wg_init.init_server(settings, endpoint="vpn.example.com")
        conf = settings.wg_config_path("wg0").read_text()

        assert state.server.listen_port == 51820
        assert state.server.network_cidr == "10.66.66.0/24"
        assert "Address = 10.66.66.1/24" in conf
        assert stat.S_IMODE(settings.wg_config_path("wg0").stat().st_mode) == 0o600

    def test_refuses_existing_registry(self, settings):
        wg_init.init_server(settings, endpoint="vpn.example.com")
        with pytest.raises(VpnError):
            wg_init.init_server(settings, endpoint="vpn.example.com")

    def test_endpoint_required(self, settings):
        with pytest.raises(VpnError, match="endpoint"):
            wg_init.init_server(settings)

    def test_endpoint_from_server_info(self, settings):
        settings.wireguard_dir.mkdir(parents=True)
        (settings.wireguard_dir / "server_info.txt").write_text("Server Public IP: 198.51.100.7\n")
        state = wg_init.init_server(settings)
        assert state.server.endpoint == "198.51.100.7"

    def test_adopts_existing_config(self, settings):
        server_priv, _ = generate_keypair()
        client_priv, client_pub = generate_keypair()
        settings.wireguard_dir.mkdir(parents=True)
        original = (
            "[Interface]\n"
            "Address = 10.7.0.1/24\n"
            "ListenPort = 51999\n"
            f"PrivateKey = {server_priv}\n"
            "PostUp = iptables -A FORWARD -i wg0 -j ACCEPT\n"
            "\n"
            "# Client: laptop\n"
            "[Peer]\n"
            f"PublicKey = {client_pub}\n"
            "AllowedIPs = 10.7.0.2/32\n"
        )
        settings.wg_config_path("wg0").write_text(original)
        settings.clients_dir.mkdir(parents=True)
        (settings.clients_dir / "laptop.conf").write_text(f"[Interface]\nPrivateKey = {client_priv}\n")

        state = wg_init.init_server(settings, endpoint="vpn.example.com")

        assert state.server.listen_port == 51999
        assert state.server.network_cidr == "10.7.0.0/24"
        assert [p.name for p in state.peers] == ["laptop"]
        assert state.peers[0].private_key == client_priv
        assert settings.wg_config_path("wg0").read_text() == original

    def test_adoption_skips_unsafe_marker_names(self, settings):
        server_priv, _ = generate_keypair()
        _, client_pub = generate_keypair()
        settings.wireguard_dir.mkdir(parents=True)
        settings.wg_config_path("wg0").write_text(
            "[Interface]\n"
            "Address = 10.7.0.1/24\n"
            f"PrivateKey = {server_priv}\n"
            "\n"
            "# Client: ../../etc/passwd\n"
            "[Peer]\n"
            f"PublicKey = {client_pub}\n"
            "AllowedIPs = 10.7.0.2/32\n"
        )

        state = wg_init.init_server(settings, endpoint="vpn.example.com")

        assert state.peers == []
        conf = parse_server_conf(settings.wg_config_path("wg0").read_text())
        assert [b.name for b in conf.peers] == [None]
        assert conf.peers[0].public_key == client_pub


class TestAddRemove:
    """Test cases for add / remove."""

    def test_sequential_addresses(self, wg_manager):
        a = wg_manager.add("alice").record
        b = wg_manager.add("bob").record
        assert (a.address, b.address) == ("10.66.66.2", "10.66.66.3")

    def test_laptop_phone_tablet(self, wg_manager):
        assert wg_manager.add("laptop").record.address == "10.66.66.2"
        assert wg_manager.add("phone").record.address == "10.66.66.3"
        wg_manager.remove("laptop")
        assert wg_manager.add("tablet").record.address == "10.66.66.4"

    def test_no_reuse_below_highest(self, wg_manager):
        wg_manager.add("a")
        wg_manager.add("b")
        wg_manager.add("c")
        wg_manager.remove("b")
        assert wg_manager.add("d").record.address == "10.66.66.5"

    def test_highest_address_is_reused_after_removal(self, wg_manager):
        wg_manager.add("a")
        wg_manager.add("b")
        wg_manager.remove("b")
        assert wg_manager.add("c").record.address == "10.66.66.3"

    def test_skips_addresses_of_unmanaged_peers(self, settings, controller):
        server_priv, _ = generate_keypair()
        _, other_pub = generate_keypair()
        settings.wireguard_dir.mkdir(parents=True)
        settings.wg_config_path("wg0").write_text(
            "[Interface]\n"
            "Address = 10.66.66.1/24\n"
            "ListenPort = 51820\n"
            f"PrivateKey = {server_priv}\n"
            "\n"
            "[Peer]\n"
            f"PublicKey = {other_pub}\n"
            "AllowedIPs = 10.66.66.2/32\n"
        )
        wg_init.init_server(settings, endpoint="203.0.113.10")
        manager = WireGuardManager(settings, controller=controller)

        assert manager.add("laptop").record.address == "10.66.66.3"
        conf = settings.wg_config_path("wg0").read_text()
        assert conf.count("AllowedIPs = 10.66.66.2/32") == 1
        assert f"PublicKey = {other_pub}" in conf

    def test_concurrent_adds(self, wg_manager, settings):
        ctx = multiprocessing.get_context("fork")
        names = [f"client{i}" for i in range(6)]
        workers = [ctx.Process(target=add_client, args=(settings, name)) for name in names]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=60)

        assert [w.exitcode for w in workers] == [0] * len(names)
        peers = wg_manager.list()
        assert sorted(p.name for p in peers) == sorted(names)
        assert sorted(int(p.address.rsplit(".", 1)[1]) for p in peers) == list(range(2, 2 + len(names)))

    def test_unique_keys(self, wg_manager):
        a = wg_manager.add("alice").record
        b = wg_manager.add("bob").record
        assert a.public_key != b.public_key
        assert a.preshared_key and a.preshared_key != b.preshared_key

    def test_artifact(self, wg_manager, settings):
        change = wg_manager.add("laptop")
        path = settings.clients_dir / "laptop.conf"

        assert change.artifact == path
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        sections = parse_client_conf(path.read_text())
        assert sections["Interface"]["Address"] == "10.66.66.2/24"
        assert sections["Interface"]["PrivateKey"] == change.record.private_key
        assert sections["Peer"]["PublicKey"] == wg_manager.server().public_key
        assert sections["Peer"]["Endpoint"] == "203.0.113.10:51820"
        assert sections["Peer"]["PersistentKeepalive"] == "25"

    def test_server_config_projection(self, wg_manager, settings):
        wg_manager.add("alice")
        bob = wg_manager.add("bob").record
        wg_manager.remove("alice")

        conf = parse_server_conf(settings.wg_config_path("wg0").read_text())
        assert [b.name for b in conf.managed] == ["bob"]
        assert conf.managed[0].public_key == bob.public_key
        assert conf.interface_value("PrivateKey")

    def test_remove_deletes_everything(self, wg_manager, settings):
        wg_manager.add("laptop")
        wg_manager.remove("laptop")
        assert wg_manager.list() == []
        assert not (settings.clients_dir / "laptop.conf").exists()

    def test_readd_after_remove(self, wg_manager):
        wg_manager.add("laptop")
        wg_manager.remove("laptop")
        assert wg_manager.add("laptop").record.name == "laptop"

    def test_duplicate_does_not_touch_registry(self, wg_manager):
        wg_manager.add("laptop")
        before = wg_manager.registry.path.read_bytes()
        with pytest.raises(DuplicateNameError):
            wg_manager.add("laptop")
        assert wg_manager.registry.path.read_bytes() == before

    @pytest.mark.parametrize("name", ["", "   ", "../etc", "a b", "-dash", "x" * 65])
    def test_invalid_names(self, wg_manager, name):
        with pytest.raises(InvalidNameError):
            wg_manager.add(name)
        assert wg_manager.list() == []

    def test_remove_unknown(self, wg_manager):
        with pytest.raises(NotFoundError):
            wg_manager.remove("ghost")

    def test_not_initialized(self, settings):
        manager = WireGuardManager(settings, controller=FakeController())
        with pytest.raises(ServerNotInitializedError):
            manager.add("laptop")

    def test_pool_exhausted(self, settings, controller):
        wg_init.init_server(settings, endpoint="203.0.113.10", network_cidr="10.0.0.0/29")
        manager = WireGuardManager(settings, controller=controller)
        for name in "abcde":
            manager.add(name)
        with pytest.raises(PoolExhaustedError):
            manager.add("f")
        assert len(manager.list()) == 5

    def test_max_clients(self, settings, controller):
        wg_init.init_server(settings, endpoint="203.0.113.10", max_clients=2)
        manager = WireGuardManager(settings, controller=controller)
        manager.add("a")
        manager.add("b")
        with pytest.raises(PoolExhaustedError, match="Maximum number of clients"):
            manager.add("c")

    def test_ceiling_of_ten(self, settings, controller):
        wg_init.init_server(settings, endpoint="203.0.113.10", max_clients=10)
        manager = WireGuardManager(settings, controller=controller)
        for i in range(8):
            manager.add(f"c{i}")
        manager.add("c8")
        manager.add("c9")
        with pytest.raises(PoolExhaustedError):
            manager.add("c10")
        assert len(manager.list()) == 10


class TestReconcile:
    """Test cases for live tunnel updates."""

    def test_controller_receives_active_peers(self, wg_manager, controller):
        wg_manager.add("alice")
        wg_manager.add("bob")
        wg_manager.remove("alice")
        assert controller.synced == [["alice"], ["alice", "bob"], ["bob"]]
        assert controller.reloads == 0

    def test_failure_keeps_registry_change(self, settings, caplog):
        wg_init.init_server(settings, endpoint="203.0.113.10")
        failing = FakeController(fail=subprocess.CalledProcessError(1, ["wg", "syncconf"], stderr="boom"))
        manager = WireGuardManager(settings, controller=failing)

        with caplog.at_level(logging.WARNING):
            change = manager.add("laptop")

        assert change.applied is False
        assert [p.name for p in manager.list()] == ["laptop"]
        assert "vpn wireguard sync" in caplog.text

    def test_sync_propagates_failure(self, settings):
        wg_init.init_server(settings, endpoint="203.0.113.10")
        failing = FakeController(fail=OSError("wg: not found"))
        with pytest.raises(ReconciliationError):
            WireGuardManager(settings, controller=failing).sync()

    def test_no_apply_uses_null_controller(self, settings):
        wg_init.init_server(settings, endpoint="203.0.113.10")
        manager = WireGuardManager(settings.with_overrides(apply=False))
        assert manager.add("laptop").applied is True


class TestRender:
    """Test cases for client configuration rendering."""

    def test_deterministic(self, wg_manager):
        record = wg_manager.add("laptop").record
        server = wg_manager.server()
        assert wg_manager.render(record, server, FIXED_NOW) == wg_manager.render(record, server, FIXED_NOW)

    def test_export_rewrites_artifact(self, wg_manager, settings):
        wg_manager.add("laptop")
        path = settings.clients_dir / "laptop.conf"
        path.unlink()
        assert wg_manager.export("laptop") == path
        assert "# Client: laptop" in path.read_text()

    def test_ipv6_endpoint(self):
        assert format_endpoint("2001:db8::1", 51820) == "[2001:db8::1]:51820"
        assert format_endpoint("vpn.example.com", 51820) == "vpn.example.com:51820"

    def test_state_file_location(self, wg_manager, settings):
        assert wg_manager.registry.path == settings.state_dir / f"{WIREGUARD}.json"
