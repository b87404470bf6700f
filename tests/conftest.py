"""
Shared fixtures: every test works inside tmp_path, never on /etc.
"""

from datetime import datetime, timezone

import pytest

from core.reconcile import TunnelController
from core.settings import Settings
from ovpn_backend import init_server as ovpn_init
from ovpn_backend.openvpn import OpenVpnManager
from wg_backend import init_server as wg_init
from wg_backend.wireguard import WireGuardManager


FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeController(TunnelController):
    """Records every call instead of touching a live tunnel."""

    name = "fake"

    def __init__(self, needs_restart=False, fail=None):
        self.needs_restart = needs_restart
        self.fail = fail
        self.synced = []
        self.reloads = 0

    def sync_peers(self, peers):
        if self.fail is not None:
            raise self.fail
        self.synced.append([p.name for p in peers if p.active])
        return self.needs_restart

    def reload(self):
        self.reloads += 1


@pytest.fixture
def settings(tmp_path):
    return Settings(
        state_dir=tmp_path / "state",
        wireguard_dir=tmp_path / "wireguard",
        openvpn_dir=tmp_path / "openvpn",
        clients_dir=tmp_path / "clients",
        openvpn_status_log=tmp_path / "openvpn-status.log",
        home=tmp_path / "home",
    )


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def wg_manager(settings, controller):
    wg_init.init_server(settings, endpoint="203.0.113.10", network_cidr="10.66.66.0/24")
    return WireGuardManager(settings, controller=controller, clock=lambda: FIXED_NOW)


@pytest.fixture
def ovpn_manager(settings, controller):
    ovpn_init.init_server(settings, endpoint="203.0.113.10", key_size=1024)
    return OpenVpnManager(settings, controller=controller, clock=lambda: FIXED_NOW)
