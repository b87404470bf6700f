"""
Test cases for settings and logging setup.
"""

import io
import logging
from pathlib import Path

import pytest

from core.log import setup_logging
from core.settings import Settings


class TestSettings:
    """Test cases for Settings.from_env."""

    def test_defaults(self):
        s = Settings.from_env(env={}, home=Path("/home/ops"))
        assert s.state_path("wireguard") == Path("/var/lib/vpn-peers/wireguard.json")
        assert s.wg_config_path("wg0") == Path("/etc/wireguard/wg0.conf")
        assert s.client_dir("openvpn") == Path("/home/ops/openvpn-clients")
        assert s.pki_dir == Path("/etc/openvpn/pki")

    def test_environment(self):
        s = Settings.from_env(env={
            "VPN_STATE_DIR": "/srv/vpn",
            "VPN_CLIENTS_DIR": "/srv/clients",
            "VPN_COMMAND_TIMEOUT": "5",
        })
        assert s.state_dir == Path("/srv/vpn")
        assert s.client_dir("wireguard") == Path("/srv/clients")
        assert s.command_timeout == 5.0

    def test_flags_override_environment(self):
        s = Settings.from_env(env={"VPN_STATE_DIR": "/srv/vpn"}, state_dir=Path("/tmp/x"), clients_dir=None)
        assert s.state_dir == Path("/tmp/x")
        assert s.clients_dir is None

    def test_invalid_timeout(self):
        with pytest.raises(ValueError):
            Settings.from_env(env={"VPN_COMMAND_TIMEOUT": "soon"})


class TestLogging:
    """Test cases for setup_logging."""

    def test_format(self):
        stream = io.StringIO()
        setup_logging("INFO", stream=stream)
        logging.getLogger("vpn.test").error("Client 'x' already exists")
        logging.getLogger("vpn.test").debug("hidden")
        assert stream.getvalue() == "[ERROR] Client 'x' already exists\n"

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            setup_logging("LOUD")
