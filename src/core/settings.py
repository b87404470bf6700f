# src/core/settings.py
"""
Emplacements et réglages de l'outil.

Les valeurs par défaut reprennent celles des scripts d'installation ; chacune
peut être surchargée par une variable d'environnement ``VPN_*`` ou par une
option de la ligne de commande.
"""
from __future__ import annotations
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional


ENV_PREFIX = "VPN_"

DEFAULT_STATE_DIR = Path("/var/lib/vpn-peers")
DEFAULT_WIREGUARD_DIR = Path("/etc/wireguard")
DEFAULT_OPENVPN_DIR = Path("/etc/openvpn")
DEFAULT_OPENVPN_STATUS_LOG = Path("/var/log/openvpn/openvpn-status.log")
DEFAULT_COMMAND_TIMEOUT = 30.0


@dataclass(frozen=True)
class Settings:
    state_dir: Path = DEFAULT_STATE_DIR
    wireguard_dir: Path = DEFAULT_WIREGUARD_DIR
    openvpn_dir: Path = DEFAULT_OPENVPN_DIR
    clients_dir: Optional[Path] = None   # None -> ~/<protocol>-clients
    openvpn_service: str = "openvpn@server"
    openvpn_status_log: Path = DEFAULT_OPENVPN_STATUS_LOG
    log_level: str = "INFO"
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    apply: bool = True                   # False: ne touche pas à l'interface active
    home: Path = field(default_factory=Path.home)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        env = os.environ if env is None else env
        values = {}

        for key in ("state_dir", "wireguard_dir", "openvpn_dir", "clients_dir", "openvpn_status_log"):
            raw = env.get(ENV_PREFIX + key.upper())
            if raw:
                values[key] = Path(raw)

        if env.get(ENV_PREFIX + "OPENVPN_SERVICE"):
            values["openvpn_service"] = env[ENV_PREFIX + "OPENVPN_SERVICE"]
        if env.get(ENV_PREFIX + "LOG_LEVEL"):
            values["log_level"] = env[ENV_PREFIX + "LOG_LEVEL"]
        if env.get(ENV_PREFIX + "COMMAND_TIMEOUT"):
            try:
                values["command_timeout"] = float(env[ENV_PREFIX + "COMMAND_TIMEOUT"])
            except ValueError:
                raise ValueError(
                    f"Invalid {ENV_PREFIX}COMMAND_TIMEOUT: {env[ENV_PREFIX + 'COMMAND_TIMEOUT']!r}"
                ) from None

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def with_overrides(self, **overrides) -> "Settings":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    # ---------- Chemins dérivés ----------

    def state_path(self, protocol: str) -> Path:
        return self.state_dir / f"{protocol}.json"

    def client_dir(self, protocol: str) -> Path:
        if self.clients_dir is not None:
            return self.clients_dir
        return self.home / f"{protocol}-clients"

    def wg_config_path(self, interface: str) -> Path:
        return self.wireguard_dir / f"{interface}.conf"

    @property
    def pki_dir(self) -> Path:
        return self.openvpn_dir / "pki"

    @property
    def ccd_dir(self) -> Path:
        return self.openvpn_dir / "ccd"

    @property
    def openvpn_server_conf(self) -> Path:
        return self.openvpn_dir / "server.conf"

