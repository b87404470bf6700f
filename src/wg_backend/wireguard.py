# src/wg_backend/wireguard.py
from __future__ import annotations
import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from core.errors import PersistenceError, ReconciliationError, ServerNotInitializedError
from core.manager import ConnectedPeer, PeerManager, utcnow
from core.models import WIREGUARD, PeerRecord, ServerParameters
from core.state import RegistryState, atomic_write_text
from .controller import WgController, show_dump
from .keys import generate_identity
from .wgconf import ServerConf, parse_server_conf, project, render_server_conf


logger = logging.getLogger(__name__)


# ---------- Rendu des configs ----------

def format_endpoint(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"  # IPv6
    return f"{host}:{port}"


def render_client_conf(
    record: PeerRecord,
    server: ServerParameters,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Configuration complète du client (importable telle quelle ou en QR code).

    Seule la ligne ``# Generated:`` dépend de l'heure de génération.
    """
    if not record.private_key:
        raise PersistenceError(
            f"Private key of client '{record.name}' is not stored; remove and re-add the client"
        )

    generated_at = (generated_at or utcnow()).astimezone(timezone.utc)
    prefix = server.network.prefixlen

    lines = [
        "# WireGuard Client Configuration",
        f"# Client: {record.name}",
        f"# Generated: {generated_at:%Y-%m-%d %H:%M:%S} UTC",
        "",
        "[Interface]",
        f"PrivateKey = {record.private_key}",
        f"Address = {record.address}/{prefix}",
    ]

    if server.dns:
        lines.append(f"DNS = {', '.join(server.dns)}")

    lines += [
        "",
        "[Peer]",
        f"PublicKey = {server.public_key}",
    ]

    if record.preshared_key:
        lines.append(f"PresharedKey = {record.preshared_key}")

    lines += [
        f"Endpoint = {format_endpoint(server.endpoint, server.listen_port)}",
        f"AllowedIPs = {', '.join(server.allowed_ips)}",
        f"PersistentKeepalive = {server.keepalive}",
    ]

    return "\n".join(lines) + "\n"


# ---------- Projection serveur ----------

def read_server_conf(path: Path) -> ServerConf:
    try:
        return parse_server_conf(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ServerNotInitializedError(f"WireGuard config not found: {path}") from None
    except OSError as e:
        raise PersistenceError(f"Cannot read {path}: {e}") from e


def unmanaged_addresses(conf: ServerConf) -> List[str]:
    """Adresses /32 routées vers des blocs [Peer] sans marqueur ``# Client:``."""
    addresses = []
    for block in conf.peers:
        if block.name is not None:
            continue
        for cidr in block.allowed_ips:
            ip, _, prefix = cidr.partition("/")
            if prefix in ("", "32"):
                addresses.append(ip)
    return addresses


def write_server_conf(state: RegistryState, path: Path) -> Path:
    """
    Réécrit les blocs [Peer] gérés de ``path`` depuis le registre.
    """
    conf = project(read_server_conf(path), state.peers)
    atomic_write_text(path, render_server_conf(conf), mode=0o600)
    return path


# ---------- Gestion des peers ----------

class WireGuardManager(PeerManager):
    protocol = WIREGUARD
    artifact_suffix = ".conf"

    def __init__(self, settings, controller=None, clock=utcnow, with_preshared: bool = True):
        super().__init__(settings, controller=controller, clock=clock)
        self.with_preshared = with_preshared

    def config_path(self, server: ServerParameters) -> Path:
        return self.settings.wg_config_path(server.interface)

    def _preflight(self, state: RegistryState) -> None:
        path = self.config_path(state.server)
        if not path.exists():
            raise ServerNotInitializedError(f"WireGuard config not found: {path}")

    def _reserved_addresses(self, state: RegistryState) -> List[str]:
        return unmanaged_addresses(read_server_conf(self.config_path(state.server)))

    def _issue(self, state: RegistryState, name: str, address: str, issued_at: str) -> PeerRecord:
        identity = generate_identity(with_preshared=self.with_preshared)
        return PeerRecord(
            name=name,
            address=address,
            public_key=identity.public_key,
            issued_at=issued_at,
            private_key=identity.private_key,
            preshared_key=identity.preshared_key,
        )

    def _write_projection(self, state: RegistryState) -> None:
        path = write_server_conf(state, self.config_path(state.server))
        logger.debug("server config updated: %s", path)

    def render(self, record, server, generated_at=None) -> str:
        return render_client_conf(record, server, generated_at or self.clock())

    def _make_controller(self, server: ServerParameters) -> WgController:
        return WgController(server.interface, self.config_path(server), self.settings.command_timeout)

    def connected(self) -> List[ConnectedPeer]:
        state = self.registry.load()
        names = {p.public_key: p for p in state.active()}
        try:
            dump = show_dump(state.server.interface, self.settings.command_timeout)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            raise ReconciliationError(f"Cannot query interface {state.server.interface}: {e}") from e

        result = []
        for peer in dump:
            if peer.latest_handshake is None:
                continue
            record = names.get(peer.public_key)
            result.append(ConnectedPeer(
                name=record.name if record else None,
                endpoint=peer.endpoint,
                address=record.address if record else (peer.allowed_ips[0] if peer.allowed_ips else None),
                last_seen=peer.latest_handshake,
                received=peer.received,
                sent=peer.sent,
            ))
        return result
