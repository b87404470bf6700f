# src/wg_backend/init_server.py
"""
Initialisation (ou reprise) d'un serveur WireGuard.

Si wg0.conf existe déjà (installé par install-wireguard.sh), la clé serveur,
le port, le sous-réseau et les blocs ``# Client:`` sont importés dans le
registre ; le fichier n'est pas modifié.
"""
from __future__ import annotations
import ipaddress
import logging
from datetime import timezone
from pathlib import Path
from typing import List, Optional

from core.errors import PersistenceError, VpnError
from core.manager import utcnow
from core.models import WIREGUARD, PeerRecord, ServerParameters
from core.settings import Settings
from core.state import Registry, RegistryState, atomic_write_text
from .keys import generate_keypair, private_to_public
from .wgconf import ServerConf, parse_client_conf, parse_server_conf, render_server_conf


logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "10.66.66.0/24"
DEFAULT_PORT = 51820


def read_server_info(path: Path) -> dict:
    """Lit server_info.txt ("Server Public IP: x", "Listen Port: y", ...)."""
    info = {}
    if not path.exists():
        return info
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition(":")
        if sep and value.strip():
            info[key.strip()] = value.strip()
    return info


def _recover_private_key(client_conf: Path, public_key: Optional[str]) -> Optional[str]:
    if not client_conf.exists():
        return None
    try:
        sections = parse_client_conf(client_conf.read_text(encoding="utf-8"))
        priv = sections.get("Interface", {}).get("PrivateKey")
        if priv and private_to_public(priv) == public_key:
            return priv
    except (OSError, ValueError) as e:
        logger.warning("Ignoring %s: %s", client_conf, e)
    return None


def adopt_peers(conf: ServerConf, clients_dir: Path, issued_at: str) -> List[PeerRecord]:
    peers: List[PeerRecord] = []
    seen = set()
    for block in conf.managed:
        if block.name in seen or not block.public_key or not block.address:
            logger.warning("Skipping unusable peer block '%s'", block.name)
            continue
        seen.add(block.name)
        priv = _recover_private_key(clients_dir / f"{block.name}.conf", block.public_key)
        if priv is None:
            logger.warning("No private key found for '%s': its config cannot be re-exported", block.name)
        peers.append(PeerRecord(
            name=block.name,
            address=block.address,
            public_key=block.public_key,
            issued_at=issued_at,
            private_key=priv,
            preshared_key=block.preshared_key,
        ))
    return peers


def init_server(
    settings: Settings,
    endpoint: Optional[str] = None,
    listen_port: Optional[int] = None,
    network_cidr: Optional[str] = None,
    interface: str = "wg0",
    dns: Optional[List[str]] = None,
    allowed_ips: Optional[List[str]] = None,
    max_clients: Optional[int] = None,
) -> RegistryState:
    registry = Registry(settings.state_path(WIREGUARD))
    if registry.initialized():
        raise VpnError(f"Registry already exists: {registry.path}")

    config_path = settings.wg_config_path(interface)
    info = read_server_info(settings.wireguard_dir / "server_info.txt")
    endpoint = endpoint or info.get("Server Public IP")
    if not endpoint:
        raise VpnError("Server endpoint is required (--endpoint)")

    issued_at = utcnow().astimezone(timezone.utc).replace(microsecond=0).isoformat()
    peers: List[PeerRecord] = []

    if config_path.exists():
        logger.info("Adopting existing %s", config_path)
        try:
            conf = parse_server_conf(config_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise PersistenceError(f"Cannot read {config_path}: {e}") from e

        private_key = conf.interface_value("PrivateKey")
        if not private_key:
            raise VpnError(f"No PrivateKey in [Interface] of {config_path}")
        public_key = private_to_public(private_key)

        if listen_port is None and conf.interface_value("ListenPort"):
            listen_port = int(conf.interface_value("ListenPort"))
        if network_cidr is None and conf.interface_value("Address"):
            address = conf.interface_value("Address").split(",")[0].strip()
            network_cidr = str(ipaddress.ip_interface(address).network)

        peers = adopt_peers(conf, settings.client_dir(WIREGUARD), issued_at)
        logger.info("Imported %d existing clients", len(peers))
    else:
        network_cidr = network_cidr or DEFAULT_NETWORK
        listen_port = listen_port or DEFAULT_PORT
        private_key, public_key = generate_keypair()
        net = ipaddress.ip_network(network_cidr)
        conf = ServerConf(interface=[
            "# WireGuard Server Configuration",
            f"# Generated on {issued_at}",
            "",
            "[Interface]",
            f"Address = {net.network_address + 1}/{net.prefixlen}",
            f"ListenPort = {listen_port}",
            f"PrivateKey = {private_key}",
            "",
            "# Clients are managed by 'vpn wireguard add|remove'",
        ])
        atomic_write_text(config_path, render_server_conf(conf), mode=0o600)
        logger.info("Server configuration created at %s", config_path)

    server = ServerParameters(
        protocol=WIREGUARD,
        endpoint=endpoint,
        listen_port=listen_port or DEFAULT_PORT,
        network_cidr=network_cidr or DEFAULT_NETWORK,
        public_key=public_key,
        interface=interface,
        max_clients=max_clients,
    )
    if dns:
        server.dns = list(dns)
    if allowed_ips:
        server.allowed_ips = list(allowed_ips)

    state = RegistryState(server=server, peers=peers)
    with registry.locked():
        registry.save(state)

    logger.info("Server initialized: %s:%s, network %s", endpoint, server.listen_port, server.network_cidr)
    return state
