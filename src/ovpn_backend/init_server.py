# src/ovpn_backend/init_server.py
"""
Initialisation d'un serveur OpenVPN : CA, certificat serveur, clé tls-auth,
CRL vide, dossier ccd/ et server.conf.

Le matériel déjà présent (CA, server.conf) est réutilisé tel quel.
"""
from __future__ import annotations
import ipaddress
import logging
from typing import List, Optional

from core.errors import VpnError
from core.models import OPENVPN, ServerParameters
from core.settings import Settings
from core.state import Registry, RegistryState, atomic_write_text
from . import pki


logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "10.8.0.0/24"
DEFAULT_PORT = 1194
DEFAULT_MAX_CLIENTS = 10
DEFAULT_KEEPALIVE = "10 120"


def render_server_conf(server: ServerParameters, status_log: str) -> str:
    net = server.network
    lines = [
        "# OpenVPN Server Configuration",
        "",
        "# Network settings",
        f"port {server.listen_port}",
        f"proto {server.proto}",
        "dev tun",
        "",
        "# Certificates and keys",
        "ca ca.crt",
        "cert server.crt",
        "key server.key",
        "dh none",
        "tls-auth ta.key 0",
        "",
        "# Network topology",
        f"server {net.network_address} {net.netmask}",
        "topology subnet",
        "",
        "# Fixed addresses, one file per client",
        "client-config-dir ccd",
        "ccd-exclusive",
        "",
        "# Push routes to clients",
        'push "redirect-gateway def1 bypass-dhcp"',
    ]
    lines += [f'push "dhcp-option DNS {dns}"' for dns in server.dns]
    lines += [
        "",
        f"keepalive {server.keepalive}",
        "",
        "# Security settings",
        f"cipher {server.cipher}",
        f"auth {server.auth}",
        "tls-version-min 1.2",
        "",
    ]
    if server.max_clients:
        lines.append(f"max-clients {server.max_clients}")
    lines += [
        "user nobody",
        "group nogroup",
        "persist-key",
        "persist-tun",
        "",
        "# Logging",
        f"status {status_log}",
        "status-version 2",
        "verb 3",
        "mute 20",
    ]
    if server.proto.startswith("udp"):
        lines += ["", "explicit-exit-notify 1"]
    return "\n".join(lines) + "\n"


def init_server(
    settings: Settings,
    endpoint: Optional[str] = None,
    listen_port: Optional[int] = None,
    network_cidr: Optional[str] = None,
    proto: str = "udp",
    dns: Optional[List[str]] = None,
    max_clients: Optional[int] = DEFAULT_MAX_CLIENTS,
    key_size: int = 2048,
    cert_days: int = 3650,
) -> RegistryState:
    registry = Registry(settings.state_path(OPENVPN))
    if registry.initialized():
        raise VpnError(f"Registry already exists: {registry.path}")
    if not endpoint:
        raise VpnError("Server endpoint is required (--endpoint)")

    try:
        ipaddress.ip_network(network_cidr or DEFAULT_NETWORK)
    except ValueError as e:
        raise VpnError(f"Invalid network: {e}") from e

    server = ServerParameters(
        protocol=OPENVPN,
        endpoint=endpoint,
        listen_port=listen_port or DEFAULT_PORT,
        network_cidr=network_cidr or DEFAULT_NETWORK,
        interface="tun0",
        keepalive=DEFAULT_KEEPALIVE,
        max_clients=max_clients,
        proto=proto,
        key_size=key_size,
        cert_days=cert_days,
        crl_days=cert_days,
    )
    if dns:
        server.dns = list(dns)

    paths = pki.PkiPaths(settings.pki_dir)
    ovpn_dir = settings.openvpn_dir

    ca_cert = pki.init_ca(paths, key_size, cert_days)
    pki.copy_file(paths.ca_cert, ovpn_dir / "ca.crt")
    pki.copy_file(paths.crl, ovpn_dir / "crl.pem")

    if not paths.cert(pki.SERVER_COMMON_NAME).exists():
        logger.info("Generating server certificate...")
        _, ca_key = pki.load_ca(paths)
        key = pki.generate_identity(key_size)
        cert = pki.issue_certificate(ca_cert, ca_key, pki.SERVER_COMMON_NAME, key.public_key(), cert_days, server=True)
        pki.write_key_and_cert(paths, pki.SERVER_COMMON_NAME, key, cert)
    pki.copy_file(paths.cert(pki.SERVER_COMMON_NAME), ovpn_dir / "server.crt")
    pki.copy_file(paths.key(pki.SERVER_COMMON_NAME), ovpn_dir / "server.key", mode=0o600)

    ta_key = ovpn_dir / "ta.key"
    if not ta_key.exists():
        logger.info("Generating TLS auth key...")
        atomic_write_text(ta_key, pki.generate_tls_auth_key(), mode=0o600)

    try:
        settings.ccd_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as e:
        raise VpnError(f"Cannot create {settings.ccd_dir}: {e}") from e

    conf = settings.openvpn_server_conf
    if conf.exists():
        logger.warning("%s already exists, leaving it unchanged", conf)
    else:
        atomic_write_text(conf, render_server_conf(server, str(settings.openvpn_status_log)), mode=0o644)
        logger.info("Server configuration created at %s", conf)

    state = RegistryState(server=server)
    with registry.locked():
        registry.save(state)

    logger.info("Server initialized: %s %s:%s, network %s",
                server.proto, endpoint, server.listen_port, server.network_cidr)
    return state
