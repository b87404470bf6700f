# src/core/models.py
from __future__ import annotations
import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


WIREGUARD = "wireguard"
OPENVPN = "openvpn"
PROTOCOLS = (WIREGUARD, OPENVPN)


class PeerStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass(frozen=True)
class PeerRecord:
    name: str
    address: str                         # ex "10.66.66.2" (sans préfixe)
    public_key: str                      # clé WireGuard, ou empreinte SHA-256 du certificat
    issued_at: str                       # ISO-8601 UTC
    private_key: Optional[str] = None    # WireGuard uniquement
    preshared_key: Optional[str] = None  # WireGuard uniquement
    serial: Optional[str] = None         # OpenVPN uniquement, hex majuscule
    status: PeerStatus = PeerStatus.ACTIVE
    revoked_at: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.status is PeerStatus.ACTIVE


@dataclass
class ServerParameters:
    protocol: str                    # "wireguard" | "openvpn"
    endpoint: str                    # IP ou nom public, ex "203.0.113.10"
    listen_port: int                 # ex 51820 / 1194
    network_cidr: str                # ex "10.66.66.0/24"
    public_key: Optional[str] = None # clé publique du serveur WireGuard
    interface: str = "wg0"
    dns: List[str] = field(default_factory=lambda: ["8.8.8.8", "8.8.4.4"])
    keepalive: str = "25"
    allowed_ips: List[str] = field(default_factory=lambda: ["0.0.0.0/0", "::/0"])
    max_clients: Optional[int] = None
    # OpenVPN
    proto: str = "udp"
    cipher: str = "AES-128-GCM"
    auth: str = "SHA256"
    key_size: int = 2048
    cert_days: int = 3650
    crl_days: int = 3650

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.ip_network(self.network_cidr)

    @property
    def server_address(self) -> str:
        return str(self.network.network_address + 1)

    @property
    def retains_history(self) -> bool:
        # a revoked certificate stays on record, a WireGuard peer is erased
        return self.protocol == OPENVPN


@dataclass
class Identity:
    private_key: str
    public_key: str
    preshared_key: Optional[str] = None


@dataclass
class RegistryDelta:
    added: List[PeerRecord] = field(default_factory=list)
    removed: List[PeerRecord] = field(default_factory=list)
    peers: List[PeerRecord] = field(default_factory=list)  # registre complet après la mutation
