# src/core/ipam.py
from __future__ import annotations
import ipaddress
import logging
from typing import Iterable, List, Optional

from .errors import PoolExhaustedError
from .models import PeerRecord


logger = logging.getLogger(__name__)

# .1 est l'adresse du serveur dans le tunnel
FIRST_HOST_OFFSET = 2


def pool_ceiling(net: ipaddress.IPv4Network) -> int:
    """Dernier offset d'hôte attribuable (on exclut l'adresse de broadcast)."""
    return net.num_addresses - 2


def host_offset(address: str, net: ipaddress.IPv4Network) -> Optional[int]:
    ip = ipaddress.ip_address(address.split("/")[0])
    if ip not in net:
        return None
    return int(ip) - int(net.network_address)


def get_used_offsets(peers: Iterable[PeerRecord], net: ipaddress.IPv4Network) -> List[int]:
    used = []
    for p in peers:
        if not p.active:
            continue
        offset = host_offset(p.address, net)
        if offset is None:
            logger.warning("Peer '%s' address %s is outside %s, ignored", p.name, p.address, net)
            continue
        used.append(offset)
    return used


def allocate_ip(
    peers: Iterable[PeerRecord],
    network_cidr: str,
    max_clients: Optional[int] = None,
    reserved: Iterable[str] = (),
) -> str:
    """
    Retourne l'adresse suivant la plus haute adresse active, ex '10.66.66.3'.

    Les adresses libérées sous ce plafond ne sont pas réattribuées.
    ``reserved`` : adresses tenues hors du registre (peers non gérés) ; elles
    relèvent le plafond sans compter dans ``max_clients``.
    """
    net = ipaddress.ip_network(network_cidr)
    peers = list(peers)

    active = sum(1 for p in peers if p.active)
    if max_clients is not None and active >= max_clients:
        raise PoolExhaustedError(f"Maximum number of clients ({max_clients}) reached")

    used = get_used_offsets(peers, net)
    for address in reserved:
        try:
            offset = host_offset(address, net)
        except ValueError:
            logger.warning("Ignoring unparsable address %r", address)
            continue
        if offset is not None:
            used.append(offset)
    candidate = max(used) + 1 if used else FIRST_HOST_OFFSET

    ceiling = pool_ceiling(net)
    if candidate > ceiling:
        raise PoolExhaustedError(
            f"No free address left in {net} (maximum of {ceiling - FIRST_HOST_OFFSET + 1} clients)"
        )

    return str(net.network_address + candidate)
