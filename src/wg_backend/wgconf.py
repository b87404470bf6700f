# src/wg_backend/wgconf.py
"""
Lecture / écriture de wg0.conf.

Le fichier serveur n'est qu'une projection du registre : la section
[Interface] (clés, PostUp/PostDown posés par l'installeur) et les blocs [Peer]
sans marqueur sont conservés tels quels ; les blocs précédés de
``# Client: <nom>`` sont régénérés depuis le registre à chaque écriture.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from core.manager import NAME_RE
from core.models import PeerRecord


CLIENT_MARKER = "# Client: "
_MARKER_RE = re.compile(r"^#\s*Client:\s*(\S+)\s*$")
_SECTION_RE = re.compile(r"^\[(\w+)\]\s*$")


@dataclass
class PeerBlock:
    name: Optional[str]               # None : bloc non géré par l'outil
    public_key: Optional[str] = None
    preshared_key: Optional[str] = None
    allowed_ips: List[str] = field(default_factory=list)
    lines: List[str] = field(default_factory=list)

    @property
    def address(self) -> Optional[str]:
        for cidr in self.allowed_ips:
            ip, _, prefix = cidr.partition("/")
            if prefix in ("", "32"):
                return ip
        return None


@dataclass
class ServerConf:
    interface: List[str] = field(default_factory=list)
    peers: List[PeerBlock] = field(default_factory=list)

    def interface_value(self, key: str) -> Optional[str]:
        for line in self.interface:
            k, v = _key_value(line)
            if k is not None and k.lower() == key.lower():
                return v
        return None

    @property
    def managed(self) -> List[PeerBlock]:
        return [b for b in self.peers if b.name is not None]


def _key_value(line: str):
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None, None
    k, _, v = stripped.partition("=")
    return k.strip(), v.strip()


def _fill(block: PeerBlock) -> PeerBlock:
    for line in block.lines:
        k, v = _key_value(line)
        if k is None:
            continue
        k = k.lower()
        if k == "publickey":
            block.public_key = v
        elif k == "presharedkey":
            block.preshared_key = v
        elif k == "allowedips":
            block.allowed_ips.extend(ip.strip() for ip in v.split(",") if ip.strip())
    while block.lines and not block.lines[-1].strip():
        block.lines.pop()
    return block


# ---------- Décodage ----------

def parse_server_conf(text: str) -> ServerConf:
    conf = ServerConf()
    lines = text.splitlines()
    current: Optional[PeerBlock] = None
    i = 0

    while i < len(lines):
        line = lines[i]
        marker = _MARKER_RE.match(line.strip())

        if marker and NAME_RE.match(marker.group(1)):
            # un marqueur ne compte que s'il précède directement un [Peer]
            # et porte un nom de client valide
            j = i + 1
            while j < len(lines) and not lines[j].strip():
                j += 1
            if j < len(lines) and lines[j].strip() == "[Peer]":
                if current is not None:
                    conf.peers.append(_fill(current))
                current = PeerBlock(name=marker.group(1), lines=["[Peer]"])
                i = j + 1
                continue

        section = _SECTION_RE.match(line.strip())
        if section and section.group(1) == "Peer":
            if current is not None:
                conf.peers.append(_fill(current))
            current = PeerBlock(name=None, lines=[line])
        elif current is not None:
            current.lines.append(line)
        else:
            conf.interface.append(line)
        i += 1

    if current is not None:
        conf.peers.append(_fill(current))

    while conf.interface and not conf.interface[-1].strip():
        conf.interface.pop()
    return conf


def parse_client_conf(text: str) -> Dict[str, Dict[str, str]]:
    """Sections d'un fichier client : {'Interface': {...}, 'Peer': {...}}."""
    sections: Dict[str, Dict[str, str]] = {}
    current = None
    for line in text.splitlines():
        section = _SECTION_RE.match(line.strip())
        if section:
            current = sections.setdefault(section.group(1), {})
            continue
        k, v = _key_value(line)
        if current is not None and k is not None:
            current[k] = v
    return sections


# ---------- Encodage ----------

def peer_block(record: PeerRecord) -> PeerBlock:
    lines = ["[Peer]", f"PublicKey = {record.public_key}"]
    if record.preshared_key:
        lines.append(f"PresharedKey = {record.preshared_key}")
    lines.append(f"AllowedIPs = {record.address}/32")
    return PeerBlock(
        name=record.name,
        public_key=record.public_key,
        preshared_key=record.preshared_key,
        allowed_ips=[f"{record.address}/32"],
        lines=lines,
    )


def project(conf: ServerConf, peers: Iterable[PeerRecord]) -> ServerConf:
    """Remplace les blocs gérés de ``conf`` par les peers actifs du registre."""
    unmanaged = [b for b in conf.peers if b.name is None]
    managed = [peer_block(p) for p in peers if p.active]
    return ServerConf(interface=list(conf.interface), peers=unmanaged + managed)


def render_server_conf(conf: ServerConf) -> str:
    out = list(conf.interface)
    for block in conf.peers:
        out.append("")
        if block.name is not None:
            out.append(f"{CLIENT_MARKER}{block.name}")
        out.extend(block.lines)
    return "\n".join(out).strip() + "\n"
