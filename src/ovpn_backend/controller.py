# src/ovpn_backend/controller.py
from __future__ import annotations
import csv
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from core.errors import PersistenceError
from core.models import PeerRecord
from core.reconcile import TunnelController
from core.state import atomic_write_text
from core.system import run_cmd


logger = logging.getLogger(__name__)


def _directive(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped or stripped[0] in "#;":
        return None
    return stripped.split()[0]


def _read_conf(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise PersistenceError(f"Cannot read {path}: {e}") from e


def has_directive(path: Path, directive: str) -> bool:
    return any(_directive(line) == directive for line in _read_conf(path).splitlines())


def ensure_directive(path: Path, directive: str, value: str) -> bool:
    """
    Ajoute ``directive value`` à la fin de ``path`` si la directive est absente.

    Returns:
        bool: True si le fichier a été modifié
    """
    text = _read_conf(path)
    if any(_directive(line) == directive for line in text.splitlines()):
        return False

    if text and not text.endswith("\n"):
        text += "\n"
    text += f"{directive} {value}\n"
    atomic_write_text(path, text, mode=0o644)
    logger.info("Added '%s %s' to %s", directive, value, path)
    return True


class OpenVpnController(TunnelController):
    """
    OpenVPN relit la CRL et le dossier ccd/ à chaque connexion : un nouveau
    certificat ne demande rien. Seule une modification de server.conf impose
    un redémarrage, ce qui n'arrive qu'une fois (première révocation).

    Le marqueur ``.restart-pending`` est posé avant l'amendement et retiré
    seulement après un redémarrage réussi : un ``sync`` ultérieur relance le
    service tant que le démon n'a pas relu server.conf.
    """

    def __init__(self, server_conf: Path, service: str = "openvpn@server", timeout: float = 30.0):
        self.server_conf = Path(server_conf)
        self.service = service
        self.timeout = timeout
        self.name = service

    @property
    def restart_marker(self) -> Path:
        return self.server_conf.parent / ".restart-pending"

    def _wanted(self, peers: Sequence[PeerRecord]) -> List[tuple]:
        wanted = [("client-config-dir", "ccd")]
        if any(not p.active for p in peers):
            wanted.append(("crl-verify", "crl.pem"))
        return wanted

    def sync_peers(self, peers: Sequence[PeerRecord]) -> bool:
        missing = [(d, v) for d, v in self._wanted(peers) if not has_directive(self.server_conf, d)]
        if missing:
            atomic_write_text(self.restart_marker, f"{self.server_conf}\n", mode=0o600)
            for directive, value in missing:
                ensure_directive(self.server_conf, directive, value)
        return self.restart_marker.exists()

    def reload(self) -> None:
        run_cmd(["systemctl", "restart", self.service], timeout=self.timeout)
        try:
            self.restart_marker.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot delete {self.restart_marker}: {e}") from e


# ---------- Journal de statut ----------

@dataclass
class StatusClient:
    common_name: str
    real_address: Optional[str]
    virtual_address: Optional[str]
    received: int
    sent: int
    connected_since: Optional[datetime]


_V2_COLUMNS = [
    "Common Name", "Real Address", "Virtual Address", "Virtual IPv6 Address",
    "Bytes Received", "Bytes Sent", "Connected Since", "Connected Since (time_t)",
]


def _int(value: Optional[str]) -> int:
    return int(value) if value and value.isdigit() else 0


def parse_status(text: str) -> List[StatusClient]:
    """
    Lignes ``CLIENT_LIST`` d'un journal ``status-version 2``.

    Les colonnes sont lues depuis la ligne ``HEADER,CLIENT_LIST,...`` quand
    elle est présente (leur nombre varie selon la version d'OpenVPN).
    """
    columns = list(_V2_COLUMNS)
    clients = []
    for row in csv.reader(text.splitlines()):
        if not row:
            continue
        if row[0] == "HEADER" and len(row) > 1 and row[1] == "CLIENT_LIST":
            columns = row[2:]
            continue
        if row[0] != "CLIENT_LIST":
            continue

        fields: Dict[str, str] = dict(zip(columns, row[1:]))
        since = fields.get("Connected Since (time_t)")
        clients.append(StatusClient(
            common_name=fields.get("Common Name", ""),
            real_address=fields.get("Real Address") or None,
            virtual_address=fields.get("Virtual Address") or None,
            received=_int(fields.get("Bytes Received")),
            sent=_int(fields.get("Bytes Sent")),
            connected_since=datetime.fromtimestamp(int(since), tz=timezone.utc) if since and since.isdigit() else None,
        ))
    return clients


def read_status(path: Path) -> List[StatusClient]:
    try:
        return parse_status(path.read_text(encoding="utf-8", errors="replace"))
    except FileNotFoundError:
        logger.warning("Status log not found: %s (is the server running?)", path)
        return []
