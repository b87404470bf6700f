# src/wg_backend/controller.py
from __future__ import annotations
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from core.errors import ReconciliationError
from core.models import PeerRecord
from core.reconcile import TunnelController
from core.system import run_cmd


logger = logging.getLogger(__name__)


class WgController(TunnelController):
    """
    Rechargement à chaud via ``wg syncconf``.

    wg0.conf est déjà à jour quand ``sync_peers`` est appelé : seuls les peers
    ajoutés ou retirés changent, les sessions des autres ne sont pas coupées.
    """

    def __init__(self, interface: str, config_path: Path, timeout: float = 30.0):
        self.interface = interface
        self.config_path = Path(config_path)
        self.timeout = timeout
        self.name = f"wg-quick@{interface}"

    def sync_peers(self, peers: Sequence[PeerRecord]) -> bool:
        stripped = run_cmd(["wg-quick", "strip", str(self.config_path)], timeout=self.timeout).stdout
        if "[Interface]" not in stripped:
            raise ReconciliationError(f"wg-quick strip produced no usable config for {self.config_path}")

        # le fichier temporaire contient la clé privée du serveur : 0600 (mkstemp)
        with tempfile.NamedTemporaryFile("w", prefix=f"{self.interface}.", suffix=".conf") as f:
            f.write(stripped)
            f.flush()
            run_cmd(["wg", "syncconf", self.interface, f.name], timeout=self.timeout)

        logger.info("Interface %s synchronized (%d active peers)",
                    self.interface, sum(1 for p in peers if p.active))
        return False

    def reload(self) -> None:
        run_cmd(["systemctl", "restart", self.name], timeout=self.timeout)


# ---------- wg show ----------

@dataclass
class DumpPeer:
    public_key: str
    endpoint: Optional[str]
    allowed_ips: List[str]
    latest_handshake: Optional[datetime]
    received: int
    sent: int


def parse_dump(text: str) -> List[DumpPeer]:
    """
    Analyse ``wg show <iface> dump``.

    La première ligne décrit l'interface (4 champs), les suivantes un peer
    chacune (8 champs séparés par des tabulations).
    """
    peers = []
    for line in text.splitlines()[1:]:
        fields = line.split("\t")
        if len(fields) < 8:
            continue
        public_key, _psk, endpoint, allowed, handshake, rx, tx, _keepalive = fields[:8]
        ts = int(handshake) if handshake.isdigit() else 0
        peers.append(DumpPeer(
            public_key=public_key,
            endpoint=None if endpoint == "(none)" else endpoint,
            allowed_ips=[] if allowed == "(none)" else allowed.split(","),
            latest_handshake=datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None,
            received=int(rx) if rx.isdigit() else 0,
            sent=int(tx) if tx.isdigit() else 0,
        ))
    return peers


def show_dump(interface: str, timeout: float = 30.0) -> List[DumpPeer]:
    return parse_dump(run_cmd(["wg", "show", interface, "dump"], timeout=timeout).stdout)
