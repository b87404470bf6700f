# src/core/reconcile.py
"""
Application du registre au tunnel en cours d'exécution.

Un échec ici n'annule jamais la mutation déjà enregistrée : le registre fait
foi, l'interface est resynchronisée plus tard avec ``sync`` ou un redémarrage.
"""
from __future__ import annotations
import logging
import subprocess
from typing import Sequence

from .errors import PersistenceError, ReconciliationError
from .models import PeerRecord, RegistryDelta


logger = logging.getLogger(__name__)


def _cmd_str(cmd) -> str:
    if isinstance(cmd, (list, tuple)):
        return " ".join(str(c) for c in cmd)
    return str(cmd)


class TunnelController:
    """Interface minimale vers le démon VPN."""

    name = "tunnel"

    def sync_peers(self, peers: Sequence[PeerRecord]) -> bool:
        """
        Aligne le démon sur ``peers`` (registre complet, révoqués compris).

        Returns:
            bool: True si un redémarrage du service est nécessaire
        """
        raise NotImplementedError

    def reload(self) -> None:
        raise NotImplementedError


class NullController(TunnelController):
    """Utilisé avec ``--no-apply`` : ne touche à rien."""

    name = "none"

    def sync_peers(self, peers: Sequence[PeerRecord]) -> bool:
        logger.info("Live apply skipped (%d peers in registry)", len(peers))
        return False

    def reload(self) -> None:
        pass


def apply(controller: TunnelController, delta: RegistryDelta) -> bool:
    """
    Propage ``delta`` au tunnel.

    Returns:
        bool: True si le service a été redémarré

    Raises:
        ReconciliationError: si l'outil système échoue ou expire
    """
    for p in delta.added:
        logger.debug("apply: + %s (%s)", p.name, p.address)
    for p in delta.removed:
        logger.debug("apply: - %s (%s)", p.name, p.address)

    try:
        needs_restart = controller.sync_peers(delta.peers)
        if needs_restart:
            logger.info("Restarting %s to apply the new server configuration", controller.name)
            controller.reload()
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or "").strip() or f"exit status {e.returncode}"
        raise ReconciliationError(f"{_cmd_str(e.cmd)} failed: {detail}") from e
    except subprocess.TimeoutExpired as e:
        raise ReconciliationError(f"{_cmd_str(e.cmd)} timed out after {e.timeout}s") from e
    except PersistenceError as e:
        raise ReconciliationError(str(e)) from e
    except OSError as e:
        raise ReconciliationError(str(e)) from e

    return needs_restart
