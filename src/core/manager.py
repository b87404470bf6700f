# src/core/manager.py
"""
Cycle de vie d'un peer, commun aux deux protocoles.

    add    : existence -> allocation -> identité -> registre -> artefact -> tunnel
    remove : existence -> révocation/suppression -> registre -> tunnel

Les sous-classes fournissent l'identité, le rendu de l'artefact, la projection
de la configuration serveur et le contrôleur du démon.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from . import reconcile
from .errors import (
    DuplicateNameError,
    InvalidNameError,
    NotFoundError,
    PersistenceError,
    ReconciliationError,
    VpnError,
)
from .ipam import allocate_ip
from .models import PeerRecord, RegistryDelta, ServerParameters
from .reconcile import NullController, TunnelController
from .settings import Settings
from .state import Registry, RegistryState, atomic_write_text


logger = logging.getLogger(__name__)

NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]{0,63}$")


def validate_name(name: Optional[str]) -> str:
    if not name or not name.strip():
        raise InvalidNameError("Client name cannot be empty")
    if not NAME_RE.match(name):
        raise InvalidNameError(
            f"Invalid client name '{name}': use letters, digits, '.', '_', '@' or '-' "
            "(64 characters max, starting with a letter or digit)"
        )
    return name


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_private_dir(path: Path) -> Path:
    try:
        path.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as e:
        raise PersistenceError(f"Cannot create {path}: {e}") from e
    return path


@dataclass
class PeerChange:
    record: PeerRecord
    artifact: Optional[Path] = None
    applied: bool = False


@dataclass
class ConnectedPeer:
    name: Optional[str]           # None si la clé/le CN n'est pas dans le registre
    endpoint: Optional[str]
    address: Optional[str]
    last_seen: Optional[datetime]
    received: int = 0
    sent: int = 0


class PeerManager:
    protocol = ""
    artifact_suffix = ".conf"

    def __init__(
        self,
        settings: Settings,
        controller: Optional[TunnelController] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.registry = Registry(settings.state_path(self.protocol))
        self._controller = controller
        self.clock = clock

    # ---------- Points d'extension ----------

    def _preflight(self, state: RegistryState) -> None:
        """Vérifie le matériel serveur avant toute mutation."""

    def _issue(self, state: RegistryState, name: str, address: str, issued_at: str) -> PeerRecord:
        raise NotImplementedError

    def _discard(self, record: PeerRecord) -> None:
        """Annule les effets de bord de ``_issue`` si le registre n'a pas pu être écrit."""

    def _retire(self, state: RegistryState, record: PeerRecord, at: str) -> None:
        """Effets de bord de ``remove`` à appliquer avant l'écriture du registre."""

    def _reserved_addresses(self, state: RegistryState) -> List[str]:
        """Adresses du tunnel occupées hors du registre."""
        return []

    def _write_projection(self, state: RegistryState) -> None:
        raise NotImplementedError

    def render(self, record: PeerRecord, server: ServerParameters,
               generated_at: Optional[datetime] = None) -> str:
        raise NotImplementedError

    def _make_controller(self, server: ServerParameters) -> TunnelController:
        raise NotImplementedError

    def connected(self) -> List[ConnectedPeer]:
        raise NotImplementedError

    # ---------- Utilitaires ----------

    def _now(self) -> str:
        return self.clock().astimezone(timezone.utc).replace(microsecond=0).isoformat()

    def controller(self, server: ServerParameters) -> TunnelController:
        if self._controller is not None:
            return self._controller
        if not self.settings.apply:
            return NullController()
        return self._make_controller(server)

    def artifact_path(self, name: str) -> Path:
        return self.settings.client_dir(self.protocol) / f"{name}{self.artifact_suffix}"

    def write_artifact(self, record: PeerRecord, server: ServerParameters) -> Path:
        path = self.artifact_path(record.name)
        ensure_private_dir(path.parent)
        atomic_write_text(path, self.render(record, server), mode=0o600)
        return path

    def _delete_artifact(self, name: str) -> None:
        path = self.artifact_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not delete %s: %s", path, e)

    def _apply(self, delta: RegistryDelta, server: ServerParameters) -> bool:
        try:
            reconcile.apply(self.controller(server), delta)
        except ReconciliationError as e:
            logger.warning("Registry updated, but the live tunnel was not: %s", e)
            logger.warning("Run 'vpn %s sync' or restart the service to apply it", self.protocol)
            return False
        return True

    # ---------- Opérations ----------

    def server(self) -> ServerParameters:
        return self.registry.load().server

    def list(self) -> List[PeerRecord]:
        return self.registry.list()

    def get(self, name: str) -> PeerRecord:
        record = self.registry.load().get(name)
        if record is None:
            raise NotFoundError(f"Client '{name}' does not exist")
        return record

    def add(self, name: str) -> PeerChange:
        validate_name(name)

        with self.registry.locked():
            state = self.registry.load()
            self._preflight(state)
            if state.exists(name):
                raise DuplicateNameError(f"Client '{name}' already exists")

            address = allocate_ip(
                state.peers,
                state.server.network_cidr,
                state.server.max_clients,
                reserved=self._reserved_addresses(state),
            )
            logger.info("Creating client '%s'...", name)
            logger.info("Assigning IP: %s", address)

            record = self._issue(state, name, address, self._now())
            try:
                state.append(record)
                self.registry.save(state)
            except VpnError:
                self._discard(record)
                raise

            self._write_projection(state)
            artifact = self.write_artifact(record, state.server)
            applied = self._apply(
                RegistryDelta(added=[record], peers=list(state.peers)), state.server
            )

        return PeerChange(record=record, artifact=artifact, applied=applied)

    def remove(self, name: str) -> PeerChange:
        validate_name(name)

        with self.registry.locked():
            state = self.registry.load()
            self._preflight(state)
            at = self._now()
            record = state.remove(name, at)
            logger.warning("Removing client '%s'...", name)

            self._retire(state, record, at)
            self.registry.save(state)
            self._write_projection(state)
            self._delete_artifact(name)
            applied = self._apply(
                RegistryDelta(removed=[record], peers=list(state.peers)), state.server
            )

        return PeerChange(record=record, applied=applied)

    def export(self, name: str) -> Path:
        """Régénère l'artefact d'un peer actif à partir du registre."""
        validate_name(name)
        state = self.registry.load()
        record = state.get(name)
        if record is None:
            raise NotFoundError(f"Client '{name}' does not exist")
        return self.write_artifact(record, state.server)

    def sync(self) -> bool:
        """
        Réécrit la projection serveur et la réapplique au tunnel.

        Contrairement à add/remove, un échec est remonté à l'appelant.
        """
        with self.registry.locked():
            state = self.registry.load()
            self._write_projection(state)
            return reconcile.apply(
                self.controller(state.server), RegistryDelta(peers=list(state.peers))
            )

