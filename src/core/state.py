# src/core/state.py
"""
Registre des peers : un document JSON par protocole.

Le fichier est la seule source de vérité. Il est relu en entier avant chaque
vérification d'existence ou allocation, réécrit de façon atomique
(fichier temporaire + fsync + rename) et les écritures concurrentes sont
sérialisées par un verrou ``flock`` sur ``<fichier>.lock``.
"""
from __future__ import annotations
import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import (
    DuplicateNameError,
    NotFoundError,
    PersistenceError,
    ServerNotInitializedError,
)
from .models import PeerRecord, PeerStatus, ServerParameters


logger = logging.getLogger(__name__)

STATE_VERSION = 1


# ---------- Écriture atomique ----------

def atomic_write_bytes(path: Path, data: bytes, mode: int = 0o600) -> None:
    """
    Remplace ``path`` par ``data`` sans jamais laisser de fichier partiel.
    """
    tmpname = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmpname = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmpname, mode)
        os.replace(tmpname, path)
        tmpname = None
    except OSError as e:
        raise PersistenceError(f"Cannot write {path}: {e}") from e
    finally:
        if tmpname is not None and os.path.exists(tmpname):
            os.remove(tmpname)


def atomic_write_text(path: Path, text: str, mode: int = 0o600) -> None:
    atomic_write_bytes(path, text.encode("utf-8"), mode=mode)


# ---------- Sérialisation ----------

def record_to_dict(p: PeerRecord) -> dict:
    return {
        "name": p.name,
        "address": p.address,
        "public_key": p.public_key,
        "private_key": p.private_key,
        "preshared_key": p.preshared_key,
        "serial": p.serial,
        "status": p.status.value,
        "issued_at": p.issued_at,
        "revoked_at": p.revoked_at,
    }


def dict_to_record(data: dict) -> PeerRecord:
    return PeerRecord(
        name=data["name"],
        address=data["address"],
        public_key=data["public_key"],
        issued_at=data["issued_at"],
        private_key=data.get("private_key"),
        preshared_key=data.get("preshared_key"),
        serial=data.get("serial"),
        status=PeerStatus(data.get("status", PeerStatus.ACTIVE.value)),
        revoked_at=data.get("revoked_at"),
    )


def server_to_dict(s: ServerParameters) -> dict:
    return {
        "protocol": s.protocol,
        "endpoint": s.endpoint,
        "listen_port": s.listen_port,
        "network_cidr": s.network_cidr,
        "public_key": s.public_key,
        "interface": s.interface,
        "dns": list(s.dns),
        "keepalive": s.keepalive,
        "allowed_ips": list(s.allowed_ips),
        "max_clients": s.max_clients,
        "proto": s.proto,
        "cipher": s.cipher,
        "auth": s.auth,
        "key_size": s.key_size,
        "cert_days": s.cert_days,
        "crl_days": s.crl_days,
    }


def dict_to_server(data: dict) -> ServerParameters:
    required = ("protocol", "endpoint", "listen_port", "network_cidr")
    kwargs = {k: data[k] for k in required}
    for key in (
        "public_key", "interface", "dns", "keepalive", "allowed_ips", "max_clients",
        "proto", "cipher", "auth", "key_size", "cert_days", "crl_days",
    ):
        if key in data:
            kwargs[key] = data[key]
    return ServerParameters(**kwargs)


def state_to_dict(state: "RegistryState") -> dict:
    return {
        "version": STATE_VERSION,
        "server": server_to_dict(state.server),
        "peers": [record_to_dict(p) for p in state.peers],
    }


def dict_to_state(data: dict) -> "RegistryState":
    if data.get("version") != STATE_VERSION:
        raise ValueError(f"unsupported registry version {data.get('version')!r}")
    return RegistryState(
        server=dict_to_server(data["server"]),
        peers=[dict_to_record(p) for p in data.get("peers", [])],
    )


# ---------- Registre ----------

@dataclass
class RegistryState:
    server: ServerParameters
    peers: List[PeerRecord] = field(default_factory=list)  # ordre d'émission

    def active(self) -> List[PeerRecord]:
        return [p for p in self.peers if p.active]

    def get(self, name: str) -> Optional[PeerRecord]:
        for p in self.peers:
            if p.name == name and p.active:
                return p
        return None

    def exists(self, name: str) -> bool:
        return self.get(name) is not None

    def append(self, record: PeerRecord) -> None:
        if self.exists(record.name):
            raise DuplicateNameError(f"Client '{record.name}' already exists")
        self.peers.append(record)

    def remove(self, name: str, at: Optional[str] = None) -> PeerRecord:
        """
        Supprime le peer (WireGuard) ou le passe en Revoked (OpenVPN).

        Retourne l'enregistrement tel qu'il était avant la suppression.
        """
        for i, p in enumerate(self.peers):
            if p.name == name and p.active:
                if self.server.retains_history:
                    self.peers[i] = replace(p, status=PeerStatus.REVOKED, revoked_at=at)
                else:
                    del self.peers[i]
                return p
        raise NotFoundError(f"Client '{name}' does not exist")


class Registry:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Verrou exclusif inter-processus autour d'un lire-modifier-écrire."""
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise PersistenceError(f"Cannot open lock {self.lock_path}: {e}") from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def initialized(self) -> bool:
        return self.path.exists()

    def load(self) -> RegistryState:
        if not self.path.exists():
            raise ServerNotInitializedError(
                f"Registry not found: {self.path}. Run 'init' first."
            )
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            return dict_to_state(data)
        except OSError as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Corrupted registry {self.path}: {e}") from e

    def save(self, state: RegistryState) -> None:
        text = json.dumps(state_to_dict(state), indent=2) + "\n"
        atomic_write_text(self.path, text, mode=0o600)
        logger.debug("registry saved: %s (%d peers)", self.path, len(state.peers))

    # exists et list lisent un instantané ; append et remove relisent le
    # fichier sous verrou avant de l'écrire.

    def exists(self, name: str) -> bool:
        return self.load().exists(name)

    def list(self) -> List[PeerRecord]:
        return list(self.load().peers)

    def append(self, record: PeerRecord) -> None:
        with self.locked():
            state = self.load()
            state.append(record)
            self.save(state)

    def remove(self, name: str, at: Optional[str] = None) -> PeerRecord:
        with self.locked():
            state = self.load()
            record = state.remove(name, at)
            self.save(state)
            return record
