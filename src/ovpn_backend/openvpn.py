# src/ovpn_backend/openvpn.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from core.errors import InvalidNameError, PersistenceError, ServerNotInitializedError
from core.manager import ConnectedPeer, PeerManager, utcnow
from core.models import OPENVPN, PeerRecord, ServerParameters
from core.state import RegistryState, atomic_write_text
from . import pki
from .controller import OpenVpnController, read_status


logger = logging.getLogger(__name__)


@dataclass
class ClientMaterial:
    ca: str
    cert: str
    key: str
    tls_auth: str


def _block(tag: str, body: str) -> List[str]:
    return [f"<{tag}>", body.strip(), f"</{tag}>"]


def render_client_conf(
    record: PeerRecord,
    server: ServerParameters,
    material: ClientMaterial,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Profil .ovpn autonome : directives puis CA, certificat, clé et clé
    tls-auth en ligne, dans cet ordre.
    """
    generated_at = (generated_at or utcnow()).astimezone(timezone.utc)

    lines = [
        "# OpenVPN Client Configuration",
        f"# Client: {record.name}",
        f"# Generated: {generated_at:%Y-%m-%d %H:%M:%S} UTC",
        f"# Assigned IP: {record.address}",
        "",
        "client",
        "dev tun",
        f"proto {server.proto}",
        f"remote {server.endpoint} {server.listen_port}",
        "resolv-retry infinite",
        "nobind",
        "persist-key",
        "persist-tun",
        "remote-cert-tls server",
        f"cipher {server.cipher}",
        f"auth {server.auth}",
        "key-direction 1",
        "redirect-gateway def1 bypass-dhcp",
    ]
    lines += [f"dhcp-option DNS {dns}" for dns in server.dns]
    lines += [
        f"keepalive {server.keepalive}",
        "verb 3",
        "mute 20",
        "",
    ]
    lines += _block("ca", material.ca)
    lines += [""] + _block("cert", material.cert)
    lines += [""] + _block("key", material.key)
    lines += [""] + _block("tls-auth", material.tls_auth)

    return "\n".join(lines) + "\n"


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ServerNotInitializedError(f"Missing PKI file: {path}") from None
    except OSError as e:
        raise PersistenceError(f"Cannot read {path}: {e}") from e


class OpenVpnManager(PeerManager):
    protocol = OPENVPN
    artifact_suffix = ".ovpn"

    def __init__(self, settings, controller=None, clock=utcnow):
        super().__init__(settings, controller=controller, clock=clock)
        self.pki = pki.PkiPaths(settings.pki_dir)

    @property
    def tls_auth_path(self) -> Path:
        return self.settings.openvpn_dir / "ta.key"

    def ccd_path(self, name: str) -> Path:
        return self.settings.ccd_dir / name

    # ---------- Cycle de vie ----------

    def add(self, name: str):
        if name == pki.SERVER_COMMON_NAME:
            raise InvalidNameError(f"'{name}' is reserved for the server certificate")
        return super().add(name)

    def _preflight(self, state: RegistryState) -> None:
        for path in (self.pki.ca_cert, self.pki.ca_key, self.tls_auth_path):
            if not path.exists():
                raise ServerNotInitializedError(f"Missing {path}. Run 'vpn openvpn init' first.")

    def _issue(self, state: RegistryState, name: str, address: str, issued_at: str) -> PeerRecord:
        ca_cert, ca_key = pki.load_ca(self.pki)
        logger.info("Generating client certificate...")
        key = pki.generate_identity(state.server.key_size)
        cert = pki.issue_certificate(ca_cert, ca_key, name, key.public_key(), state.server.cert_days)
        pki.write_key_and_cert(self.pki, name, key, cert)
        return PeerRecord(
            name=name,
            address=address,
            public_key=pki.fingerprint(cert),
            issued_at=issued_at,
            serial=pki.serial_hex(cert),
        )

    def _discard(self, record: PeerRecord) -> None:
        for path in (self.pki.cert(record.name), self.pki.key(record.name)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not delete %s: %s", path, e)

    def _retire(self, state: RegistryState, record: PeerRecord, at: str) -> None:
        ca_cert, ca_key = pki.load_ca(self.pki)
        when = datetime.fromisoformat(at)
        pki.revoke_serial(self.pki, ca_cert, ca_key, int(record.serial, 16), when, state.server.crl_days)
        pki.copy_file(self.pki.crl, self.settings.openvpn_dir / "crl.pem")
        pki.archive_revoked(self.pki, record.name, record.serial)
        logger.info("Certificate %s added to the revocation list", record.serial)

    def _write_projection(self, state: RegistryState) -> None:
        """
        Un fichier ccd/<nom> par peer actif pour figer son adresse.

        Le dossier doit rester lisible par l'utilisateur sous lequel tourne
        OpenVPN (nobody).
        """
        try:
            self.settings.ccd_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create {self.settings.ccd_dir}: {e}") from e
        netmask = state.server.network.netmask
        active = {p.name for p in state.active()}

        for record in state.active():
            atomic_write_text(self.ccd_path(record.name), f"ifconfig-push {record.address} {netmask}\n", mode=0o644)

        for record in state.peers:
            if record.name in active:
                continue
            path = self.ccd_path(record.name)
            if path.exists():
                try:
                    path.unlink()
                except OSError as e:
                    raise PersistenceError(f"Cannot delete {path}: {e}") from e

    def material(self, record: PeerRecord) -> ClientMaterial:
        return ClientMaterial(
            ca=_read(self.pki.ca_cert),
            cert=_read(self.pki.cert(record.name)),
            key=_read(self.pki.key(record.name)),
            tls_auth=_read(self.tls_auth_path),
        )

    def render(self, record, server, generated_at=None) -> str:
        return render_client_conf(record, server, self.material(record), generated_at or self.clock())

    def _make_controller(self, server: ServerParameters) -> OpenVpnController:
        return OpenVpnController(
            self.settings.openvpn_server_conf,
            service=self.settings.openvpn_service,
            timeout=self.settings.command_timeout,
        )

    def connected(self) -> List[ConnectedPeer]:
        state = self.registry.load()
        by_name = {p.name: p for p in state.active()}
        result = []
        for client in read_status(self.settings.openvpn_status_log):
            record = by_name.get(client.common_name)
            result.append(ConnectedPeer(
                name=record.name if record else None,
                endpoint=client.real_address,
                address=client.virtual_address or (record.address if record else None),
                last_seen=client.connected_since,
                received=client.received,
                sent=client.sent,
            ))
        return result
