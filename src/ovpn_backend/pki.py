# src/ovpn_backend/pki.py
"""
Autorité de certification locale (disposition inspirée d'easy-rsa).

    pki/ca.crt                          certificat racine
    pki/private/ca.key                  clé de la CA
    pki/issued/<nom>.crt                certificats actifs
    pki/private/<nom>.key               clés des certificats actifs
    pki/revoked/certs_by_serial/<S>.crt certificats révoqués (conservés)
    pki/revoked/private_by_serial/<S>.key
    pki/crl.pem                         liste de révocation, jamais raccourcie
"""
from __future__ import annotations
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Set, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from core.errors import EntropyUnavailableError, PersistenceError, ServerNotInitializedError
from core.state import atomic_write_bytes


logger = logging.getLogger(__name__)

CA_COMMON_NAME = "VPN CA"
SERVER_COMMON_NAME = "server"
TLS_AUTH_BYTES = 256


@dataclass(frozen=True)
class PkiPaths:
    root: Path

    @property
    def ca_cert(self) -> Path:
        return self.root / "ca.crt"

    @property
    def ca_key(self) -> Path:
        return self.root / "private" / "ca.key"

    @property
    def crl(self) -> Path:
        return self.root / "crl.pem"

    def cert(self, name: str) -> Path:
        return self.root / "issued" / f"{name}.crt"

    def key(self, name: str) -> Path:
        return self.root / "private" / f"{name}.key"

    def revoked_cert(self, serial: str) -> Path:
        return self.root / "revoked" / "certs_by_serial" / f"{serial}.crt"

    def revoked_key(self, serial: str) -> Path:
        return self.root / "revoked" / "private_by_serial" / f"{serial}.key"


# ---------- Clés et certificats ----------

def generate_identity(key_size: int = 2048) -> rsa.RSAPrivateKey:
    try:
        return rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    except ValueError:
        raise
    except Exception as e:
        raise EntropyUnavailableError(f"Cannot generate RSA key: {e}") from e


def key_to_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def cert_to_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def serial_hex(cert: x509.Certificate) -> str:
    return format(cert.serial_number, "X")


def fingerprint(cert: x509.Certificate) -> str:
    return cert.fingerprint(hashes.SHA256()).hex()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def build_ca(key: rsa.RSAPrivateKey, days: int = 3650, common_name: str = CA_COMMON_NAME) -> x509.Certificate:
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = _now()
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )


def issue_certificate(
    ca_cert: x509.Certificate,
    ca_key: rsa.RSAPrivateKey,
    common_name: str,
    public_key,
    days: int = 3650,
    server: bool = False,
) -> x509.Certificate:
    """Signe un certificat client (clientAuth) ou serveur (serverAuth)."""
    now = _now()
    usage = ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH
    return (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(ca_cert.subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=server,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_cert.public_key()),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )


# ---------- Lecture ----------

def load_ca(paths: PkiPaths) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    if not paths.ca_cert.exists() or not paths.ca_key.exists():
        raise ServerNotInitializedError(f"CA certificate or key missing in {paths.root}")
    try:
        ca_cert = x509.load_pem_x509_certificate(paths.ca_cert.read_bytes())
        ca_key = serialization.load_pem_private_key(paths.ca_key.read_bytes(), password=None)
    except OSError as e:
        raise PersistenceError(f"Cannot read CA from {paths.root}: {e}") from e
    except ValueError as e:
        raise PersistenceError(f"Corrupted CA material in {paths.root}: {e}") from e
    return ca_cert, ca_key


def load_crl(paths: PkiPaths) -> Optional[x509.CertificateRevocationList]:
    if not paths.crl.exists() or paths.crl.stat().st_size == 0:
        return None
    try:
        return x509.load_pem_x509_crl(paths.crl.read_bytes())
    except ValueError as e:
        raise PersistenceError(f"Corrupted CRL {paths.crl}: {e}") from e


def revoked_serials(paths: PkiPaths) -> Set[int]:
    crl = load_crl(paths)
    return {r.serial_number for r in crl} if crl is not None else set()


# ---------- Révocation ----------

def write_crl(
    paths: PkiPaths,
    ca_cert: x509.Certificate,
    ca_key: rsa.RSAPrivateKey,
    revoked: List[x509.RevokedCertificate],
    days: int = 3650,
) -> x509.CertificateRevocationList:
    now = _now()
    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(ca_cert.subject)
        .last_update(now)
        .next_update(now + timedelta(days=days))
    )
    for entry in revoked:
        builder = builder.add_revoked_certificate(entry)
    crl = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
    atomic_write_bytes(paths.crl, crl.public_bytes(serialization.Encoding.PEM), mode=0o644)
    return crl


def revoke_serial(
    paths: PkiPaths,
    ca_cert: x509.Certificate,
    ca_key: rsa.RSAPrivateKey,
    serial: int,
    when: Optional[datetime] = None,
    days: int = 3650,
) -> x509.CertificateRevocationList:
    """
    Ajoute ``serial`` à la CRL. Les entrées existantes sont toutes reprises.
    """
    crl = load_crl(paths)
    revoked = list(crl) if crl is not None else []
    if any(r.serial_number == serial for r in revoked):
        logger.debug("serial %X already revoked", serial)
    else:
        revoked.append(
            x509.RevokedCertificateBuilder()
            .serial_number(serial)
            .revocation_date(when or _now())
            .build()
        )
    return write_crl(paths, ca_cert, ca_key, revoked, days)


def archive_revoked(paths: PkiPaths, name: str, serial: str) -> None:
    """Déplace le certificat et la clé d'un peer révoqué hors de issued/ et private/."""
    for src, dst in ((paths.cert(name), paths.revoked_cert(serial)),
                     (paths.key(name), paths.revoked_key(serial))):
        if not src.exists():
            continue
        try:
            dst.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            os.replace(src, dst)
        except OSError as e:
            raise PersistenceError(f"Cannot archive {src}: {e}") from e


# ---------- Clé tls-auth ----------

def generate_tls_auth_key() -> str:
    """Clé statique au format ``openvpn --genkey secret`` (2048 bits)."""
    try:
        raw = secrets.token_bytes(TLS_AUTH_BYTES)
    except Exception as e:
        raise EntropyUnavailableError(f"Cannot generate tls-auth key: {e}") from e
    hexed = raw.hex()
    lines = [hexed[i:i + 32] for i in range(0, len(hexed), 32)]
    return "\n".join([
        "#",
        "# 2048 bit OpenVPN static key",
        "#",
        "-----BEGIN OpenVPN Static key V1-----",
        *lines,
        "-----END OpenVPN Static key V1-----",
    ]) + "\n"


def write_key_and_cert(paths: PkiPaths, name: str, key: rsa.RSAPrivateKey, cert: x509.Certificate) -> None:
    atomic_write_bytes(paths.key(name), key_to_pem(key), mode=0o600)
    try:
        atomic_write_bytes(paths.cert(name), cert_to_pem(cert), mode=0o644)
    except PersistenceError:
        paths.key(name).unlink(missing_ok=True)
        raise


def init_ca(paths: PkiPaths, key_size: int = 2048, days: int = 3650) -> x509.Certificate:
    """Crée la CA et une CRL vide si elles n'existent pas encore."""
    if paths.ca_cert.exists() and paths.ca_key.exists():
        logger.info("CA already exists, skipping generation")
        ca_cert, ca_key = load_ca(paths)
    else:
        logger.info("Generating CA private key (%d-bit RSA)...", key_size)
        ca_key = generate_identity(key_size)
        ca_cert = build_ca(ca_key, days)
        atomic_write_bytes(paths.ca_key, key_to_pem(ca_key), mode=0o600)
        atomic_write_bytes(paths.ca_cert, cert_to_pem(ca_cert), mode=0o644)

    if load_crl(paths) is None:
        write_crl(paths, ca_cert, ca_key, [], days)
    return ca_cert


def copy_file(src: Path, dst: Path, mode: int = 0o644) -> None:
    try:
        data = src.read_bytes()
    except OSError as e:
        raise PersistenceError(f"Cannot read {src}: {e}") from e
    atomic_write_bytes(dst, data, mode=mode)

