# src/wg_backend/keys.py
"""
Clés WireGuard générées en Python (format identique à wg genkey / pubkey / genpsk).
"""
from __future__ import annotations
import base64
import binascii
import secrets

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from core.errors import EntropyUnavailableError
from core.models import Identity


KEY_SIZE = 32


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def generate_private_key() -> str:
    try:
        key = X25519PrivateKey.generate()
    except Exception as e:
        raise EntropyUnavailableError(f"Cannot generate private key: {e}") from e
    raw = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return _b64(raw)


def private_to_public(private_key: str) -> str:
    try:
        raw = base64.b64decode(private_key.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid WireGuard private key: {e}") from e
    if len(raw) != KEY_SIZE:
        raise ValueError(f"WireGuard key must be {KEY_SIZE} bytes, got {len(raw)}")
    pub = X25519PrivateKey.from_private_bytes(raw).public_key()
    return _b64(pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ))


def generate_preshared_key() -> str:
    try:
        return _b64(secrets.token_bytes(KEY_SIZE))
    except Exception as e:
        raise EntropyUnavailableError(f"Cannot generate preshared key: {e}") from e


def generate_keypair() -> tuple[str, str]:
    priv = generate_private_key()
    return priv, private_to_public(priv)


def generate_identity(with_preshared: bool = True) -> Identity:
    priv, pub = generate_keypair()
    psk = generate_preshared_key() if with_preshared else None
    return Identity(private_key=priv, public_key=pub, preshared_key=psk)
