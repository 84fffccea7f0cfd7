"""
federation/keys.py -- RSA key pairs and raw signatures for ActivityPub.

Every identity gets one 2048-bit RSA key pair at creation. The private key
is stored PEM-encoded (PKCS#1, "RSA PRIVATE KEY"), the public key as
SubjectPublicKeyInfo ("PUBLIC KEY") because that is what remote servers
expect to find in an actor's publicKeyPem.

Signatures are RSASSA-PKCS1-v1_5 over SHA-256, base64-encoded. This is the
only algorithm the rest of the fediverse reliably accepts for HTTP
signatures.

Layer rule: federation/ imports only from core/.
"""

from __future__ import annotations

import base64
import binascii

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from core.errors import MalformedInputError

KEY_SIZE = 2048
_PUBLIC_EXPONENT = 65537


def generate_key_pair(key_size: int = KEY_SIZE) -> tuple[str, str]:
    """Generate a new RSA key pair.

    Returns:
        (private_key_pem, public_key_pem) as text.
    """
    private_key = rsa.generate_private_key(public_exponent=_PUBLIC_EXPONENT, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem.decode("ascii"), public_pem.decode("ascii")


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    """Parse a PEM private key (PKCS#1 or PKCS#8). Raises MalformedInputError."""
    try:
        key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise MalformedInputError(f"invalid private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise MalformedInputError("not an RSA private key")
    return key


def load_public_key(pem: str) -> rsa.RSAPublicKey:
    """Parse a PEM public key (SubjectPublicKeyInfo or PKCS#1). Raises MalformedInputError."""
    try:
        key = serialization.load_pem_public_key(pem.encode("ascii"))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise MalformedInputError(f"invalid public key: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise MalformedInputError("not an RSA public key")
    return key


def _to_bytes(message: str | bytes) -> bytes:
    return message.encode("utf-8") if isinstance(message, str) else message


def sign(message: str | bytes, private_key_pem: str) -> str:
    """Sign message with RSA-SHA256 and return the base64 signature."""
    key = load_private_key(private_key_pem)
    signature = key.sign(_to_bytes(message), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def verify(message: str | bytes, signature_b64: str, public_key_pem: str) -> bool:
    """Return True if signature_b64 is a valid RSA-SHA256 signature of message.

    Returns False (never raises) for a bad signature or undecodable base64.
    An unparseable public key still raises MalformedInputError -- that is a
    caller bug or a broken remote actor, not a forged message.
    """
    key = load_public_key(public_key_pem)
    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError):
        return False
    try:
        key.verify(signature, _to_bytes(message), padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True
