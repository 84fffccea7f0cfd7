"""
auth/sshkey.py -- SSH public key parsing and the key -> identity registry.

Key text format (one line, as in authorized_keys):

    <type> <base64 wire blob> [comment]

The fingerprint is the OpenSSH SHA-256 form: "SHA256:" followed by the
unpadded base64 of SHA-256 over the decoded wire blob. It is computed from
the blob, not the text, so the same key always yields the same fingerprint
no matter what comment or whitespace it was presented with.

Binding rules:
  A key belongs to at most one identity; an identity may own many keys.
  The UNIQUE constraints on key_bindings.fingerprint and .public_key are the
  serialization point for concurrent binds: exactly one insert wins and every
  loser re-reads the row to report ConflictError or AlreadyBoundError.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import struct
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from sqlalchemy.exc import IntegrityError

from auth.models import Identity, KeyBinding
from auth.store import AuthStore, isoformat, utcnow
from core.background import DetachedRunner
from core.errors import AlreadyBoundError, ConflictError, MalformedInputError, NotFoundError

logger = logging.getLogger("terminalpub.auth.sshkey")

# Types cryptography can load and check beyond the wire-format structure.
_LOADABLE_TYPES = frozenset(
    {
        "ssh-rsa",
        "ssh-ed25519",
        "ecdsa-sha2-nistp256",
        "ecdsa-sha2-nistp384",
        "ecdsa-sha2-nistp521",
    }
)
# Accepted on structure alone (hardware-backed keys, legacy DSA).
_STRUCTURAL_TYPES = frozenset(
    {
        "ssh-dss",
        "sk-ssh-ed25519@openssh.com",
        "sk-ecdsa-sha2-nistp256@openssh.com",
    }
)
KEY_TYPES = _LOADABLE_TYPES | _STRUCTURAL_TYPES


@dataclass(frozen=True)
class ParsedKey:
    key_type: str
    blob: bytes
    comment: str
    fingerprint: str

    @property
    def canonical(self) -> str:
        """Type and base64 blob without the comment. This is the form stored in key_bindings."""
        return f"{self.key_type} {base64.b64encode(self.blob).decode('ascii')}"


def _embedded_type(blob: bytes) -> str:
    if len(blob) < 4:
        raise MalformedInputError("SSH key blob is truncated")
    (length,) = struct.unpack(">I", blob[:4])
    if length == 0 or len(blob) < 4 + length:
        raise MalformedInputError("SSH key blob is truncated")
    try:
        return blob[4 : 4 + length].decode("ascii")
    except UnicodeDecodeError as exc:
        raise MalformedInputError("SSH key blob has a non-ASCII type") from exc


def _fingerprint_blob(blob: bytes) -> str:
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def parse_public_key(text: str) -> ParsedKey:
    """Parse and validate an SSH public key line.

    Raises:
        MalformedInputError: not "<type> <base64> [comment]", unknown type,
            undecodable base64, or a blob whose embedded type or key material
            does not match the declared type.
    """
    parts = (text or "").strip().split(None, 2)
    if len(parts) < 2:
        raise MalformedInputError("SSH public key must be '<type> <base64> [comment]'")
    key_type, encoded = parts[0], parts[1]
    comment = parts[2].strip() if len(parts) == 3 else ""

    if key_type not in KEY_TYPES:
        raise MalformedInputError(f"unsupported SSH key type: {key_type}")
    try:
        blob = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedInputError("SSH public key is not valid base64") from exc
    if _embedded_type(blob) != key_type:
        raise MalformedInputError("SSH key type does not match the encoded key")

    if key_type in _LOADABLE_TYPES:
        try:
            serialization.load_ssh_public_key(f"{key_type} {encoded}".encode("ascii"))
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise MalformedInputError(f"invalid SSH key material: {exc}") from exc

    return ParsedKey(key_type=key_type, blob=blob, comment=comment, fingerprint=_fingerprint_blob(blob))


def fingerprint(text: str) -> str:
    """Return the SHA256 fingerprint of an SSH public key line."""
    return parse_public_key(text).fingerprint


class IdentityRegistry:
    """Maps presented SSH keys to identities.

    Usage:
        registry = IdentityRegistry(store, DetachedRunner(timeout=5))
        identity = await registry.lookup("ssh-ed25519 AAAA... alice@laptop")
        binding = await registry.bind(identity.id, other_key)
    """

    def __init__(
        self,
        store: AuthStore,
        runner: DetachedRunner,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._runner = runner
        self._clock = clock

    def _now(self) -> str:
        return isoformat(self._clock())

    async def lookup(self, public_key: str) -> Identity:
        """Return the identity bound to public_key.

        Matches on fingerprint first and the exact key text second. On a hit
        the binding's last_used_at is refreshed in a detached task.

        Raises:
            MalformedInputError: the key text does not parse.
            NotFoundError: no identity is bound to this key.
        """
        parsed = parse_public_key(public_key)
        binding = self._store.find_binding(parsed.fingerprint, parsed.canonical)
        if binding is None:
            raise NotFoundError("no identity is bound to this key", fingerprint=parsed.fingerprint)
        identity = self._store.get_identity(binding.identity_id)
        if identity is None:
            raise NotFoundError("key is bound to a missing identity", fingerprint=parsed.fingerprint)

        now = self._now()
        self._runner.spawn(lambda: self._store.touch_binding(binding.id, now), "key last_used_at refresh")
        return identity

    async def bind(self, identity_id: int, public_key: str) -> KeyBinding:
        """Bind public_key to identity_id.

        Raises:
            MalformedInputError: the key text does not parse.
            AlreadyBoundError: the key is already bound to this identity.
            ConflictError: the key is bound to a different identity.
        """
        parsed = parse_public_key(public_key)
        existing = self._store.find_binding(parsed.fingerprint, parsed.canonical)
        if existing is not None:
            self._raise_for_existing(existing, identity_id)

        binding = KeyBinding(
            identity_id=identity_id,
            public_key=parsed.canonical,
            fingerprint=parsed.fingerprint,
            key_type=parsed.key_type,
            comment=parsed.comment or None,
        )
        now = self._now()
        try:
            binding.id = self._store.create_binding(binding, now)
        except IntegrityError:
            # Lost the race to a concurrent bind of the same key.
            winner = self._store.find_binding(parsed.fingerprint, parsed.canonical)
            if winner is None:
                raise
            self._raise_for_existing(winner, identity_id)
        binding.created_at = binding.last_used_at = now
        logger.info("Bound key %s to identity %d", parsed.fingerprint, identity_id)
        return binding

    @staticmethod
    def _raise_for_existing(existing: KeyBinding, identity_id: int) -> None:
        if existing.identity_id == identity_id:
            raise AlreadyBoundError(
                "key is already bound to this identity", fingerprint=existing.fingerprint, binding=existing
            )
        raise ConflictError("key is already bound to another identity", fingerprint=existing.fingerprint)

    async def list_keys(self, identity_id: int) -> list[KeyBinding]:
        return self._store.list_bindings(identity_id)

    async def revoke(self, identity_id: int, binding_id: int) -> None:
        """Remove one of an identity's keys. Raises NotFoundError if absent or not owned."""
        if not self._store.delete_binding(binding_id, identity_id):
            raise NotFoundError("key binding not found", binding_id=binding_id)
        logger.info("Revoked key binding %d of identity %d", binding_id, identity_id)
