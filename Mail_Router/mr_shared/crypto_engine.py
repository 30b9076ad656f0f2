"""
ECIES envelope sealing for blind inbox messages.

    ephemeral P-256 key  --ECDH-->  shared secret
    shared secret        --HKDF-SHA256(salt, info)-->  32-byte key
    key + 12-byte nonce  --AES-256-GCM-->  ciphertext || tag

Each payload also carries the SHA-256 of the plaintext, re-checked after
decryption. The service only ever holds public keys; ``decrypt`` exists for
key holders (clients, the CLI, tests).
"""

import hashlib
import json
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from Mail_Router.mr_shared import config
from Mail_Router.mr_shared.errors import IntegrityFailureError, InvalidKeyError
from Mail_Router.mr_shared.key_codec import KeyCodec
from Mail_Router.mr_shared.types import EncryptedPayload

logger = logging.getLogger("mr_shared.crypto_engine")


def content_hash(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def canonical_plaintext(sender: str, recipient: str, subject: str, body: str) -> str:
    """Stable serialisation every storage path hashes."""
    return json.dumps(
        {"from": sender, "to": recipient, "subject": subject, "body": body},
        sort_keys=True,
        separators=(",", ":"),
    )


class EciesEngine:
    """Key generation, sealing and opening of ECIES payloads."""

    def __init__(self, codec: Optional[KeyCodec] = None):
        self.codec = codec or KeyCodec()

    def _derive_key(self, private_key: ec.EllipticCurvePrivateKey, peer: ec.EllipticCurvePublicKey) -> bytes:
        shared = private_key.exchange(ec.ECDH(), peer)
        return HKDF(
            algorithm=hashes.SHA256(),
            length=config.ECIES_KEY_SIZE,
            salt=config.ECIES_HKDF_SALT,
            info=config.ECIES_HKDF_INFO,
        ).derive(shared)

    def generate_keypair(self) -> tuple[str, str]:
        """Return ``(public_hex, private_hex)``."""
        private_key = ec.generate_private_key(self.codec.curve)
        return (
            self.codec.encode_public(private_key.public_key()),
            self.codec.encode_private(private_key),
        )

    def encrypt(self, plaintext: str, recipient_public_key: str) -> EncryptedPayload:
        recipient = self.codec.decode_public(recipient_public_key)
        ephemeral = ec.generate_private_key(self.codec.curve)
        key = self._derive_key(ephemeral, recipient)

        iv = os.urandom(config.ECIES_IV_SIZE)
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)

        return EncryptedPayload(
            version=config.ECIES_VERSION,
            ephemeral_public_key=self.codec.encode_public(ephemeral.public_key()),
            iv=iv.hex(),
            ciphertext=sealed.hex(),
            content_hash=content_hash(plaintext),
        )

    def decrypt(self, payload: EncryptedPayload, recipient_private_key: str) -> str:
        if payload.version != config.ECIES_VERSION:
            raise IntegrityFailureError(f"unsupported payload version {payload.version}")

        private_key = self.codec.decode_private(recipient_private_key)
        ephemeral = self.codec.decode_public(payload.ephemeral_public_key)
        key = self._derive_key(private_key, ephemeral)

        try:
            iv = bytes.fromhex(payload.iv)
            sealed = bytes.fromhex(payload.ciphertext)
        except ValueError:
            raise IntegrityFailureError("payload is not valid hex")

        try:
            plaintext = AESGCM(key).decrypt(iv, sealed, None).decode("utf-8")
        except InvalidTag:
            raise IntegrityFailureError("authentication tag mismatch")

        if content_hash(plaintext) != payload.content_hash:
            raise IntegrityFailureError("content hash mismatch")
        return plaintext

    def seal_with_recovery(
        self,
        plaintext: str,
        recipient_public_key: str,
        recovery_public_key: Optional[str],
    ) -> tuple[EncryptedPayload, Optional[EncryptedPayload]]:
        """Seal for the recipient and, when configured, independently for the recovery key.

        A failing recovery seal is logged and dropped; the primary payload is
        always returned.
        """
        primary = self.encrypt(plaintext, recipient_public_key)
        if not recovery_public_key:
            return primary, None

        try:
            recovery = self.encrypt(plaintext, recovery_public_key)
        except InvalidKeyError as e:
            logger.warning("recovery_seal_failed detail=%s", e.detail)
            return primary, None
        return primary, recovery
