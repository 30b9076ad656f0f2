import hashlib
import json
import time
from typing import Optional

import nacl.encoding
import nacl.exceptions
import nacl.signing

from Mail_Router.mr_shared.errors import InvalidKeyError

SIGNATURE_MAX_AGE_SECONDS = 300
ED25519_KEY_SIZE = 32
ED25519_SIG_SIZE = 64
UNSIGNED_FIELDS = frozenset({"action", "signature", "signedAt", "signed_at"})


def params_digest(params: Optional[dict] = None) -> str:
    """SHA-256 over the request fields as sent, minus the action and signature fields."""
    body = {k: v for k, v in (params or {}).items() if k not in UNSIGNED_FIELDS}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode()).hexdigest()


def signing_message(action: str, identity: str, signed_at: int, params: Optional[dict] = None) -> bytes:
    return f"{action}:{identity}:{signed_at}:{params_digest(params)}".encode()


def normalize_owner_key(owner_key_hex: str) -> str:
    """Validate an Ed25519 verify key given as hex and return it lowercased."""
    try:
        raw = bytes.fromhex(owner_key_hex.removeprefix("0x"))
    except (ValueError, AttributeError):
        raise InvalidKeyError("owner key is not valid hex")
    if len(raw) != ED25519_KEY_SIZE:
        raise InvalidKeyError(f"owner key must be {ED25519_KEY_SIZE} bytes, got {len(raw)}")
    return raw.hex()


def sign_action(
    signing_key_hex: str,
    action: str,
    identity: str,
    signed_at: Optional[int] = None,
    params: Optional[dict] = None,
) -> tuple[str, int]:
    """Client-side helper: returns ``(signature_hex, signed_at)``.

    ``params`` is the request body exactly as it will be sent.
    """
    if signed_at is None:
        signed_at = int(time.time() * 1000)
    key = nacl.signing.SigningKey(signing_key_hex, encoder=nacl.encoding.HexEncoder)
    signed = key.sign(signing_message(action, identity, signed_at, params))
    return signed.signature.hex(), signed_at


def verify_action(
    owner_key_hex: str,
    action: str,
    identity: str,
    signed_at: int,
    signature_hex: str,
    params: Optional[dict] = None,
    max_age_seconds: int = SIGNATURE_MAX_AGE_SECONDS,
) -> bool:
    now_ms = int(time.time() * 1000)
    if abs(now_ms - signed_at) > max_age_seconds * 1000:
        return False

    try:
        signature = bytes.fromhex(signature_hex.removeprefix("0x"))
        verify_key = nacl.signing.VerifyKey(owner_key_hex, encoder=nacl.encoding.HexEncoder)
    except (ValueError, TypeError, nacl.exceptions.ValueError, nacl.exceptions.TypeError):
        return False
    if len(signature) != ED25519_SIG_SIZE:
        return False

    try:
        verify_key.verify(signing_message(action, identity, signed_at, params), signature)
    except nacl.exceptions.BadSignatureError:
        return False
    return True
