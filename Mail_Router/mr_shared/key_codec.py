from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from Mail_Router.mr_shared import config
from Mail_Router.mr_shared.errors import InvalidKeyError


class KeyCodec:
    """Hex encoding of P-256 keys.

    Public keys travel as the 65-byte uncompressed point (``04 || X || Y``),
    private keys as the 32-byte big-endian scalar. Both accept an optional
    ``0x`` prefix on decode.
    """

    curve = ec.SECP256R1()

    @staticmethod
    def _unhex(value: str, expected_size: int, what: str) -> bytes:
        if not isinstance(value, str):
            raise InvalidKeyError(f"{what} must be a hex string")
        value = value.strip()
        if value.startswith(("0x", "0X")):
            value = value[2:]
        try:
            raw = bytes.fromhex(value)
        except ValueError:
            raise InvalidKeyError(f"{what} is not valid hex")
        if len(raw) != expected_size:
            raise InvalidKeyError(f"{what} must be {expected_size} bytes, got {len(raw)}")
        return raw

    def encode_public(self, key: ec.EllipticCurvePublicKey) -> str:
        return key.public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint,
        ).hex()

    def decode_public(self, value: str) -> ec.EllipticCurvePublicKey:
        raw = self._unhex(value, config.P256_PUBLIC_KEY_SIZE, "public key")
        if raw[0] != 0x04:
            raise InvalidKeyError("public key must be an uncompressed point")
        try:
            return ec.EllipticCurvePublicKey.from_encoded_point(self.curve, raw)
        except ValueError:
            raise InvalidKeyError("public key is not a point on P-256")

    def encode_private(self, key: ec.EllipticCurvePrivateKey) -> str:
        scalar = key.private_numbers().private_value
        return scalar.to_bytes(config.P256_PRIVATE_KEY_SIZE, "big").hex()

    def decode_private(self, value: str) -> ec.EllipticCurvePrivateKey:
        raw = self._unhex(value, config.P256_PRIVATE_KEY_SIZE, "private key")
        try:
            return ec.derive_private_key(int.from_bytes(raw, "big"), self.curve)
        except ValueError:
            raise InvalidKeyError("private key scalar out of range")

    def normalize_public(self, value: str) -> str:
        """Validate and return the canonical lowercase hex form."""
        return self.encode_public(self.decode_public(value))
