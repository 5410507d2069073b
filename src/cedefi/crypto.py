"""
Signing, verification and identifier helpers.
Uses hashlib for SHA-256 and the cryptography library for ECDSA.
"""
import base64
import hashlib
import re

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

# did:<namespace>:<identifier...>
DID_PATTERN = re.compile(r"^did:[a-z0-9]+:\S+$")


def is_valid_did(value: str) -> bool:
    """Check a string against the did:<namespace>:... scheme."""
    return bool(value) and DID_PATTERN.match(value) is not None


def public_key_bytes(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )


def public_key_hex(public_key: ec.EllipticCurvePublicKey) -> str:
    return "0x" + public_key_bytes(public_key).hex()


def address_for(public_key: ec.EllipticCurvePublicKey) -> str:
    """
    Short account address for a public key: last 20 bytes of the SHA-256
    digest of the uncompressed point (without its 0x04 prefix).
    """
    digest = hashlib.sha256(public_key_bytes(public_key)[1:]).hexdigest()
    return "0x" + digest[-40:]


def sign_message(private_key: ec.EllipticCurvePrivateKey, message: str) -> str:
    """Sign a message with ECDSA/SHA-256; returns the DER signature in base64."""
    signature = private_key.sign(message.encode('utf-8'), ec.ECDSA(hashes.SHA256()))
    return base64.b64encode(signature).decode()


def verify_message(public_key: ec.EllipticCurvePublicKey, message: str, signature_b64: str) -> bool:
    try:
        public_key.verify(
            base64.b64decode(signature_b64),
            message.encode('utf-8'),
            ec.ECDSA(hashes.SHA256())
        )
        return True
    except (InvalidSignature, ValueError):
        return False
