"""
Bank signing key management.
Generates and stores the bank's ECDSA (secp256k1) keypair.
"""
import json
import os
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from cedefi.crypto import address_for, public_key_hex
from cedefi.logger import get_logger

logger = get_logger(__name__)


def load_private_key_pem(private_key_pem: str) -> ec.EllipticCurvePrivateKey:
    key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("Bank private key must be an elliptic curve key")
    return key


def get_or_create_bank_keypair(
    key_file: str,
    private_key_pem: Optional[str] = None,
) -> ec.EllipticCurvePrivateKey:
    """
    Get or create the bank's signing key.
    An explicit PEM wins; otherwise the key file is read, or created on first use.
    """
    if private_key_pem:
        return load_private_key_pem(private_key_pem)

    if os.path.exists(key_file):
        with open(key_file, 'r') as f:
            key_data = json.load(f)
            return load_private_key_pem(key_data['private_key'])

    logger.info("No private key provided, generating new bank keypair at %s", key_file)
    private_key = ec.generate_private_key(ec.SECP256K1())
    public_key = private_key.public_key()

    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode()

    public_key_pem = public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()

    with open(key_file, 'w') as f:
        json.dump({
            'private_key': private_key_pem,
            'public_key_pem': public_key_pem,
            'public_key_hex': public_key_hex(public_key),
            'address': address_for(public_key)
        }, f, indent=2)

    return private_key
