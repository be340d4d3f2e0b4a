"""
Identity key issuance.

An identity is an RSA key pair plus a short random code that other users
type (or scan) to address messages to its owner.
"""

import secrets
from dataclasses import dataclass
from typing import Callable

from .primitives import (
    MIN_RSA_KEY_SIZE,
    generate_rsa_keypair,
    serialize_private_key,
    serialize_public_key,
)


CODE_BYTES = 4  # 8 hex characters


@dataclass(frozen=True)
class IssuedIdentity:
    """
    Freshly generated identity material.

    Attributes:
        code: Unique 8-character hex identifier
        public_key: SPKI PEM public key
        private_key: PKCS8 PEM private key
    """
    code: str
    public_key: str
    private_key: str


def generate_code() -> str:
    """Generate a random identifier from a CSPRNG"""
    return secrets.token_hex(CODE_BYTES)


def generate_unique_code(is_taken: Callable[[str], bool]) -> str:
    """
    Draw identifiers until one is not already in use.

    Args:
        is_taken: Membership test against the live identifier set
    """
    code = generate_code()
    while is_taken(code):
        code = generate_code()
    return code


def issue_identity(is_taken: Callable[[str], bool],
                   key_size: int = MIN_RSA_KEY_SIZE) -> IssuedIdentity:
    """
    Generate a key pair and a unique identifier for a new account.

    Persisting the result is up to the caller.

    Args:
        is_taken: Membership test against the live identifier set
        key_size: RSA modulus length in bits

    Returns:
        IssuedIdentity

    Raises:
        KeyGenerationError: If key generation is not possible
    """
    private_key, public_key = generate_rsa_keypair(key_size)
    return IssuedIdentity(
        code=generate_unique_code(is_taken),
        public_key=serialize_public_key(public_key),
        private_key=serialize_private_key(private_key),
    )
