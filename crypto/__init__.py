"""
Cryptographic module for end-to-end encrypted messaging.

Implements hybrid encryption with:
- RSA-OAEP wrapping of a one-time message key
- AES-256-CBC encryption of the message body
"""

from .primitives import (
    generate_rsa_keypair,
    serialize_public_key,
    serialize_private_key,
    deserialize_public_key,
    deserialize_private_key,
    CryptoError,
    DecryptionError,
    KeyGenerationError
)
from .envelope import (
    SealedMessage,
    DECRYPTION_FAILED,
    seal,
    unseal,
    open_text,
    open_or_sentinel
)
from .keys import IssuedIdentity, issue_identity

__all__ = [
    'generate_rsa_keypair',
    'serialize_public_key',
    'serialize_private_key',
    'deserialize_public_key',
    'deserialize_private_key',
    'CryptoError',
    'DecryptionError',
    'KeyGenerationError',
    'SealedMessage',
    'DECRYPTION_FAILED',
    'seal',
    'unseal',
    'open_text',
    'open_or_sentinel',
    'IssuedIdentity',
    'issue_identity'
]
