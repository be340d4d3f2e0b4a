"""
Hybrid encryption envelope.

Every message is encrypted with a fresh one-time AES-256 key; that key is
wrapped with the recipient's RSA public key. Only the holder of the matching
private key can unwrap it and read the message.

Wire format (both fields base64 text):
    encrypted_message  = base64(iv[16] + AES-256-CBC(PKCS7(plaintext)))
    encrypted_aes_key  = base64(RSA-OAEP(aes_key))
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Union

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from .primitives import (
    DecryptionError,
    CryptoError,
    PemLike,
    aes_cbc_decrypt,
    aes_cbc_encrypt,
    deserialize_private_key,
    deserialize_public_key,
    generate_aes_key,
    rsa_unwrap_key,
    rsa_wrap_key,
)


DECRYPTION_FAILED = "[Decryption failed]"


@dataclass(frozen=True)
class SealedMessage:
    """Transport form of one encrypted message"""
    encrypted_message: str
    encrypted_aes_key: str

    def to_dict(self) -> dict:
        """Convert to the send-message request fields"""
        return {
            'encryptedMessage': self.encrypted_message,
            'encryptedAESKey': self.encrypted_aes_key,
        }


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError(f"Invalid base64 in {what}") from e


def seal(plaintext: bytes, recipient_public_key: Union[RSAPublicKey, PemLike]) -> SealedMessage:
    """
    Encrypt a message so only the recipient can read it.

    Each call draws a new AES key and IV; nothing is cached between calls.

    Args:
        plaintext: Message bytes
        recipient_public_key: RSA public key object or its PEM text

    Returns:
        SealedMessage with base64 body and wrapped key
    """
    if not isinstance(recipient_public_key, RSAPublicKey):
        recipient_public_key = deserialize_public_key(recipient_public_key)

    aes_key = generate_aes_key()
    body = aes_cbc_encrypt(aes_key, plaintext)
    wrapped = rsa_wrap_key(recipient_public_key, aes_key)

    return SealedMessage(
        encrypted_message=base64.b64encode(body).decode("ascii"),
        encrypted_aes_key=base64.b64encode(wrapped).decode("ascii"),
    )


def unseal(encrypted_message: str, encrypted_aes_key: str,
           recipient_private_key: Union[RSAPrivateKey, PemLike]) -> bytes:
    """
    Decrypt a message produced by seal().

    Args:
        encrypted_message: base64(iv + ciphertext)
        encrypted_aes_key: base64 RSA-OAEP wrapped AES key
        recipient_private_key: RSA private key object or its PEM text

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionError: On malformed input, a foreign key or bad padding
    """
    if not isinstance(recipient_private_key, RSAPrivateKey):
        try:
            recipient_private_key = deserialize_private_key(recipient_private_key)
        except CryptoError as e:
            raise DecryptionError(str(e)) from e

    wrapped = _b64decode(encrypted_aes_key, "encrypted AES key")
    aes_key = rsa_unwrap_key(recipient_private_key, wrapped)

    body = _b64decode(encrypted_message, "encrypted message")
    return aes_cbc_decrypt(aes_key, body)


def open_text(encrypted_message: str, encrypted_aes_key: str,
              recipient_private_key: Union[RSAPrivateKey, PemLike]) -> str:
    """Decrypt a message and decode it as UTF-8 text"""
    plaintext = unseal(encrypted_message, encrypted_aes_key, recipient_private_key)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Message is not valid UTF-8") from e


def open_or_sentinel(encrypted_message: str, encrypted_aes_key: str,
                     recipient_private_key: Union[RSAPrivateKey, PemLike]) -> str:
    """Like open_text(), but returns DECRYPTION_FAILED instead of raising"""
    try:
        return open_text(encrypted_message, encrypted_aes_key, recipient_private_key)
    except DecryptionError:
        return DECRYPTION_FAILED
