"""
Cryptographic Primitives for Hybrid Encryption

This module provides the foundational operations used by the message
envelope: RSA key pairs, RSA-OAEP key wrapping and AES-256-CBC bulk
encryption.
"""

import os
from typing import Tuple, Union
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


AES_KEY_SIZE = 32  # AES-256
IV_SIZE = 16  # AES block size
RSA_PUBLIC_EXPONENT = 65537
MIN_RSA_KEY_SIZE = 2048

PemLike = Union[str, bytes]


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class DecryptionError(CryptoError):
    """Raised when a ciphertext or wrapped key cannot be decrypted"""
    pass


class KeyGenerationError(CryptoError):
    """Raised when key material cannot be generated"""
    pass


def generate_rsa_keypair(key_size: int = MIN_RSA_KEY_SIZE) -> Tuple[RSAPrivateKey, RSAPublicKey]:
    """
    Generate an RSA keypair for wrapping message keys.

    Args:
        key_size: Modulus length in bits (at least 2048)

    Returns:
        Tuple of (private_key, public_key)

    Raises:
        KeyGenerationError: If the key size is too weak or generation fails
    """
    if key_size < MIN_RSA_KEY_SIZE:
        raise KeyGenerationError(f"RSA key size {key_size} is below {MIN_RSA_KEY_SIZE} bits")

    try:
        private_key = rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=key_size,
        )
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyGenerationError(f"RSA key generation failed: {e}") from e

    return private_key, private_key.public_key()


def generate_aes_key() -> bytes:
    """Generate a fresh one-time 256-bit AES key"""
    return os.urandom(AES_KEY_SIZE)


def aes_cbc_encrypt(key: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt data using AES-256-CBC with PKCS7 padding.

    Args:
        key: 32-byte encryption key
        plaintext: Data to encrypt

    Returns:
        iv (16 bytes) + ciphertext
    """
    iv = os.urandom(IV_SIZE)
    padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return iv + encryptor.update(padded) + encryptor.finalize()


def aes_cbc_decrypt(key: bytes, data: bytes) -> bytes:
    """
    Decrypt data produced by aes_cbc_encrypt.

    Args:
        key: 32-byte encryption key
        data: iv + ciphertext

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionError: If the input is truncated, misaligned or badly padded
    """
    if len(key) != AES_KEY_SIZE:
        raise DecryptionError(f"Invalid AES key length: {len(key)}")

    # IV plus at least one block
    if len(data) < IV_SIZE + IV_SIZE or (len(data) - IV_SIZE) % IV_SIZE:
        raise DecryptionError("Ciphertext truncated or misaligned")

    iv = data[:IV_SIZE]
    ciphertext = data[IV_SIZE:]

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError(f"Decryption failed: {e}") from e


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def rsa_wrap_key(public_key: RSAPublicKey, key: bytes) -> bytes:
    """
    Encrypt a symmetric key with RSA-OAEP.

    Args:
        public_key: Recipient's RSA public key
        key: Symmetric key to protect

    Returns:
        Wrapped key bytes
    """
    return public_key.encrypt(key, _oaep())


def rsa_unwrap_key(private_key: RSAPrivateKey, wrapped: bytes) -> bytes:
    """
    Decrypt a symmetric key wrapped with rsa_wrap_key.

    Raises:
        DecryptionError: If the wrapped key does not match the private key
    """
    try:
        return private_key.decrypt(wrapped, _oaep())
    except ValueError as e:
        raise DecryptionError(f"Key unwrap failed: {e}") from e


def serialize_public_key(public_key: RSAPublicKey) -> str:
    """Serialize RSA public key to SPKI PEM text"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")


def deserialize_public_key(pem: PemLike) -> RSAPublicKey:
    """Deserialize SPKI PEM text to an RSA public key"""
    if isinstance(pem, str):
        pem = pem.encode("ascii")
    try:
        key = serialization.load_pem_public_key(pem)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise CryptoError(f"Invalid public key: {e}") from e
    if not isinstance(key, RSAPublicKey):
        raise CryptoError("Public key is not an RSA key")
    return key


def serialize_private_key(private_key: RSAPrivateKey) -> str:
    """Serialize RSA private key to unencrypted PKCS8 PEM text"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode("ascii")


def deserialize_private_key(pem: PemLike) -> RSAPrivateKey:
    """Deserialize PKCS8 PEM text to an RSA private key"""
    if isinstance(pem, str):
        pem = pem.encode("ascii")
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CryptoError(f"Invalid private key: {e}") from e
    if not isinstance(key, RSAPrivateKey):
        raise CryptoError("Private key is not an RSA key")
    return key

