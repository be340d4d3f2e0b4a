import pytest

from crypto.primitives import generate_rsa_keypair, serialize_private_key, serialize_public_key
from server.config import Settings


@pytest.fixture(scope="session")
def alice_keys():
    """Alice's key pair as PEM (private, public)"""
    private_key, public_key = generate_rsa_keypair()
    return serialize_private_key(private_key), serialize_public_key(public_key)


@pytest.fixture(scope="session")
def bob_keys():
    """Bob's key pair as PEM (private, public)"""
    private_key, public_key = generate_rsa_keypair()
    return serialize_private_key(private_key), serialize_public_key(public_key)


@pytest.fixture
def settings(tmp_path):
    """Server settings backed by a fresh SQLite file"""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}",
        jwt_secret="test-secret",
    )
