"""
Account registration and login.

Registration issues the identity's key pair and code; login exchanges
a code and password for a session token.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from crypto.keys import IssuedIdentity, issue_identity

from .auth import create_access_token
from .config import Settings
from .database import Database, User
from .delivery import ConflictError, ValidationError
from .logger import get_logger

logger = get_logger("accounts")


class AuthError(Exception):
    """Invalid credentials"""
    pass


@dataclass
class Registration:
    """Result of a successful registration"""
    user: User
    identity: IssuedIdentity


class AccountService:
    """Creates identities and authenticates them"""

    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings
        # Serializes "pick an unused code" with "insert it"
        self._register_lock = asyncio.Lock()

    async def register(self, email: Optional[str], phone: Optional[str],
                       password: Optional[str]) -> Registration:
        """
        Create a new identity.

        Raises:
            ValidationError: If a field is missing
            ConflictError: If the email or phone is already registered
            KeyGenerationError: If the key pair cannot be generated
        """
        if not email or not phone or not password:
            raise ValidationError("All fields are required.")

        async with self._register_lock:
            conflict = await self.db.find_conflict(email, phone)
            if conflict == "email":
                raise ConflictError("Email already registered.")
            if conflict == "phone":
                raise ConflictError("Phone already registered.")

            taken = await self.db.list_codes()
            identity = await asyncio.to_thread(
                issue_identity, taken.__contains__, self.settings.rsa_key_size
            )

            user = await self.db.create_user(
                code=identity.code,
                email=email,
                phone=phone,
                password=password,
                public_key=identity.public_key,
                private_key=identity.private_key if self.settings.retain_private_keys else None
            )

        logger.info("Registered identity %s", user.code)
        return Registration(user=user, identity=identity)

    async def authenticate(self, code: Optional[str], password: Optional[str]) -> tuple[User, str]:
        """
        Check credentials and issue a session token.

        Returns:
            Tuple of (user, access_token)

        Raises:
            ValidationError: If a field is missing
            AuthError: If the code or password is wrong
        """
        if not code or not password:
            raise ValidationError("All fields are required.")

        user = await self.db.authenticate_user(code, password)
        if not user:
            logger.info("Failed login for %s", code)
            raise AuthError("Invalid code or password.")

        token = create_access_token(data={"sub": user.code}, settings=self.settings)
        return user, token
