"""
Database models and operations for the mailbox server.

Uses SQLAlchemy with SQLite for storing identities and encrypted messages.
Note: the server only ever sees ciphertext; message bodies are opaque here.
"""

from datetime import datetime, timezone
from typing import Optional, Set
from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, Text, Index, or_, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from passlib.context import CryptContext

Base = declarative_base()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """Registered identity"""
    __tablename__ = "users"

    code = Column(String(16), primary_key=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(32), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=False)  # SPKI PEM
    private_key = Column(Text, nullable=True)  # PKCS8 PEM, only if retained
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)


class StoredMessage(Base):
    """
    One encrypted message addressed to a recipient.

    Every row belongs to the recipient's history; rows with pending=True
    also form the recipient's pending queue. Arrival order is the id order.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_recipient_pending", "recipient_code", "pending"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_code = Column(String(16), index=True, nullable=False)
    sender_code = Column(String(16), nullable=False)
    encrypted_message = Column(Text, nullable=False)  # base64(iv + ciphertext)
    encrypted_aes_key = Column(Text, nullable=False)  # base64 RSA-OAEP
    timestamp = Column(BigInteger, nullable=False)  # ms since epoch
    pending = Column(Boolean, nullable=False, default=True)


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./chat.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Dispose of pooled connections"""
        await self.engine.dispose()

    async def list_codes(self) -> Set[str]:
        """
        Get the live identifier set.

        Returns:
            Set of every registered code
        """
        async with self.async_session() as session:
            result = await session.execute(select(User.code))
            return {row[0] for row in result.all()}

    async def find_conflict(self, email: str, phone: str) -> Optional[str]:
        """
        Check whether an email or phone number is already registered.

        Returns:
            "email", "phone" or None
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(User.email, User.phone).where(or_(User.email == email, User.phone == phone))
            )
            for existing_email, existing_phone in result.all():
                if existing_email == email:
                    return "email"
                if existing_phone == phone:
                    return "phone"
            return None

    async def create_user(self, code: str, email: str, phone: str, password: str,
                          public_key: str, private_key: Optional[str] = None) -> User:
        """
        Create a new identity.

        Args:
            code: Unique identifier issued for this identity
            email: Unique email address
            phone: Unique phone number
            password: Plain text password (will be hashed)
            public_key: SPKI PEM public key
            private_key: PKCS8 PEM private key, or None to not retain it

        Returns:
            Created User object
        """
        async with self.async_session() as session:
            user = User(
                code=code,
                email=email,
                phone=phone,
                hashed_password=User.hash_password(password),
                public_key=public_key,
                private_key=private_key
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, code: str) -> Optional[User]:
        """
        Get identity by code.

        Args:
            code: Identifier to look up

        Returns:
            User object or None if not found
        """
        async with self.async_session() as session:
            return await session.get(User, code)

    async def authenticate_user(self, code: str, password: str) -> Optional[User]:
        """
        Authenticate an identity.

        Args:
            code: Identifier
            password: Password to verify

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(code)
        if not user or not user.verify_password(password):
            return None
        return user
