"""
Per-recipient pending queue and message history.

Both containers are views over the messages table: history is every row
addressed to a recipient, the pending queue is the subset not yet drained.
A single insert therefore lands in both at once.
"""

import asyncio
import time
import weakref
from dataclasses import dataclass
from typing import List

from sqlalchemy import func, select, update

from .database import Database, StoredMessage
from .logger import get_logger

logger = get_logger("store")


@dataclass(frozen=True)
class StoredEnvelope:
    """An encrypted message as held by the server"""
    sender: str
    encrypted_message: str
    encrypted_aes_key: str
    timestamp: int

    @classmethod
    def from_row(cls, row: StoredMessage) -> "StoredEnvelope":
        return cls(
            sender=row.sender_code,
            encrypted_message=row.encrypted_message,
            encrypted_aes_key=row.encrypted_aes_key,
            timestamp=row.timestamp,
        )

    def to_dict(self) -> dict:
        """Wire representation"""
        return {
            "from": self.sender,
            "encryptedMessage": self.encrypted_message,
            "encryptedAESKey": self.encrypted_aes_key,
            "timestamp": self.timestamp,
        }


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageStore:
    """
    Durable store-and-forward mailboxes.

    append() and drain_pending() on the same recipient are serialized by a
    lock owned by that recipient; other recipients are never blocked.
    read_history() takes no lock.
    """

    def __init__(self, db: Database):
        self.db = db
        # Entry lives only while some coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, recipient: str) -> asyncio.Lock:
        lock = self._locks.get(recipient)
        if lock is None:
            lock = self._locks.setdefault(recipient, asyncio.Lock())
        return lock

    async def append(self, recipient: str, sender: str,
                     encrypted_message: str, encrypted_aes_key: str) -> StoredEnvelope:
        """
        Add a message to the recipient's pending queue and history.

        Args:
            recipient: Recipient code
            sender: Sender code
            encrypted_message: base64 body
            encrypted_aes_key: base64 wrapped key

        Returns:
            The stored envelope with its server-assigned timestamp
        """
        row = StoredMessage(
            recipient_code=recipient,
            sender_code=sender,
            encrypted_message=encrypted_message,
            encrypted_aes_key=encrypted_aes_key,
            timestamp=now_ms(),
            pending=True
        )

        async with self._lock_for(recipient):
            async with self.db.async_session() as session:
                async with session.begin():
                    session.add(row)

        return StoredEnvelope.from_row(row)

    async def drain_pending(self, recipient: str) -> List[StoredEnvelope]:
        """
        Take every pending message for a recipient, leaving the queue empty.

        Selecting the batch and clearing it happen in one transaction under
        the recipient's lock, so concurrent drains never see the same row.

        Returns:
            Pending envelopes in arrival order
        """
        async with self._lock_for(recipient):
            async with self.db.async_session() as session:
                async with session.begin():
                    result = await session.execute(
                        select(StoredMessage)
                        .where(StoredMessage.recipient_code == recipient,
                               StoredMessage.pending.is_(True))
                        .order_by(StoredMessage.id)
                    )
                    rows = list(result.scalars().all())
                    if not rows:
                        return []

                    await session.execute(
                        update(StoredMessage)
                        .where(StoredMessage.recipient_code == recipient,
                               StoredMessage.pending.is_(True),
                               StoredMessage.id <= rows[-1].id)
                        .values(pending=False)
                    )

        logger.debug("Drained %d message(s) for %s", len(rows), recipient)
        return [StoredEnvelope.from_row(row) for row in rows]

    async def read_history(self, recipient: str) -> List[StoredEnvelope]:
        """
        Get every message ever addressed to a recipient.

        Returns:
            Envelopes in arrival order
        """
        async with self.db.async_session() as session:
            result = await session.execute(
                select(StoredMessage)
                .where(StoredMessage.recipient_code == recipient)
                .order_by(StoredMessage.id)
            )
            return [StoredEnvelope.from_row(row) for row in result.scalars().all()]

    async def pending_count(self, recipient: str) -> int:
        """Number of messages waiting in the recipient's queue"""
        async with self.db.async_session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(StoredMessage)
                .where(StoredMessage.recipient_code == recipient,
                       StoredMessage.pending.is_(True))
            )
            return result.scalar_one()
