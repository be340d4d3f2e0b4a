"""
Delivery service: the network-facing mailbox operations.

Submitting, draining, history and public-key lookup, each working on
identity codes that the caller has already authenticated.
"""

import base64
import binascii
from typing import List, Optional

from .database import Database
from .logger import get_logger
from .store import MessageStore, StoredEnvelope

logger = get_logger("delivery")


class DeliveryError(Exception):
    """Base exception for request errors surfaced to the caller"""
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(DeliveryError):
    """Missing or malformed request fields"""
    status_code = 400


class NotFoundError(DeliveryError):
    """Unknown recipient or identifier"""
    status_code = 404


class ConflictError(DeliveryError):
    """Unique field already registered"""
    status_code = 409


def _require_base64(value: str, field: str):
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"{field} must be base64.") from e


class DeliveryService:
    """Store-and-forward operations on top of MessageStore"""

    def __init__(self, db: Database, store: MessageStore):
        self.db = db
        self.store = store

    async def lookup_public_key(self, code: str) -> str:
        """
        Get the public key registered for an identity.

        Raises:
            NotFoundError: If no identity has this code
        """
        user = await self.db.get_user(code)
        if not user:
            raise NotFoundError("User not found.")
        return user.public_key

    async def submit(self, sender: str, recipient: Optional[str],
                     encrypted_message: Optional[str],
                     encrypted_aes_key: Optional[str]) -> StoredEnvelope:
        """
        Accept an encrypted message for delivery.

        Args:
            sender: Authenticated sender code
            recipient: Recipient code
            encrypted_message: base64(iv + ciphertext)
            encrypted_aes_key: base64 wrapped AES key

        Returns:
            The stored envelope

        Raises:
            ValidationError: If a field is missing or not base64
            NotFoundError: If the recipient does not exist
        """
        if not recipient or not encrypted_message or not encrypted_aes_key:
            raise ValidationError("All fields are required.")

        _require_base64(encrypted_message, "encryptedMessage")
        _require_base64(encrypted_aes_key, "encryptedAESKey")

        if not await self.db.get_user(recipient):
            logger.info("Rejected message from %s to unknown recipient %s", sender, recipient)
            raise NotFoundError("Recipient not found.")

        envelope = await self.store.append(recipient, sender, encrypted_message, encrypted_aes_key)
        logger.info("Queued message from %s to %s", sender, recipient)
        return envelope

    async def fetch_pending(self, caller: str) -> List[StoredEnvelope]:
        """
        Drain the caller's pending queue.

        Every successful call empties the queue; history is the only way
        to get those messages again.
        """
        messages = await self.store.drain_pending(caller)
        if messages:
            logger.info("Delivered %d pending message(s) to %s", len(messages), caller)
        return messages

    async def fetch_history(self, caller: str) -> List[StoredEnvelope]:
        """Read every message ever addressed to the caller"""
        return await self.store.read_history(caller)
