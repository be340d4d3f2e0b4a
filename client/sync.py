"""
Client-side polling loop.

Keeps a local, newest-first list of decrypted messages in step with the
server: a history load until one succeeds, then a pending-queue drain on
every tick of a fixed interval.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple, Union

import httpx
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from crypto.envelope import DECRYPTION_FAILED, open_or_sentinel
from crypto.primitives import PemLike, deserialize_private_key

from .api import DeliveryClient, DeliveryError, Envelope
from .storage import EncryptedStorage

logger = logging.getLogger("securechat.client.sync")

DEFAULT_POLL_INTERVAL = 3.0


@dataclass(frozen=True)
class ReceivedMessage:
    """A message after local decryption"""
    sender: str
    text: str
    timestamp: int

    @property
    def decrypted(self) -> bool:
        return self.text != DECRYPTION_FAILED

    def to_dict(self) -> dict:
        return {'sender': self.sender, 'content': self.text, 'timestamp': self.timestamp}


class SyncState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    STOPPED = "stopped"


def _envelope_key(envelope: Envelope) -> Tuple[str, int, str]:
    # The wrapped key is fresh random per message
    return envelope.sender, envelope.timestamp, envelope.encrypted_aes_key


class ClientSync:
    """
    Periodic mailbox sync for one logged-in identity.

    Only one sync runs at a time; a tick that fires while the previous one
    is still waiting on the network is skipped.

    Args:
        api: Logged-in DeliveryClient
        private_key: Our RSA private key (object or PEM)
        poll_interval: Seconds between pending-queue polls
        storage: Optional local storage; seeds the message list and receives
            every new batch
        on_messages: Optional callback for each new batch (arrival order)
    """

    def __init__(self, api: DeliveryClient, private_key: Union[RSAPrivateKey, PemLike],
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 storage: Optional[EncryptedStorage] = None,
                 on_messages: Optional[Callable[[List[ReceivedMessage]], None]] = None):
        if not isinstance(private_key, RSAPrivateKey):
            private_key = deserialize_private_key(private_key)

        self.api = api
        self.poll_interval = poll_interval
        self.storage = storage
        self.on_messages = on_messages
        self.messages: List[ReceivedMessage] = []
        self.state = SyncState.STOPPED

        if storage:
            self.messages = [
                ReceivedMessage(sender=m["sender"], text=m["content"], timestamp=m["timestamp"])
                for m in storage.get_messages(limit=None)
            ]

        self._private_key = private_key
        self._seen: Set[Tuple[str, int, str]] = set()
        self._history_loaded = False
        self._syncing = False
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._timer is not None

    @property
    def syncing(self) -> bool:
        return self._syncing

    def decrypt_batch(self, envelopes: Iterable[Envelope]) -> List[ReceivedMessage]:
        """
        Decrypt envelopes with our private key.

        A message that fails to decrypt becomes DECRYPTION_FAILED; the rest
        of the batch is unaffected.
        """
        batch = []
        for envelope in envelopes:
            text = open_or_sentinel(envelope.encrypted_message, envelope.encrypted_aes_key, self._private_key)
            if text == DECRYPTION_FAILED:
                logger.warning("Could not decrypt message from %s at %d", envelope.sender, envelope.timestamp)
            batch.append(ReceivedMessage(sender=envelope.sender, text=text, timestamp=envelope.timestamp))
        return batch

    async def load_history(self) -> List[ReceivedMessage]:
        """Replace the local list with the full server history"""
        envelopes = await self.api.fetch_history()
        batch = self.decrypt_batch(envelopes)

        self._seen = {_envelope_key(e) for e in envelopes}
        self.messages = list(reversed(batch))
        self._history_loaded = True
        if self.storage:
            self.storage.replace_messages([m.to_dict() for m in batch])

        logger.info("Loaded %d message(s) from history", len(batch))
        return batch

    async def poll_once(self) -> List[ReceivedMessage]:
        """
        Drain the pending queue and prepend the new messages.

        Envelopes already loaded from history are dropped.
        """
        envelopes = [e for e in await self.api.fetch_pending() if _envelope_key(e) not in self._seen]
        if not envelopes:
            return []

        self._seen.update(_envelope_key(e) for e in envelopes)
        batch = self.decrypt_batch(envelopes)
        self.messages[:0] = reversed(batch)

        if self.storage:
            self.storage.save_messages([m.to_dict() for m in batch])
        if self.on_messages:
            self.on_messages(batch)
        return batch

    async def _guarded(self, step: Callable[[], Awaitable[List[ReceivedMessage]]]) -> bool:
        if self._syncing:
            logger.debug("Sync already in progress, skipping")
            return False

        self._syncing = True
        self.state = SyncState.SYNCING
        try:
            await step()
            return True
        except (httpx.HTTPError, DeliveryError) as e:
            # Retried on the next tick
            logger.warning("Sync failed: %s", e)
            return False
        finally:
            self._syncing = False
            self.state = SyncState.IDLE if self.running else SyncState.STOPPED

    async def _catch_up(self) -> List[ReceivedMessage]:
        # History first, until one load has succeeded; pending after that
        if not self._history_loaded:
            await self.load_history()
        return await self.poll_once()

    async def sync_now(self) -> bool:
        """
        Poll immediately.

        Returns:
            True if a poll ran and succeeded
        """
        return await self._guarded(self.poll_once)

    def reload_history(self):
        """Make the next tick replace the local list with the server history"""
        self._history_loaded = False

    async def start(self):
        """
        Load history, poll once, then keep polling every poll_interval.

        Network failures during this first sync are retried by the timer.
        Anything else propagates and no timer is left behind.
        """
        if self.running:
            return

        await self._guarded(self._catch_up)
        self._timer = asyncio.create_task(self._timer_loop())
        self.state = SyncState.IDLE

    async def _tick(self):
        try:
            await self._guarded(self._catch_up)
        except Exception:
            logger.exception("Unexpected error during sync")

    async def _timer_loop(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            if self._syncing:
                continue
            self._in_flight = asyncio.create_task(self._tick())

    async def stop(self):
        """
        Stop polling.

        The timer is cancelled; a poll already waiting on the network is
        allowed to finish, and nothing new is scheduled.
        """
        timer, self._timer = self._timer, None
        if timer:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass

        in_flight, self._in_flight = self._in_flight, None
        if in_flight and not in_flight.done():
            await in_flight

        self.state = SyncState.STOPPED
