"""
Tests for the pending queue / history store and the delivery service.
"""

import asyncio
import base64
import gc

import pytest

from server.database import Database
from server.delivery import DeliveryService, NotFoundError, ValidationError
from server.store import MessageStore

BODY = base64.b64encode(b"\x00" * 32).decode()
KEY = base64.b64encode(b"\x01" * 256).decode()


def run(coro):
    return asyncio.run(coro)


async def make_store(settings):
    db = Database(settings.database_url)
    await db.create_tables()
    return db, MessageStore(db)


def test_append_lands_in_queue_and_history(settings):
    async def scenario():
        db, store = await make_store(settings)
        try:
            envelope = await store.append("bbbb2222", "aaaa1111", BODY, KEY)
            assert envelope.sender == "aaaa1111"
            assert envelope.timestamp > 0

            assert await store.pending_count("bbbb2222") == 1
            history = await store.read_history("bbbb2222")
            assert history == [envelope]
            assert await store.read_history("aaaa1111") == []
        finally:
            await db.close()

    run(scenario())


def test_drain_twice(settings):
    """Second drain with no new appends is empty"""
    async def scenario():
        db, store = await make_store(settings)
        try:
            await store.append("bbbb2222", "aaaa1111", BODY, KEY)
            await store.append("bbbb2222", "cccc3333", BODY, KEY)

            first = await store.drain_pending("bbbb2222")
            second = await store.drain_pending("bbbb2222")

            assert [e.sender for e in first] == ["aaaa1111", "cccc3333"]
            assert second == []
            assert len(await store.read_history("bbbb2222")) == 2
        finally:
            await db.close()

    run(scenario())


def test_drained_batches_equal_history(settings):
    """Interleaved appends and drains: drained union == history, in order"""
    async def scenario():
        db, store = await make_store(settings)
        try:
            drained = []
            for i in range(12):
                await store.append("bbbb2222", f"s{i:07d}", BODY, KEY)
                if i % 3 == 2:
                    drained.extend(await store.drain_pending("bbbb2222"))
            drained.extend(await store.drain_pending("bbbb2222"))

            history = await store.read_history("bbbb2222")
            assert drained == history
            assert [e.sender for e in history] == [f"s{i:07d}" for i in range(12)]
        finally:
            await db.close()

    run(scenario())


def test_concurrent_drains_never_double_deliver(settings):
    async def scenario():
        db, store = await make_store(settings)
        try:
            async def producer():
                for i in range(20):
                    await store.append("bbbb2222", f"p{i:07d}", BODY, KEY)
                    await asyncio.sleep(0)

            async def consumer():
                batches = []
                for _ in range(10):
                    batches.extend(await store.drain_pending("bbbb2222"))
                    await asyncio.sleep(0)
                return batches

            results = await asyncio.gather(producer(), consumer(), consumer(), consumer())
            drained = [e for batch in results[1:] for e in batch]
            drained.extend(await store.drain_pending("bbbb2222"))

            history = await store.read_history("bbbb2222")
            assert len(drained) == len(history) == 20
            assert sorted(e.sender for e in drained) == [e.sender for e in history]
            # Each consumer sees its own batches in arrival order
            for batch in results[1:]:
                assert [e.sender for e in batch] == sorted(e.sender for e in batch)
        finally:
            await db.close()

    run(scenario())


def test_idle_recipient_locks_are_released(settings):
    async def scenario():
        db, store = await make_store(settings)
        try:
            for i in range(5):
                recipient = f"r{i:07d}"
                await store.append(recipient, "aaaa1111", BODY, KEY)
                await store.drain_pending(recipient)

            gc.collect()
            assert len(store._locks) == 0
            assert await store.pending_count("r0000000") == 0
        finally:
            await db.close()

    run(scenario())


def test_delivery_rejects_unknown_recipient(settings):
    async def scenario():
        db, store = await make_store(settings)
        delivery = DeliveryService(db, store)
        try:
            with pytest.raises(NotFoundError):
                await delivery.submit("aaaa1111", "zzzz9999", BODY, KEY)
            assert await store.read_history("zzzz9999") == []

            with pytest.raises(NotFoundError):
                await delivery.lookup_public_key("zzzz9999")
        finally:
            await db.close()

    run(scenario())


def test_delivery_validates_fields(settings):
    async def scenario():
        db, store = await make_store(settings)
        delivery = DeliveryService(db, store)
        try:
            await db.create_user("bbbb2222", "b@example.com", "222", "pw", "PEM")

            with pytest.raises(ValidationError):
                await delivery.submit("aaaa1111", "bbbb2222", "", KEY)
            with pytest.raises(ValidationError):
                await delivery.submit("aaaa1111", None, BODY, KEY)
            with pytest.raises(ValidationError):
                await delivery.submit("aaaa1111", "bbbb2222", "%%%", KEY)
            assert await store.read_history("bbbb2222") == []

            await delivery.submit("aaaa1111", "bbbb2222", BODY, KEY)
            assert len(await delivery.fetch_pending("bbbb2222")) == 1
            assert await delivery.fetch_pending("bbbb2222") == []
            assert len(await delivery.fetch_history("bbbb2222")) == 1
            assert await delivery.lookup_public_key("bbbb2222") == "PEM"
        finally:
            await db.close()

    run(scenario())
