"""Tests for the MongoDB-backed queue transport against a fake collection."""
import asyncio
import copy
from types import SimpleNamespace

import pytest
from pymongo.errors import DuplicateKeyError

from copilot_eval.models.queue import QueueMessage
from copilot_eval.services.queue_service import MongoQueueTransport
from copilot_eval.utils.errors import TransientExternalError


def _matches(doc, query):
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, branch) for branch in expected):
                return False
        elif isinstance(expected, dict) and "$lte" in expected:
            if doc.get(key) is None or doc[key] > expected["$lte"]:
                return False
        elif doc.get(key) != expected:
            return False
    return True


def _apply(doc, update):
    for key, amount in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + amount
    doc.update(update.get("$set", {}))


class FakeQueueCollection:
    """The motor collection calls MongoQueueTransport makes"""

    def __init__(self):
        self.docs = {}

    async def insert_one(self, doc):
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("duplicate key")
        self.docs[doc["_id"]] = copy.deepcopy(doc)

    async def find_one_and_update(self, query, update, sort=None, return_document=None):
        candidates = [d for d in self.docs.values() if _matches(d, query)]
        for key, _ in reversed(sort or []):
            candidates.sort(key=lambda d: d[key])
        if not candidates:
            return None
        _apply(candidates[0], update)
        return copy.deepcopy(candidates[0])

    async def update_one(self, query, update):
        for doc in self.docs.values():
            if _matches(doc, query):
                _apply(doc, update)
                return SimpleNamespace(matched_count=1)
        return SimpleNamespace(matched_count=0)

    async def delete_one(self, query):
        for key, doc in list(self.docs.items()):
            if _matches(doc, query):
                del self.docs[key]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)


@pytest.fixture
def collection():
    return FakeQueueCollection()


@pytest.fixture
def make_queue(collection):
    def _make(lock_duration_seconds=30):
        db_service = SimpleNamespace(db={"queue": collection})
        return MongoQueueTransport(db_service, queue_name="jobs", collection_name="queue",
                                   lock_duration_seconds=lock_duration_seconds, poll_interval_seconds=0.01)
    return _make


async def test_receive_claims_and_complete_deletes(make_queue, collection):
    queue = make_queue()
    await queue.send(QueueMessage(body="{}", message_id="m-1", subject="job_created",
                                  application_properties={"job_id": "job-1"}))

    [received] = await queue.receive(max_messages=5, wait_seconds=0)
    assert received.message_id == "m-1"
    assert received.delivery_count == 1
    assert received.subject == "job_created"
    assert received.application_properties == {"job_id": "job-1"}
    assert collection.docs["m-1"]["lock_token"] == received.lock_token

    # Locked documents cannot be claimed again
    assert await queue.receive(max_messages=5, wait_seconds=0) == []

    await queue.complete(received)
    assert collection.docs == {}
    with pytest.raises(TransientExternalError):
        await queue.complete(received)


async def test_duplicate_message_id_is_dropped(make_queue, collection):
    queue = make_queue()
    await queue.send(QueueMessage(body="first", message_id="m-1"))
    await queue.send(QueueMessage(body="second", message_id="m-1"))

    assert len(collection.docs) == 1
    assert collection.docs["m-1"]["body"] == "first"


async def test_receive_is_fifo_and_bounded(make_queue):
    queue = make_queue()
    for i in range(3):
        await queue.send(QueueMessage(body="{}", message_id=f"m-{i}"))

    batch = await queue.receive(max_messages=2, wait_seconds=0)
    assert [m.message_id for m in batch] == ["m-0", "m-1"]
    [rest] = await queue.receive(max_messages=2, wait_seconds=0)
    assert rest.message_id == "m-2"


async def test_abandon_releases_the_lock(make_queue):
    queue = make_queue()
    await queue.send(QueueMessage(body="{}", message_id="m-1"))
    [first] = await queue.receive(wait_seconds=0)
    await queue.abandon(first)

    [second] = await queue.receive(wait_seconds=0)
    assert second.delivery_count == 2
    assert second.lock_token != first.lock_token
    # The first receiver no longer holds the lock
    with pytest.raises(TransientExternalError):
        await queue.abandon(first)


async def test_expired_lock_is_claimed_again(make_queue):
    queue = make_queue(lock_duration_seconds=0.05)
    await queue.send(QueueMessage(body="{}", message_id="m-1"))
    [first] = await queue.receive(wait_seconds=0)

    await asyncio.sleep(0.1)
    [second] = await queue.receive(wait_seconds=0)

    assert second.message_id == "m-1"
    assert second.delivery_count == 2
    with pytest.raises(TransientExternalError):
        await queue.complete(first)
    await queue.complete(second)


async def test_renew_lock_extends_lease(make_queue, collection):
    queue = make_queue(lock_duration_seconds=0.05)
    await queue.send(QueueMessage(body="{}", message_id="m-1"))
    [received] = await queue.receive(wait_seconds=0)
    before = collection.docs["m-1"]["locked_until"]

    await asyncio.sleep(0.01)
    await queue.renew_lock(received)

    assert collection.docs["m-1"]["locked_until"] > before
    stale = received.model_copy(update={"lock_token": "not-the-lock"})
    with pytest.raises(TransientExternalError):
        await queue.renew_lock(stale)


async def test_dead_letter_sidelines_message(make_queue, collection):
    queue = make_queue()
    await queue.send(QueueMessage(body="{broken", message_id="m-1"))
    [received] = await queue.receive(wait_seconds=0)

    await queue.dead_letter(received, "DESERIALIZATION_FAILED", "Unable to deserialize")

    doc = collection.docs["m-1"]
    assert doc["state"] == "dead_lettered"
    assert doc["dead_letter_reason"] == "DESERIALIZATION_FAILED"
    assert doc["lock_token"] is None
    assert await queue.receive(wait_seconds=0) == []


async def test_receive_waits_then_returns_empty(make_queue):
    queue = make_queue()
    assert await queue.receive(max_messages=3, wait_seconds=0.05) == []


async def test_other_queues_are_not_claimed(make_queue, collection):
    queue = make_queue()
    await queue.send(QueueMessage(body="{}", message_id="m-1"))
    collection.docs["m-1"]["queue"] = "another-queue"

    assert await queue.receive(wait_seconds=0) == []
