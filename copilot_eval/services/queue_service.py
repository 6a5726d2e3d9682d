"""
Queue Service
Peek-lock queue transports and the lifecycle message publisher
"""
import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, List, NamedTuple, Optional
import logging
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from copilot_eval.config.settings import settings
from copilot_eval.models.job import Job, JobPriority
from copilot_eval.models.message import JobCreatedPayload, JobMessage, JobMessageType
from copilot_eval.models.queue import QueueMessage, ReceivedMessage
from copilot_eval.services.db_service import MongoDBService
from copilot_eval.utils.errors import TransientExternalError
from copilot_eval.utils.helpers import new_request_id, utcnow
from copilot_eval.utils.monitoring import Telemetry

logger = logging.getLogger(__name__)


class DeadLetterEntry(NamedTuple):
    message: ReceivedMessage
    reason: str
    description: str


class QueueTransport(ABC):
    """
    At-least-once queue with peek-lock receive

    A received message stays on the queue, locked for the receiver, until it
    is completed, abandoned or dead-lettered, or until its lock expires.
    """

    @abstractmethod
    async def send(self, message: QueueMessage) -> None:
        ...

    @abstractmethod
    async def receive(self, max_messages: int = 1, wait_seconds: float = 5.0) -> List[ReceivedMessage]:
        """Return up to max_messages, waiting at most wait_seconds for the first one"""
        ...

    @abstractmethod
    async def complete(self, message: ReceivedMessage) -> None:
        ...

    @abstractmethod
    async def abandon(self, message: ReceivedMessage) -> None:
        ...

    @abstractmethod
    async def dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        ...

    @abstractmethod
    async def renew_lock(self, message: ReceivedMessage) -> None:
        ...

    async def close(self) -> None:
        pass


class _Entry:
    __slots__ = ("message", "enqueued_at", "delivery_count", "lock_token", "locked_until")

    def __init__(self, message: QueueMessage):
        self.message = message
        self.enqueued_at = utcnow()
        self.delivery_count = 0
        self.lock_token: Optional[str] = None
        self.locked_until = 0.0

    def is_visible(self, now: float) -> bool:
        return self.lock_token is None or self.locked_until <= now


class InMemoryQueueTransport(QueueTransport):
    """
    Single-process queue used by tests and the --in-memory worker mode
    Expired locks make messages visible again, like a broker would
    """

    def __init__(self,
                 lock_duration_seconds: Optional[float] = None,
                 max_delivery_count: Optional[int] = None,
                 duplicate_detection_window_seconds: Optional[float] = None):
        self.lock_duration_seconds = lock_duration_seconds or settings.QUEUE_LOCK_DURATION_SECONDS
        self.max_delivery_count = max_delivery_count or settings.QUEUE_MAX_DELIVERY_COUNT
        self.duplicate_detection_window_seconds = (
            duplicate_detection_window_seconds
            if duplicate_detection_window_seconds is not None
            else settings.QUEUE_DUPLICATE_DETECTION_WINDOW_SECONDS
        )
        self._entries: Dict[str, _Entry] = {}
        self._seen: Dict[str, float] = {}
        self._condition = asyncio.Condition()
        self.sent: List[QueueMessage] = []
        self.completed: List[str] = []
        self.dead_lettered: List[DeadLetterEntry] = []

    @property
    def active_count(self) -> int:
        return len(self._entries)

    async def send(self, message: QueueMessage) -> None:
        async with self._condition:
            now = time.monotonic()
            seen_at = self._seen.get(message.message_id)
            if seen_at is not None and now - seen_at < self.duplicate_detection_window_seconds:
                logger.warning(f"Duplicate message {message.message_id} dropped")
                return
            self._seen[message.message_id] = now
            self._entries[message.message_id] = _Entry(message)
            self.sent.append(message)
            self._condition.notify_all()

    async def receive(self, max_messages: int = 1, wait_seconds: float = 5.0) -> List[ReceivedMessage]:
        deadline = time.monotonic() + wait_seconds
        async with self._condition:
            while True:
                received = self._lock_visible(max_messages)
                if received:
                    return received
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []
                # Wake up for new sends, abandons, or the next lock expiry
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=min(remaining, 0.5))
                except asyncio.TimeoutError:
                    pass

    def _lock_visible(self, max_messages: int) -> List[ReceivedMessage]:
        now = time.monotonic()
        received = []
        for message_id, entry in list(self._entries.items()):
            if len(received) >= max_messages:
                break
            if not entry.is_visible(now):
                continue
            if entry.delivery_count >= self.max_delivery_count:
                self._move_to_dead_letter(
                    self._snapshot(entry), "MaxDeliveryCountExceeded",
                    f"Message was delivered {entry.delivery_count} times"
                )
                continue
            entry.delivery_count += 1
            entry.lock_token = uuid.uuid4().hex
            entry.locked_until = now + self.lock_duration_seconds
            received.append(self._snapshot(entry))
        return received

    def _snapshot(self, entry: _Entry) -> ReceivedMessage:
        lock_remaining = max(entry.locked_until - time.monotonic(), 0.0)
        return ReceivedMessage(
            **entry.message.model_dump(),
            delivery_count=max(entry.delivery_count, 1),
            lock_token=entry.lock_token or uuid.uuid4().hex,
            enqueued_at=entry.enqueued_at,
            locked_until=utcnow() + timedelta(seconds=lock_remaining),
        )

    def _locked_entry(self, message: ReceivedMessage) -> _Entry:
        entry = self._entries.get(message.message_id)
        if entry is None or entry.lock_token != message.lock_token or not entry.locked_until > time.monotonic():
            raise TransientExternalError(f"Lock lost for message {message.message_id}")
        return entry

    def _move_to_dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        self._entries.pop(message.message_id, None)
        self.dead_lettered.append(DeadLetterEntry(message, reason, description))
        logger.warning(f"Message {message.message_id} dead-lettered: {reason}")

    async def complete(self, message: ReceivedMessage) -> None:
        async with self._condition:
            self._locked_entry(message)
            del self._entries[message.message_id]
            self.completed.append(message.message_id)

    async def abandon(self, message: ReceivedMessage) -> None:
        async with self._condition:
            entry = self._locked_entry(message)
            entry.lock_token = None
            entry.locked_until = 0.0
            self._condition.notify_all()

    async def dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        async with self._condition:
            self._locked_entry(message)
            self._move_to_dead_letter(message, reason, description)

    async def renew_lock(self, message: ReceivedMessage) -> None:
        async with self._condition:
            entry = self._locked_entry(message)
            entry.locked_until = time.monotonic() + self.lock_duration_seconds


class MongoQueueTransport(QueueTransport):
    """
    Queue stored in a MongoDB collection

    Each document is one message. Receivers claim documents atomically with
    find_one_and_update, which bumps the delivery count and sets the lock.
    """

    def __init__(self,
                 db_service: MongoDBService,
                 queue_name: Optional[str] = None,
                 collection_name: Optional[str] = None,
                 lock_duration_seconds: Optional[float] = None,
                 poll_interval_seconds: float = 1.0):
        self.db_service = db_service
        self.queue_name = queue_name or settings.QUEUE_NAME
        self.collection_name = collection_name or settings.MONGODB_COLLECTION_QUEUE
        self.lock_duration_seconds = lock_duration_seconds or settings.QUEUE_LOCK_DURATION_SECONDS
        self.poll_interval_seconds = poll_interval_seconds

    @property
    def collection(self):
        return self.db_service.db[self.collection_name]

    async def send(self, message: QueueMessage) -> None:
        doc = {
            "_id": message.message_id,
            "queue": self.queue_name,
            "state": "active",
            "body": message.body,
            "subject": message.subject,
            "content_type": message.content_type,
            "application_properties": message.application_properties,
            "delivery_count": 0,
            "lock_token": None,
            "locked_until": None,
            "enqueued_at": utcnow(),
        }
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            logger.warning(f"Duplicate message {message.message_id} dropped")

    async def receive(self, max_messages: int = 1, wait_seconds: float = 5.0) -> List[ReceivedMessage]:
        deadline = time.monotonic() + wait_seconds
        received: List[ReceivedMessage] = []
        while True:
            while len(received) < max_messages:
                doc = await self._claim_next()
                if doc is None:
                    break
                received.append(self._to_received(doc))
            if received or time.monotonic() >= deadline:
                return received
            await asyncio.sleep(min(self.poll_interval_seconds, max(deadline - time.monotonic(), 0)))

    async def _claim_next(self) -> Optional[dict]:
        now = utcnow()
        return await self.collection.find_one_and_update(
            {
                "queue": self.queue_name,
                "state": "active",
                "$or": [{"locked_until": None}, {"locked_until": {"$lte": now}}],
            },
            {
                "$inc": {"delivery_count": 1},
                "$set": {
                    "lock_token": uuid.uuid4().hex,
                    "locked_until": now + timedelta(seconds=self.lock_duration_seconds),
                },
            },
            sort=[("enqueued_at", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )

    @staticmethod
    def _to_received(doc: dict) -> ReceivedMessage:
        return ReceivedMessage(
            body=doc["body"],
            message_id=doc["_id"],
            subject=doc.get("subject"),
            content_type=doc.get("content_type", "application/json"),
            application_properties=doc.get("application_properties") or {},
            delivery_count=doc["delivery_count"],
            lock_token=doc["lock_token"],
            enqueued_at=doc["enqueued_at"],
            locked_until=doc["locked_until"],
        )

    def _lock_filter(self, message: ReceivedMessage) -> dict:
        return {"_id": message.message_id, "lock_token": message.lock_token, "state": "active"}

    async def complete(self, message: ReceivedMessage) -> None:
        result = await self.collection.delete_one(self._lock_filter(message))
        if result.deleted_count == 0:
            raise TransientExternalError(f"Lock lost for message {message.message_id}")

    async def abandon(self, message: ReceivedMessage) -> None:
        result = await self.collection.update_one(
            self._lock_filter(message),
            {"$set": {"lock_token": None, "locked_until": None}}
        )
        if result.matched_count == 0:
            raise TransientExternalError(f"Lock lost for message {message.message_id}")

    async def dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        result = await self.collection.update_one(
            self._lock_filter(message),
            {"$set": {
                "state": "dead_lettered",
                "lock_token": None,
                "locked_until": None,
                "dead_letter_reason": reason,
                "dead_letter_description": description,
                "dead_lettered_at": utcnow(),
            }}
        )
        if result.matched_count == 0:
            raise TransientExternalError(f"Lock lost for message {message.message_id}")

    async def renew_lock(self, message: ReceivedMessage) -> None:
        result = await self.collection.update_one(
            self._lock_filter(message),
            {"$set": {"locked_until": utcnow() + timedelta(seconds=self.lock_duration_seconds)}}
        )
        if result.matched_count == 0:
            raise TransientExternalError(f"Lock lost for message {message.message_id}")


class JobQueuePublisher:
    """
    Serializes lifecycle messages and sends them to the queue
    Transport errors are logged and re-raised; retrying is the caller's decision
    """

    def __init__(self, transport: QueueTransport, telemetry: Optional[Telemetry] = None):
        self.transport = transport
        self.telemetry = telemetry or Telemetry()

    async def publish(self, message: JobMessage) -> str:
        """
        Publish one message

        Returns:
            The queue message id
        """
        request_id = new_request_id()
        queue_message = QueueMessage(
            body=message.to_wire(),
            subject=message.message_type.value,
            application_properties={
                "job_id": message.job_id,
                "message_type": message.message_type.value,
                "correlation_id": message.correlation_id or "",
            },
        )
        try:
            with self.telemetry.span("queue.publish", message_type=message.message_type.value):
                await self.transport.send(queue_message)
        except Exception as e:
            logger.error(f"[Queue {request_id}] Failed to publish {message.message_type.value} "
                         f"for job {message.job_id}: {e}")
            raise
        self.telemetry.increment("messages.published", message_type=message.message_type.value)
        logger.info(f"[Queue {request_id}] Published {message.message_type.value} for job {message.job_id} "
                    f"(message {queue_message.message_id})")
        return queue_message.message_id

    async def publish_job_created(self, job_id: str, job: Job,
                                  priority: JobPriority = JobPriority.NORMAL) -> JobMessage:
        """Enqueue a job for execution with a fresh correlation id"""
        message = JobMessage.create(
            job_id,
            JobMessageType.JOB_CREATED,
            JobCreatedPayload(job=job, priority=priority),
            correlation_id=str(uuid.uuid4()),
        )
        await self.publish(message)
        self.telemetry.increment("jobs.enqueued", priority=priority.value)
        return message
