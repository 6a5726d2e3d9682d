"""
Queue transport models
"""
from datetime import datetime
from typing import Any, Dict, Optional
from enum import Enum
import uuid

from pydantic import BaseModel, Field

from copilot_eval.utils.helpers import utcnow


class QueueMessage(BaseModel):
    """Outbound message handed to a queue transport"""
    body: str
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subject: Optional[str] = None
    content_type: str = "application/json"
    application_properties: Dict[str, Any] = Field(default_factory=dict)


class ReceivedMessage(QueueMessage):
    """Message delivered under a peek-lock"""
    delivery_count: int = Field(default=1, ge=1)
    lock_token: str = Field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: datetime = Field(default_factory=utcnow)
    locked_until: Optional[datetime] = None


class MessageOutcome(str, Enum):
    """How a delivered message is settled"""
    COMPLETE = "complete"          # Remove from the queue
    ABANDON = "abandon"            # Release the lock for redelivery
    DEAD_LETTER = "dead_letter"    # Move to the dead-letter sideline


class HandlerResult(BaseModel):
    """Settlement decision for one delivery"""
    outcome: MessageOutcome
    reason: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def complete(cls) -> "HandlerResult":
        return cls(outcome=MessageOutcome.COMPLETE)

    @classmethod
    def abandon(cls) -> "HandlerResult":
        return cls(outcome=MessageOutcome.ABANDON)

    @classmethod
    def dead_letter(cls, reason: str, description: str) -> "HandlerResult":
        return cls(outcome=MessageOutcome.DEAD_LETTER, reason=reason, description=description)
