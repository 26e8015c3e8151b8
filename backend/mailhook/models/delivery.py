"""
Pydantic models for inbound webhook deliveries.

Models:
  AttachmentDescriptor  attachment metadata carried in the notification body
  InboundMessage        parsed JSON body of an inbound email notification
  Delivery              one HTTP delivery: id, address, raw bytes, receipt time
  HandlerResult         what a dispatch handler reports back
  DeliveryOutcome       final outcome of one delivery through the receiver
  DeliveryRecord        log row describing one delivery's outcome
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Notification body
# ---------------------------------------------------------------------------

class AttachmentDescriptor(BaseModel):
    """Attachment metadata; the content itself is fetched from `url`."""
    model_config = {"extra": "ignore"}

    filename: str
    content_type: str = "application/octet-stream"
    size: Optional[int] = None
    url: Optional[str] = None


class InboundMessage(BaseModel):
    """
    JSON body of an inbound email notification.

    Only the fields the receiver and its handlers care about are modelled;
    anything else the sender adds is ignored.
    """
    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str = Field(min_length=1)
    to: str
    from_: Optional[str] = Field(default=None, alias="from")
    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None
    attachments: list[AttachmentDescriptor] = []
    timestamp: Optional[datetime] = None

    @field_validator("to", mode="before")
    @classmethod
    def _first_recipient(cls, value):
        # Some senders deliver a recipient list; routing uses the first entry.
        if isinstance(value, list):
            if not value:
                raise ValueError("to must contain at least one address")
            return value[0]
        return value


class Delivery(BaseModel):
    """
    One inbound HTTP delivery.

    `payload` is the exact request body; the signature was verified over
    these bytes before the message was parsed.
    """

    id: str
    address: str
    payload: bytes
    received_at: datetime
    message: Optional[InboundMessage] = None


# ---------------------------------------------------------------------------
# Handler results and delivery outcomes
# ---------------------------------------------------------------------------

class HandlerStatus(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class HandlerResult:
    """Result reported by a dispatch handler."""

    status: HandlerStatus
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "HandlerResult":
        return cls(HandlerStatus.SUCCESS)

    @classmethod
    def retryable(cls, reason: str) -> "HandlerResult":
        return cls(HandlerStatus.RETRYABLE_FAILURE, reason)

    @classmethod
    def terminal(cls, reason: str) -> "HandlerResult":
        return cls(HandlerStatus.TERMINAL_FAILURE, reason)

    @property
    def ok(self) -> bool:
        return self.status == HandlerStatus.SUCCESS


class DeliveryOutcome(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


class DeliveryRecord(BaseModel):
    """Outcome of one delivery, as kept in the delivery log and returned by the API."""

    delivery_id: Optional[str] = None
    address: Optional[str] = None
    route: Optional[str] = None
    outcome: DeliveryOutcome
    reason: Optional[str] = None
    received_at: datetime
    completed_at: datetime
    duration_ms: float
