from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from merchant.core.enums import SubscriptionStatus, WEBHOOK_WILDCARDS, WebhookEventType
from merchant.schemas.base import BaseSchema

SUPPORTED_PATTERNS = {event.value for event in WebhookEventType} | set(WEBHOOK_WILDCARDS)


def _check_patterns(events: Optional[List[str]]) -> Optional[List[str]]:
    if events is None:
        return events
    invalid = [event for event in events if event not in SUPPORTED_PATTERNS]
    if invalid:
        raise ValueError(f"Unsupported events: {', '.join(invalid)}")
    return events


def _check_url(url: Optional[str]) -> Optional[str]:
    if url is not None and not url.startswith(("https://", "http://")):
        raise ValueError("url must be an http(s) URL")
    return url


class SubscriptionCreate(BaseSchema):
    url: str
    events: List[str] = Field(..., min_length=1)

    @field_validator("events")
    @classmethod
    def validate_events(cls, value):
        return _check_patterns(value)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value):
        return _check_url(value)


class SubscriptionUpdate(BaseSchema):
    url: Optional[str] = None
    events: Optional[List[str]] = None
    status: Optional[SubscriptionStatus] = None

    @field_validator("events")
    @classmethod
    def validate_events(cls, value):
        return _check_patterns(value)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value):
        return _check_url(value)


class DeliverySummary(BaseSchema):
    id: str
    event_type: str
    status: str
    attempts: int
    response_code: Optional[int] = None
    created_at: datetime
    last_attempt_at: Optional[datetime] = None


class DeliveryRead(DeliverySummary):
    payload: dict
    response_body: Optional[str] = None


class SubscriptionRead(BaseSchema):
    id: str
    url: str
    events: List[str]
    status: str
    created_at: datetime


class SubscriptionCreated(SubscriptionRead):
    # Only returned on create and rotate
    secret: str


class SubscriptionDetail(SubscriptionRead):
    recent_deliveries: List[DeliverySummary] = Field(default_factory=list)
