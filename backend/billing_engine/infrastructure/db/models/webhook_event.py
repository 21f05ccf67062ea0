"""
Processed Webhook Event Model

Gateway event ids already applied, for replay protection.
"""

from datetime import datetime

from sqlmodel import Field, SQLModel

from billing_engine.infrastructure.db.models.base import UTCDateTime, utc_now


class ProcessedWebhookEvent(SQLModel, table=True):
    """One row per gateway event id that has been handled."""

    __tablename__ = "processed_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=100)
    processed_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime, nullable=False)
