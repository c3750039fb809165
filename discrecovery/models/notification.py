from typing import Optional
import uuid
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel
from datetime import datetime, timezone


class NotificationType:
    DISC_FOUND = "disc_found"
    MEETUP_PROPOSED = "meetup_proposed"
    MEETUP_ACCEPTED = "meetup_accepted"
    MEETUP_DECLINED = "meetup_declined"
    DISC_DROPPED_OFF = "disc_dropped_off"
    DISC_RECOVERED = "disc_recovered"
    DISC_RETRIEVED = "disc_retrieved"
    DISC_ABANDONED = "disc_abandoned"
    DISC_SURRENDERED = "disc_surrendered"
    DISC_RELINQUISHED = "disc_relinquished"


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Ownership
    user_id: uuid.UUID = Field(foreign_key="profiles.id", index=True)

    # Notification fields
    type: str = Field(index=True)

    title: str
    body: str

    # recovery_event_id / disc_id / proposal_id / drop_off_id as strings
    data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    is_read: bool = Field(default=False)
    dismissed_at: Optional[datetime] = None
