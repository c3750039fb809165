from typing import Optional
import uuid
from sqlmodel import Field, SQLModel
from datetime import datetime, timezone


class DropOff(SQLModel, table=True):
    __tablename__ = "drop_offs"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    recovery_event_id: uuid.UUID = Field(
        foreign_key="recovery_events.id",
        unique=True,
        index=True,
        ondelete="CASCADE",
    )

    # Evidence left by the finder
    photo_url: str  # object storage key
    latitude: float
    longitude: float
    location_notes: Optional[str] = None

    dropped_off_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    retrieved_at: Optional[datetime] = None
