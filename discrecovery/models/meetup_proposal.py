from typing import Optional
import uuid
from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel
from datetime import datetime, timezone


class ProposalStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"

    OPEN = frozenset({PENDING, ACCEPTED})


_OPEN_SQL = "status IN ('accepted', 'pending')"


class MeetupProposal(SQLModel, table=True):
    __tablename__ = "meetup_proposals"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    recovery_event_id: uuid.UUID = Field(foreign_key="recovery_events.id", index=True, ondelete="CASCADE")
    proposed_by: uuid.UUID = Field(foreign_key="profiles.id")

    # Meetup fields
    location_name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    proposed_datetime: datetime
    message: Optional[str] = None

    status: str = Field(default=ProposalStatus.PENDING, index=True)

    __table_args__ = (
        # At most one pending or accepted proposal per recovery event
        Index(
            "uq_meetup_proposals_open_event",
            "recovery_event_id",
            unique=True,
            postgresql_where=text(_OPEN_SQL),
            sqlite_where=text(_OPEN_SQL),
        ),
    )
