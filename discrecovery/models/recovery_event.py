from typing import Optional
import uuid
from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel
from datetime import datetime, timezone


class RecoveryStatus:
    FOUND = "found"
    MEETUP_PROPOSED = "meetup_proposed"
    MEETUP_CONFIRMED = "meetup_confirmed"
    DROPPED_OFF = "dropped_off"

    RECOVERED = "recovered"
    ABANDONED = "abandoned"
    SURRENDERED = "surrendered"
    RELINQUISHED = "relinquished"
    # an abandoned event whose disc has since been claimed
    CLOSED = "closed"

    ACTIVE = frozenset({FOUND, MEETUP_PROPOSED, MEETUP_CONFIRMED, DROPPED_OFF})
    TERMINAL = frozenset({RECOVERED, ABANDONED, SURRENDERED, RELINQUISHED, CLOSED})


def _status_in(statuses) -> str:
    return "status IN ({})".format(", ".join(f"'{s}'" for s in sorted(statuses)))


class RecoveryEvent(SQLModel, table=True):
    __tablename__ = "recovery_events"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # NULL until the report is matched to a registered disc
    disc_id: Optional[uuid.UUID] = Field(default=None, foreign_key="discs.id", index=True, ondelete="CASCADE")

    # Participants
    finder_id: uuid.UUID = Field(foreign_key="profiles.id", index=True)
    owner_id: Optional[uuid.UUID] = Field(default=None, foreign_key="profiles.id", index=True)

    status: str = Field(default=RecoveryStatus.FOUND, index=True)

    finder_message: Optional[str] = None

    found_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    recovered_at: Optional[datetime] = None
    surrendered_at: Optional[datetime] = None
    relinquished_at: Optional[datetime] = None

    __table_args__ = (
        # One active recovery per disc; a second concurrent report fails here
        # even if both reporters passed the read check.
        Index(
            "uq_recovery_events_active_disc",
            "disc_id",
            unique=True,
            postgresql_where=text(_status_in(RecoveryStatus.ACTIVE)),
            sqlite_where=text(_status_in(RecoveryStatus.ACTIVE)),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status in RecoveryStatus.ACTIVE
