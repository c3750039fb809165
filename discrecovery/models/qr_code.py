from typing import Optional
import uuid
from sqlmodel import Field, SQLModel
from datetime import datetime, timezone


class QRCodeStatus:
    GENERATED = "generated"
    ASSIGNED = "assigned"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"

    # codes a finder can report against
    LINKED = frozenset({ASSIGNED, ACTIVE})


class QRCode(SQLModel, table=True):
    __tablename__ = "qr_codes"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    short_code: str = Field(index=True, unique=True)
    status: str = Field(default=QRCodeStatus.GENERATED)

    assigned_to: Optional[uuid.UUID] = Field(default=None, foreign_key="profiles.id")
