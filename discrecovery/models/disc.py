from decimal import Decimal
from typing import Optional
import uuid
from sqlmodel import Field, SQLModel
from datetime import datetime, timezone


class Disc(SQLModel, table=True):
    __tablename__ = "discs"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # NULL means ownerless (abandoned) and claimable.
    # Only the recovery transitions write this column.
    owner_id: Optional[uuid.UUID] = Field(default=None, foreign_key="profiles.id", index=True)
    qr_code_id: Optional[uuid.UUID] = Field(default=None, foreign_key="qr_codes.id", index=True)

    # Disc fields
    name: str
    manufacturer: Optional[str] = None
    mold: Optional[str] = None
    plastic: Optional[str] = None
    color: Optional[str] = None
    weight: Optional[int] = None
    reward_amount: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)
    notes: Optional[str] = None
