from typing import Optional
import uuid
from sqlmodel import Field, SQLModel
from datetime import datetime, timezone


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    email: str = Field(index=True, unique=True)
    username: Optional[str] = Field(default=None, index=True)
    full_name: Optional[str] = None
    display_preference: str = Field(default="username")  # values: "username", "full_name"

    push_token: Optional[str] = None

    def display_name(self, fallback: str = "Someone") -> str:
        if self.display_preference == "full_name" and self.full_name:
            return self.full_name

        if self.username:
            return f"@{self.username}"

        if self.full_name:
            return self.full_name

        return fallback
