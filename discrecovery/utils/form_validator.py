from typing import Optional
from fastapi import HTTPException
from pydantic import BaseModel, Field, ValidationError


class ValidatedDropOffForm(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    location_notes: Optional[str] = Field(default=None, max_length=500)


def validate_drop_off_form(
    latitude: str,
    longitude: str,
    location_notes: Optional[str],
) -> ValidatedDropOffForm:
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Coordinates not parseable")

    notes = location_notes.strip() if location_notes else None

    try:
        return ValidatedDropOffForm(
            latitude=lat,
            longitude=lng,
            location_notes=notes or None,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail=e.errors(include_url=False),
        )
