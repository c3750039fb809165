import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from discrecovery.db.db import get_session
from discrecovery.utils.auth_helper import get_current_user_id, get_db_profile


router = APIRouter()


class PushTokenRequest(BaseModel):
    push_token: Optional[str] = None


@router.get("/me")
def get_my_profile(
    session: Session = Depends(get_session),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    profile = get_db_profile(session, user_id)

    data = profile.model_dump(exclude={"push_token"})
    data["display_name"] = profile.display_name()
    data["push_enabled"] = bool(profile.push_token)

    return data


@router.post("/push-token")
def set_push_token(
    body: PushTokenRequest,
    session: Session = Depends(get_session),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    profile = get_db_profile(session, user_id)

    token = body.push_token.strip() if body.push_token else None

    if token and not token.startswith(("ExponentPushToken[", "ExpoPushToken[")):
        raise HTTPException(status_code=400, detail="Invalid push token")

    # an empty token unregisters the device
    profile.push_token = token or None

    session.add(profile)
    session.commit()

    return {"ok": True}
