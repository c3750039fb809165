import uuid
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from sqlmodel import Session

from discrecovery.config import settings
from discrecovery.models.profile import Profile

bearer_scheme_required = HTTPBearer(auto_error=True)


def decode_token(credentials: str) -> dict:
    return jwt.decode(
        credentials,
        settings.JWT_SECRET,
        algorithms=[settings.JWT_ALGORITHM],
    )


def get_current_user_required(token: HTTPAuthorizationCredentials = Depends(bearer_scheme_required)):
    try:
        payload = decode_token(token.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")

    return payload


def get_current_user_id(current_user=Depends(get_current_user_required)) -> uuid.UUID:
    # sub carries the caller's profile id
    try:
        return uuid.UUID(str(current_user["sub"]))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token subject")


def get_db_profile(session: Session, user_id: uuid.UUID) -> Profile:
    profile = session.get(Profile, user_id)

    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")

    return profile
