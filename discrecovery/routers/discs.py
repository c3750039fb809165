import uuid

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from discrecovery.db.db import get_session
from discrecovery.models.disc import Disc
from discrecovery.services.recovery import RecoveryService
from discrecovery.routers.recoveries import get_recovery_service
from discrecovery.utils.auth_helper import get_current_user_id


router = APIRouter()


@router.get("/mine")
def get_my_discs(
    session: Session = Depends(get_session),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    discs = session.exec(
        select(Disc)
        .where(Disc.owner_id == user_id)
        .order_by(Disc.created_at.desc())
    ).all()

    return {"discs": discs}


@router.post("/{disc_id}/claim")
def claim_disc(
    disc_id: uuid.UUID,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    disc = service.claim_disc(disc_id, user_id)

    return disc.model_dump()
