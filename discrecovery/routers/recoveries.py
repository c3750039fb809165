import uuid
from datetime import datetime
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from PIL import UnidentifiedImageError
from pydantic import BaseModel
from sqlmodel import Session

from discrecovery.config import settings
from discrecovery.db.db import get_session
from discrecovery.services.errors import StorageFault
from discrecovery.services.guard import Role
from discrecovery.services.notifier import NotificationDispatcher
from discrecovery.services.push import ExpoPushChannel
from discrecovery.services.recovery import RecoveryService
from discrecovery.services.store import RecoveryContext, RecoveryDetails
from discrecovery.utils.auth_helper import get_current_user_id
from discrecovery.utils.form_validator import validate_drop_off_form
from discrecovery.utils.s3_service import compress_image, delete_s3_object, generate_signed_url, upload_to_s3


router = APIRouter()

MAX_UPLOAD_BYTES = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024


def get_push_channel():
    return ExpoPushChannel()


def get_recovery_service(
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    push_channel=Depends(get_push_channel),
) -> RecoveryService:
    # pushes go out after the response, on their own session
    return RecoveryService(session, NotificationDispatcher(session, push_channel, background_tasks))


class ReportFoundRequest(BaseModel):
    qr_code: Optional[str] = None
    disc_id: Optional[uuid.UUID] = None
    owner_id: Optional[uuid.UUID] = None
    message: Optional[str] = None


class ProposeMeetupRequest(BaseModel):
    location_name: str
    proposed_datetime: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    message: Optional[str] = None


class DeclineMeetupRequest(BaseModel):
    reason: Optional[str] = None


def serialize_recovery(recovery: RecoveryContext) -> dict:
    data = recovery.event.model_dump()
    data["disc"] = recovery.disc.model_dump() if recovery.disc else None
    return data


def serialize_details(details: RecoveryDetails, user_id: uuid.UUID) -> dict:
    data = serialize_recovery(details.recovery)
    data["role"] = Role.FINDER if details.recovery.finder_id == user_id else Role.OWNER
    data["proposals"] = [p.model_dump() for p in details.proposals]

    if details.drop_off:
        drop_off = details.drop_off.model_dump()
        drop_off["photo"] = generate_signed_url(details.drop_off.photo_url)
        data["drop_off"] = drop_off
    else:
        data["drop_off"] = None

    return data


@router.post("/report-found")
def report_found(
    body: ReportFoundRequest,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    event = service.report_found(
        user_id,
        qr_code=body.qr_code,
        disc_id=body.disc_id,
        owner_id=body.owner_id,
        message=body.message,
    )

    return event.model_dump()


@router.get("/")
def list_my_recoveries(
    role: str = Role.OWNER,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    recoveries = service.list_recoveries(user_id, role)

    return {"recoveries": [serialize_recovery(r) for r in recoveries]}


@router.get("/{recovery_event_id}")
def get_recovery(
    recovery_event_id: uuid.UUID,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    details = service.get_recovery_details(recovery_event_id, user_id)

    return serialize_details(details, user_id)


@router.post("/{recovery_event_id}/proposals")
def propose_meetup(
    recovery_event_id: uuid.UUID,
    body: ProposeMeetupRequest,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    proposal = service.propose_meetup(
        recovery_event_id,
        user_id,
        location_name=body.location_name,
        proposed_datetime=body.proposed_datetime,
        latitude=body.latitude,
        longitude=body.longitude,
        message=body.message,
    )

    return proposal.model_dump()


@router.post("/proposals/{proposal_id}/accept")
def accept_meetup(
    proposal_id: uuid.UUID,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    return service.accept_meetup(proposal_id, user_id).model_dump()


@router.post("/proposals/{proposal_id}/decline")
def decline_meetup(
    proposal_id: uuid.UUID,
    body: Optional[DeclineMeetupRequest] = None,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    reason = body.reason if body else None

    return service.decline_meetup(proposal_id, user_id, reason=reason).model_dump()


@router.post("/{recovery_event_id}/complete")
def complete_recovery(
    recovery_event_id: uuid.UUID,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    return service.complete_recovery(recovery_event_id, user_id).model_dump()


@router.post("/{recovery_event_id}/drop-off")
def create_drop_off(
    recovery_event_id: uuid.UUID,
    latitude: str = Form(...),
    longitude: str = Form(...),
    location_notes: Optional[str] = Form(None),
    image: UploadFile = File(...),
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    form = validate_drop_off_form(latitude, longitude, location_notes)

    raw_bytes = image.file.read()

    if not raw_bytes:
        raise HTTPException(status_code=400, detail="Image is empty")

    if len(raw_bytes) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail=f"Image exceeds {settings.MAX_UPLOAD_SIZE_MB}MB limit")

    # nothing is stored for a caller the drop-off would refuse
    service.authorize_drop_off(recovery_event_id, user_id)

    try:
        buffer, ext = compress_image(raw_bytes)
    except UnidentifiedImageError:
        raise HTTPException(status_code=400, detail="File is not a readable image")

    try:
        s3_key = upload_to_s3(buffer, ext, recovery_event_id, image.filename)
    except (BotoCoreError, ClientError) as e:
        raise StorageFault("upload_drop_off_photo", e) from e

    try:
        drop_off = service.create_drop_off(
            recovery_event_id,
            user_id,
            photo_url=s3_key,
            latitude=form.latitude,
            longitude=form.longitude,
            location_notes=form.location_notes,
        )
    except Exception:
        # drop the orphaned photo
        delete_s3_object(s3_key)
        raise

    data = drop_off.model_dump()
    data["photo"] = generate_signed_url(drop_off.photo_url)

    return data


@router.post("/{recovery_event_id}/retrieved")
def mark_retrieved(
    recovery_event_id: uuid.UUID,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    return service.mark_retrieved(recovery_event_id, user_id).model_dump()


@router.post("/{recovery_event_id}/abandon")
def abandon_disc(
    recovery_event_id: uuid.UUID,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    return service.abandon_disc(recovery_event_id, user_id).model_dump()


@router.post("/{recovery_event_id}/surrender")
def surrender_disc(
    recovery_event_id: uuid.UUID,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    return service.surrender_disc(recovery_event_id, user_id).model_dump()


@router.post("/{recovery_event_id}/relinquish")
def relinquish_disc(
    recovery_event_id: uuid.UUID,
    service: RecoveryService = Depends(get_recovery_service),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    return service.relinquish_disc(recovery_event_id, user_id).model_dump()
