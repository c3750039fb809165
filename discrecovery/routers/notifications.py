import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import update
from sqlmodel import Session, func, select

from discrecovery.db.db import get_session
from discrecovery.models.notification import Notification
from discrecovery.utils.auth_helper import get_current_user_id


router = APIRouter()


def get_own_notification(session: Session, notification_id: uuid.UUID, user_id: uuid.UUID) -> Notification:
    notif = session.exec(
        select(Notification)
        .where(Notification.id == notification_id)
        .where(Notification.user_id == user_id)
    ).first()

    if not notif:
        raise HTTPException(
            status_code=404,
            detail="Notification not found"
        )

    return notif


@router.get("/")
def get_my_notifications(
    limit: int = 20,
    unread_only: bool = False,
    session: Session = Depends(get_session),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    query = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .where(Notification.dismissed_at.is_(None))
        .order_by(Notification.created_at.desc())
        .limit(min(max(limit, 1), 100))
    )

    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712

    notifications = session.exec(query).all()

    return {"notifications": notifications}


@router.get("/count")
def get_unread_notifications_count(
    session: Session = Depends(get_session),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    count = session.exec(
        select(func.count(Notification.id))
        .where(Notification.user_id == user_id)
        .where(Notification.is_read == False)  # noqa: E712
        .where(Notification.dismissed_at.is_(None))
    ).one()

    return {"count": count}


@router.post("/{notification_id}/mark-read")
def mark_notification_read(
    notification_id: uuid.UUID,
    session: Session = Depends(get_session),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    notif = get_own_notification(session, notification_id, user_id)

    notif.is_read = True
    session.add(notif)
    session.commit()

    return {"ok": True}


@router.post("/mark-all-read")
def mark_all_notifications_read(
    session: Session = Depends(get_session),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    session.exec(
        update(Notification)
        .where(Notification.user_id == user_id)
        .where(Notification.is_read == False)  # noqa: E712
        .values(is_read=True)
    )
    session.commit()

    return {"ok": True}


@router.post("/{notification_id}/dismiss")
def dismiss_notification(
    notification_id: uuid.UUID,
    session: Session = Depends(get_session),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    notif = get_own_notification(session, notification_id, user_id)

    notif.dismissed_at = datetime.now(timezone.utc)
    notif.is_read = True
    session.add(notif)
    session.commit()

    return {"ok": True}
