"""Atomic transition operations.

Each public function is one all-or-nothing unit run inside ``db.atomic``.
Preconditions are part of the UPDATE itself (compare-and-swap on the
status or owner column), so two callers racing on the same row cannot both
commit: the loser matches zero rows and gets ``PreconditionFailed``.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from discrecovery.db.db import atomic
from discrecovery.models.disc import Disc
from discrecovery.models.drop_off import DropOff
from discrecovery.models.meetup_proposal import MeetupProposal, ProposalStatus
from discrecovery.models.notification import Notification, NotificationType
from discrecovery.models.qr_code import QRCode, QRCodeStatus
from discrecovery.models.recovery_event import RecoveryEvent, RecoveryStatus
from discrecovery.services.errors import Conflict, Forbidden, NotFound, PreconditionFailed
from discrecovery.services.guard import DenialReason, Operation, allowed_from, target_status
from discrecovery.services.store import find_active_recovery

logger = logging.getLogger(__name__)


@dataclass
class NotificationDraft:
    title: str
    body: str


@dataclass
class TransitionOutcome:
    operation: str
    actor_id: uuid.UUID
    recovery_event_id: Optional[uuid.UUID] = None
    disc_id: Optional[uuid.UUID] = None
    counterparty_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    proposal_id: Optional[uuid.UUID] = None
    drop_off_id: Optional[uuid.UUID] = None
    notification_id: Optional[uuid.UUID] = None
    declined_count: int = 0
    closed_count: int = 0

    def payload(self) -> dict:
        data = {
            "recovery_event_id": self.recovery_event_id,
            "disc_id": self.disc_id,
            "proposal_id": self.proposal_id,
            "drop_off_id": self.drop_off_id,
        }
        return {k: str(v) for k, v in data.items() if v is not None}


def _execute(session: Session, stmt):
    # in-session objects are re-read with populate_existing or expire on commit
    return session.exec(stmt.execution_options(synchronize_session=False))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _counterparty(event: RecoveryEvent, actor_id: uuid.UUID) -> Optional[uuid.UUID]:
    if actor_id == event.finder_id:
        return event.owner_id
    return event.finder_id


def _advance(session: Session, recovery_event_id: uuid.UUID, operation: str, **values) -> RecoveryEvent:
    """Move an event to the operation's target status if it is still in an allowed source status."""
    result = _execute(
        session,
        update(RecoveryEvent)
        .where(RecoveryEvent.id == recovery_event_id)
        .where(RecoveryEvent.status.in_(sorted(allowed_from(operation))))
        .values(status=target_status(operation), updated_at=_now(), **values)
    )

    event = session.get(RecoveryEvent, recovery_event_id, populate_existing=True)

    if result.rowcount != 1:
        if event is None:
            raise NotFound("Recovery event not found")
        raise PreconditionFailed(
            f"Recovery is {event.status}; {operation} is not allowed",
            reason=DenialReason.WRONG_STATE,
        )

    return event


def _swap_owner(
    session: Session,
    disc_id: uuid.UUID,
    expected_owner_id: Optional[uuid.UUID],
    new_owner_id: Optional[uuid.UUID],
) -> None:
    stmt = update(Disc).where(Disc.id == disc_id)

    if expected_owner_id is None:
        stmt = stmt.where(Disc.owner_id.is_(None))
    else:
        stmt = stmt.where(Disc.owner_id == expected_owner_id)

    result = _execute(session, stmt.values(owner_id=new_owner_id, updated_at=_now()))

    if result.rowcount != 1:
        if session.get(Disc, disc_id) is None:
            raise NotFound("Disc not found")
        raise PreconditionFailed("Disc ownership changed concurrently", reason="owner_changed")


def _decline_proposals(session: Session, recovery_event_id: uuid.UUID, statuses=(ProposalStatus.PENDING,)) -> int:
    result = _execute(
        session,
        update(MeetupProposal)
        .where(MeetupProposal.recovery_event_id == recovery_event_id)
        .where(MeetupProposal.status.in_(sorted(statuses)))
        .values(status=ProposalStatus.DECLINED)
    )
    return result.rowcount


def report_found(
    session: Session,
    *,
    finder_id: uuid.UUID,
    owner_id: uuid.UUID,
    disc_id: Optional[uuid.UUID],
    finder_message: Optional[str],
    notification: NotificationDraft,
) -> TransitionOutcome:
    """Insert a FOUND event and the owner's in-app notification as one unit."""
    with atomic(session, Operation.REPORT_FOUND):
        if finder_id == owner_id:
            raise Forbidden("You cannot report your own disc as found", reason=DenialReason.WRONG_ROLE)

        if disc_id is not None:
            disc = session.exec(
                select(Disc)
                .where(Disc.id == disc_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).first()

            if not disc:
                raise NotFound("Disc not found")

            if disc.owner_id is None:
                raise PreconditionFailed("This disc has no owner; claim it instead", reason="disc_ownerless")

            if disc.owner_id != owner_id:
                raise PreconditionFailed("Disc does not belong to the named owner", reason="owner_mismatch")

            if find_active_recovery(session, disc_id):
                raise Conflict("This disc already has an active recovery in progress")

        event = RecoveryEvent(
            disc_id=disc_id,
            finder_id=finder_id,
            owner_id=owner_id,
            status=RecoveryStatus.FOUND,
            finder_message=finder_message,
        )
        session.add(event)

        try:
            session.flush()
        except IntegrityError as e:
            raise Conflict("This disc already has an active recovery in progress") from e

        outcome = TransitionOutcome(
            operation=Operation.REPORT_FOUND,
            actor_id=finder_id,
            recovery_event_id=event.id,
            disc_id=disc_id,
            counterparty_id=owner_id,
            status=RecoveryStatus.FOUND,
        )

        data = outcome.payload()
        data["finder_id"] = str(finder_id)

        note = Notification(
            user_id=owner_id,
            type=NotificationType.DISC_FOUND,
            title=notification.title,
            body=notification.body,
            data=data,
        )
        session.add(note)
        outcome.notification_id = note.id

    logger.info("Recovery %s reported found by %s", outcome.recovery_event_id, finder_id)
    return outcome


def abandon(session: Session, recovery_event_id: uuid.UUID, disc_id: uuid.UUID, user_id: uuid.UUID) -> TransitionOutcome:
    """Mark the event ABANDONED and clear the disc's owner together."""
    with atomic(session, Operation.ABANDON_DISC):
        event = _advance(session, recovery_event_id, Operation.ABANDON_DISC)
        if event.disc_id != disc_id:
            raise PreconditionFailed("Disc does not match this recovery", reason="disc_mismatch")

        _swap_owner(session, disc_id, user_id, None)
        declined = _decline_proposals(session, recovery_event_id, ProposalStatus.OPEN)

        outcome = TransitionOutcome(
            operation=Operation.ABANDON_DISC,
            actor_id=user_id,
            recovery_event_id=recovery_event_id,
            disc_id=disc_id,
            counterparty_id=_counterparty(event, user_id),
            status=event.status,
            declined_count=declined,
        )

    logger.info("Disc %s abandoned by %s", disc_id, user_id)
    return outcome


def claim(session: Session, disc_id: uuid.UUID, user_id: uuid.UUID) -> TransitionOutcome:
    """Take ownership of an ownerless disc and close its abandoned recoveries."""
    with atomic(session, Operation.CLAIM_DISC):
        result = _execute(
            session,
            update(Disc)
            .where(Disc.id == disc_id)
            .where(Disc.owner_id.is_(None))
            .values(owner_id=user_id, updated_at=_now())
        )

        if result.rowcount != 1:
            if session.get(Disc, disc_id, populate_existing=True) is None:
                raise NotFound("Disc not found")
            raise PreconditionFailed("This disc has already been claimed", reason="already_claimed")

        closed = _execute(
            session,
            update(RecoveryEvent)
            .where(RecoveryEvent.disc_id == disc_id)
            .where(RecoveryEvent.status == RecoveryStatus.ABANDONED)
            .values(status=RecoveryStatus.CLOSED, updated_at=_now())
        )

        outcome = TransitionOutcome(
            operation=Operation.CLAIM_DISC,
            actor_id=user_id,
            disc_id=disc_id,
            closed_count=closed.rowcount,
        )

    logger.info("Disc %s claimed by %s (%d recoveries closed)", disc_id, user_id, outcome.closed_count)
    return outcome


def _transfer_to_finder(
    session: Session,
    operation: str,
    recovery_event_id: uuid.UUID,
    disc_id: uuid.UUID,
    finder_id: uuid.UUID,
    original_owner_id: uuid.UUID,
    qr_code_id: Optional[uuid.UUID],
    **stamp,
) -> TransitionOutcome:
    with atomic(session, operation):
        event = _advance(session, recovery_event_id, operation, **stamp)
        if event.disc_id != disc_id or event.finder_id != finder_id:
            raise PreconditionFailed("Disc or finder does not match this recovery", reason="participant_mismatch")

        _swap_owner(session, disc_id, original_owner_id, finder_id)

        if qr_code_id is not None:
            _execute(
                session,
                update(QRCode)
                .where(QRCode.id == qr_code_id)
                .values(assigned_to=finder_id, status=QRCodeStatus.ACTIVE, updated_at=_now())
            )

        outcome = TransitionOutcome(
            operation=operation,
            actor_id=original_owner_id,
            recovery_event_id=recovery_event_id,
            disc_id=disc_id,
            counterparty_id=finder_id,
            status=event.status,
        )

    logger.info("Disc %s transferred from %s to finder %s (%s)", disc_id, original_owner_id, finder_id, operation)
    return outcome


def surrender(
    session: Session,
    recovery_event_id: uuid.UUID,
    disc_id: uuid.UUID,
    finder_id: uuid.UUID,
    original_owner_id: uuid.UUID,
    qr_code_id: Optional[uuid.UUID] = None,
) -> TransitionOutcome:
    return _transfer_to_finder(
        session,
        Operation.SURRENDER_DISC,
        recovery_event_id,
        disc_id,
        finder_id,
        original_owner_id,
        qr_code_id,
        surrendered_at=_now(),
    )


def relinquish(
    session: Session,
    recovery_event_id: uuid.UUID,
    disc_id: uuid.UUID,
    finder_id: uuid.UUID,
    original_owner_id: uuid.UUID,
    qr_code_id: Optional[uuid.UUID] = None,
) -> TransitionOutcome:
    return _transfer_to_finder(
        session,
        Operation.RELINQUISH_DISC,
        recovery_event_id,
        disc_id,
        finder_id,
        original_owner_id,
        qr_code_id,
        relinquished_at=_now(),
    )


def propose_meetup(
    session: Session,
    recovery_event_id: uuid.UUID,
    proposed_by: uuid.UUID,
    location_name: str,
    proposed_datetime: datetime,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    message: Optional[str] = None,
) -> TransitionOutcome:
    """Decline pending proposals, insert the new one and mark the event MEETUP_PROPOSED."""
    with atomic(session, Operation.PROPOSE_MEETUP):
        event = _advance(session, recovery_event_id, Operation.PROPOSE_MEETUP)
        declined = _decline_proposals(session, recovery_event_id)

        proposal = MeetupProposal(
            recovery_event_id=recovery_event_id,
            proposed_by=proposed_by,
            location_name=location_name,
            latitude=latitude,
            longitude=longitude,
            proposed_datetime=proposed_datetime,
            message=message,
            status=ProposalStatus.PENDING,
        )
        session.add(proposal)

        try:
            session.flush()
        except IntegrityError as e:
            raise PreconditionFailed("Another meetup is already open for this recovery", reason="proposal_open") from e

        outcome = TransitionOutcome(
            operation=Operation.PROPOSE_MEETUP,
            actor_id=proposed_by,
            recovery_event_id=recovery_event_id,
            disc_id=event.disc_id,
            counterparty_id=_counterparty(event, proposed_by),
            status=event.status,
            proposal_id=proposal.id,
            declined_count=declined,
        )

    logger.info("Meetup %s proposed on %s (%d declined)", outcome.proposal_id, recovery_event_id, declined)
    return outcome


def _settle_proposal(session: Session, proposal_id: uuid.UUID, recovery_event_id: uuid.UUID, new_status: str) -> None:
    result = _execute(
        session,
        update(MeetupProposal)
        .where(MeetupProposal.id == proposal_id)
        .where(MeetupProposal.recovery_event_id == recovery_event_id)
        .where(MeetupProposal.status == ProposalStatus.PENDING)
        .values(status=new_status)
    )

    if result.rowcount != 1:
        raise PreconditionFailed(
            "This proposal has already been accepted or declined",
            reason="proposal_not_pending",
        )


def accept_meetup(
    session: Session, proposal_id: uuid.UUID, recovery_event_id: uuid.UUID, user_id: uuid.UUID
) -> TransitionOutcome:
    with atomic(session, Operation.ACCEPT_MEETUP):
        _settle_proposal(session, proposal_id, recovery_event_id, ProposalStatus.ACCEPTED)
        event = _advance(session, recovery_event_id, Operation.ACCEPT_MEETUP)

        outcome = TransitionOutcome(
            operation=Operation.ACCEPT_MEETUP,
            actor_id=user_id,
            recovery_event_id=recovery_event_id,
            disc_id=event.disc_id,
            counterparty_id=_counterparty(event, user_id),
            status=event.status,
            proposal_id=proposal_id,
        )

    logger.info("Meetup %s accepted on %s", proposal_id, recovery_event_id)
    return outcome


def decline_meetup(
    session: Session, proposal_id: uuid.UUID, recovery_event_id: uuid.UUID, user_id: uuid.UUID
) -> TransitionOutcome:
    with atomic(session, Operation.DECLINE_MEETUP):
        _settle_proposal(session, proposal_id, recovery_event_id, ProposalStatus.DECLINED)
        event = _advance(session, recovery_event_id, Operation.DECLINE_MEETUP)

        outcome = TransitionOutcome(
            operation=Operation.DECLINE_MEETUP,
            actor_id=user_id,
            recovery_event_id=recovery_event_id,
            disc_id=event.disc_id,
            counterparty_id=_counterparty(event, user_id),
            status=event.status,
            proposal_id=proposal_id,
        )

    logger.info("Meetup %s declined on %s", proposal_id, recovery_event_id)
    return outcome


def create_drop_off(
    session: Session,
    recovery_event_id: uuid.UUID,
    finder_id: uuid.UUID,
    photo_url: str,
    latitude: float,
    longitude: float,
    location_notes: Optional[str] = None,
) -> TransitionOutcome:
    with atomic(session, Operation.CREATE_DROP_OFF):
        event = _advance(session, recovery_event_id, Operation.CREATE_DROP_OFF)

        drop_off = DropOff(
            recovery_event_id=recovery_event_id,
            photo_url=photo_url,
            latitude=latitude,
            longitude=longitude,
            location_notes=location_notes,
        )
        session.add(drop_off)

        outcome = TransitionOutcome(
            operation=Operation.CREATE_DROP_OFF,
            actor_id=finder_id,
            recovery_event_id=recovery_event_id,
            disc_id=event.disc_id,
            counterparty_id=_counterparty(event, finder_id),
            status=event.status,
            drop_off_id=drop_off.id,
        )

    logger.info("Drop-off %s created for %s", outcome.drop_off_id, recovery_event_id)
    return outcome


def complete_recovery(session: Session, recovery_event_id: uuid.UUID, user_id: uuid.UUID) -> TransitionOutcome:
    with atomic(session, Operation.COMPLETE_RECOVERY):
        event = _advance(session, recovery_event_id, Operation.COMPLETE_RECOVERY, recovered_at=_now())

        _execute(
            session,
            update(MeetupProposal)
            .where(MeetupProposal.recovery_event_id == recovery_event_id)
            .where(MeetupProposal.status == ProposalStatus.ACCEPTED)
            .values(status=ProposalStatus.COMPLETED)
        )

        outcome = TransitionOutcome(
            operation=Operation.COMPLETE_RECOVERY,
            actor_id=user_id,
            recovery_event_id=recovery_event_id,
            disc_id=event.disc_id,
            counterparty_id=_counterparty(event, user_id),
            status=event.status,
        )

    logger.info("Recovery %s completed by %s", recovery_event_id, user_id)
    return outcome


def mark_retrieved(session: Session, recovery_event_id: uuid.UUID, user_id: uuid.UUID) -> TransitionOutcome:
    with atomic(session, Operation.MARK_RETRIEVED):
        now = _now()
        event = _advance(session, recovery_event_id, Operation.MARK_RETRIEVED, recovered_at=now)

        result = _execute(
            session,
            update(DropOff)
            .where(DropOff.recovery_event_id == recovery_event_id)
            .where(DropOff.retrieved_at.is_(None))
            .values(retrieved_at=now)
        )

        if result.rowcount != 1:
            raise PreconditionFailed("No outstanding drop-off for this recovery", reason="drop_off_missing")

        outcome = TransitionOutcome(
            operation=Operation.MARK_RETRIEVED,
            actor_id=user_id,
            recovery_event_id=recovery_event_id,
            disc_id=event.disc_id,
            counterparty_id=_counterparty(event, user_id),
            status=event.status,
        )

    logger.info("Drop-off for %s retrieved by %s", recovery_event_id, user_id)
    return outcome
