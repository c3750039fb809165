import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from sqlmodel import Session, select

from discrecovery.models.disc import Disc
from discrecovery.models.drop_off import DropOff
from discrecovery.models.meetup_proposal import MeetupProposal
from discrecovery.models.qr_code import QRCode, QRCodeStatus
from discrecovery.models.recovery_event import RecoveryEvent, RecoveryStatus
from discrecovery.services.errors import NotFound, PreconditionFailed


@dataclass
class RecoveryContext:
    """A recovery event joined with its (possibly unmatched) disc."""

    event: RecoveryEvent
    disc: Optional[Disc]

    @property
    def owner_id(self) -> Optional[uuid.UUID]:
        # the disc row is authoritative once the report is matched
        if self.disc is not None:
            return self.disc.owner_id
        return self.event.owner_id

    @property
    def finder_id(self) -> uuid.UUID:
        return self.event.finder_id

    @property
    def disc_name(self) -> Optional[str]:
        return self.disc.name if self.disc is not None else None


@dataclass
class ProposalContext:
    proposal: MeetupProposal
    recovery: RecoveryContext


@dataclass
class RecoveryDetails:
    recovery: RecoveryContext
    proposals: List[MeetupProposal] = field(default_factory=list)
    drop_off: Optional[DropOff] = None


def get_disc(session: Session, disc_id: uuid.UUID) -> Disc:
    disc = session.get(Disc, disc_id)
    if not disc:
        raise NotFound("Disc not found")
    return disc


def get_disc_by_qr_code(session: Session, short_code: str) -> Disc:
    qr_code = session.exec(
        select(QRCode).where(QRCode.short_code == short_code.strip().upper())
    ).first()

    if not qr_code:
        raise NotFound("Invalid QR code")

    if qr_code.status not in QRCodeStatus.LINKED:
        raise PreconditionFailed("This QR code is not active", reason="qr_code_inactive")

    disc = session.exec(select(Disc).where(Disc.qr_code_id == qr_code.id)).first()
    if not disc:
        raise NotFound("Disc not found for this QR code", reason="qr_code_unassigned")

    return disc


def load_recovery(session: Session, recovery_event_id: uuid.UUID) -> RecoveryContext:
    row = session.exec(
        select(RecoveryEvent, Disc)
        .outerjoin(Disc, Disc.id == RecoveryEvent.disc_id)
        .where(RecoveryEvent.id == recovery_event_id)
    ).first()

    if not row:
        raise NotFound("Recovery event not found")

    event, disc = row
    return RecoveryContext(event=event, disc=disc)


def load_proposal(session: Session, proposal_id: uuid.UUID) -> ProposalContext:
    row = session.exec(
        select(MeetupProposal, RecoveryEvent, Disc)
        .join(RecoveryEvent, RecoveryEvent.id == MeetupProposal.recovery_event_id)
        .outerjoin(Disc, Disc.id == RecoveryEvent.disc_id)
        .where(MeetupProposal.id == proposal_id)
    ).first()

    if not row:
        raise NotFound("Meetup proposal not found")

    proposal, event, disc = row
    return ProposalContext(proposal=proposal, recovery=RecoveryContext(event=event, disc=disc))


def load_details(session: Session, recovery: RecoveryContext) -> RecoveryDetails:
    proposals = session.exec(
        select(MeetupProposal)
        .where(MeetupProposal.recovery_event_id == recovery.event.id)
        .order_by(MeetupProposal.created_at.desc())
    ).all()

    drop_off = session.exec(
        select(DropOff).where(DropOff.recovery_event_id == recovery.event.id)
    ).first()

    return RecoveryDetails(recovery=recovery, proposals=list(proposals), drop_off=drop_off)


def find_active_recovery(session: Session, disc_id: uuid.UUID) -> Optional[RecoveryEvent]:
    return session.exec(
        select(RecoveryEvent)
        .where(RecoveryEvent.disc_id == disc_id)
        .where(RecoveryEvent.status.in_(sorted(RecoveryStatus.ACTIVE)))
    ).first()


def list_recoveries_for(session: Session, user_id: uuid.UUID, role: str) -> List[RecoveryContext]:
    query = (
        select(RecoveryEvent, Disc)
        .outerjoin(Disc, Disc.id == RecoveryEvent.disc_id)
        .order_by(RecoveryEvent.created_at.desc())
    )

    if role == "finder":
        query = query.where(RecoveryEvent.finder_id == user_id)
    else:
        query = query.where(RecoveryEvent.owner_id == user_id)

    return [RecoveryContext(event=event, disc=disc) for event, disc in session.exec(query).all()]
