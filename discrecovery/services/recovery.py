import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlmodel import Session

from discrecovery.models.disc import Disc
from discrecovery.models.drop_off import DropOff
from discrecovery.models.meetup_proposal import MeetupProposal
from discrecovery.models.profile import Profile
from discrecovery.models.recovery_event import RecoveryEvent
from discrecovery.services import guard, store, transitions
from discrecovery.services.errors import Forbidden, InvalidInput, NotFound, PreconditionFailed
from discrecovery.services.guard import DenialReason, Operation, Role
from discrecovery.services.notifier import NotificationDispatcher, compose
from discrecovery.services.store import RecoveryContext, RecoveryDetails
from discrecovery.services.transitions import TransitionOutcome

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
MAX_LOCATION_LENGTH = 200


def _clean_text(value: Optional[str], field: str, max_length: int) -> Optional[str]:
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    if len(value) > max_length:
        raise InvalidInput(f"{field} must be at most {max_length} characters")

    return value


def _check_coordinates(latitude: Optional[float], longitude: Optional[float], required: bool = False):
    if latitude is None and longitude is None:
        if required:
            raise InvalidInput("Latitude and longitude are required")
        return

    if latitude is None or longitude is None:
        raise InvalidInput("Latitude and longitude must be given together")

    if not -90 <= latitude <= 90:
        raise InvalidInput("Latitude must be between -90 and 90")

    if not -180 <= longitude <= 180:
        raise InvalidInput("Longitude must be between -180 and 180")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _raise_for(decision: guard.GuardDecision, operation: str):
    if decision.allowed:
        return

    if decision.reason == DenialReason.NOT_PARTICIPANT:
        raise Forbidden("You are not part of this recovery", reason=decision.reason)

    if decision.reason == DenialReason.WRONG_ROLE:
        raise Forbidden(f"Your role cannot perform {operation}", reason=decision.reason)

    raise PreconditionFailed(f"{operation} is not allowed in the current state", reason=decision.reason)


class RecoveryService:
    """Entry point for every recovery operation.

    Each call validates its input, loads the rows it needs, asks the guard,
    runs one atomic transition and then hands the outcome to the notifier.
    """

    def __init__(self, session: Session, notifier: Optional[NotificationDispatcher] = None):
        self.session = session
        self.notifier = notifier

    def _authorize(self, operation: str, recovery: RecoveryContext, user_id: uuid.UUID) -> str:
        decision = guard.evaluate(
            operation,
            user_id,
            recovery.owner_id,
            recovery.finder_id,
            recovery.event.status,
        )
        _raise_for(decision, operation)
        return decision.role

    def _notify(self, outcome: TransitionOutcome, disc_name: Optional[str] = None, **kwargs):
        if self.notifier is None:
            return None
        return self.notifier.notify(outcome, disc_name=disc_name, **kwargs)

    def _fresh_event(self, recovery_event_id: uuid.UUID) -> RecoveryEvent:
        return self.session.get(RecoveryEvent, recovery_event_id, populate_existing=True)

    # Reporting

    def report_found(
        self,
        finder_id: uuid.UUID,
        qr_code: Optional[str] = None,
        disc_id: Optional[uuid.UUID] = None,
        owner_id: Optional[uuid.UUID] = None,
        message: Optional[str] = None,
    ) -> RecoveryEvent:
        message = _clean_text(message, "Message", MAX_MESSAGE_LENGTH)

        if qr_code is not None and disc_id is not None:
            raise InvalidInput("Give either a QR code or a disc id, not both")

        disc: Optional[Disc] = None
        if qr_code is not None:
            if not qr_code.strip():
                raise InvalidInput("QR code must not be empty")
            disc = store.get_disc_by_qr_code(self.session, qr_code)
        elif disc_id is not None:
            disc = store.get_disc(self.session, disc_id)
        elif owner_id is None:
            raise InvalidInput("A QR code, disc id or owner id is required")

        if disc is not None:
            if disc.owner_id is None:
                raise PreconditionFailed("This disc has no owner; claim it instead", reason="disc_ownerless")
            if owner_id is not None and owner_id != disc.owner_id:
                raise PreconditionFailed("Disc does not belong to the named owner", reason="owner_mismatch")
            owner_id = disc.owner_id
        elif self.session.get(Profile, owner_id) is None:
            raise NotFound("Owner not found")

        _raise_for(guard.evaluate_report_found(finder_id, owner_id), Operation.REPORT_FOUND)
        finder = self.session.get(Profile, finder_id)

        outcome = transitions.report_found(
            self.session,
            finder_id=finder_id,
            owner_id=owner_id,
            disc_id=disc.id if disc is not None else None,
            finder_message=message,
            notification=compose(
                Operation.REPORT_FOUND,
                finder.display_name() if finder else "Someone",
                disc.name if disc is not None else "your disc",
            ),
        )

        self._notify(outcome)
        return self._fresh_event(outcome.recovery_event_id)

    # Meetups

    def propose_meetup(
        self,
        recovery_event_id: uuid.UUID,
        user_id: uuid.UUID,
        location_name: str,
        proposed_datetime: datetime,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        message: Optional[str] = None,
    ) -> MeetupProposal:
        location_name = _clean_text(location_name, "Location", MAX_LOCATION_LENGTH)
        if not location_name:
            raise InvalidInput("Location is required")

        if proposed_datetime is None:
            raise InvalidInput("Meetup time is required")

        _check_coordinates(latitude, longitude)
        message = _clean_text(message, "Message", MAX_MESSAGE_LENGTH)

        recovery = store.load_recovery(self.session, recovery_event_id)
        self._authorize(Operation.PROPOSE_MEETUP, recovery, user_id)
        disc_name = recovery.disc_name

        outcome = transitions.propose_meetup(
            self.session,
            recovery_event_id,
            proposed_by=user_id,
            location_name=location_name,
            proposed_datetime=_as_utc(proposed_datetime),
            latitude=latitude,
            longitude=longitude,
            message=message,
        )

        extra = {"declined_count": outcome.declined_count} if outcome.declined_count else None
        self._notify(outcome, disc_name, extra=extra)
        return self.session.get(MeetupProposal, outcome.proposal_id, populate_existing=True)

    def accept_meetup(self, proposal_id: uuid.UUID, user_id: uuid.UUID) -> MeetupProposal:
        ctx = store.load_proposal(self.session, proposal_id)
        self._authorize(Operation.ACCEPT_MEETUP, ctx.recovery, user_id)
        disc_name = ctx.recovery.disc_name

        outcome = transitions.accept_meetup(self.session, proposal_id, ctx.recovery.event.id, user_id)

        self._notify(outcome, disc_name)
        return self.session.get(MeetupProposal, proposal_id, populate_existing=True)

    def decline_meetup(self, proposal_id: uuid.UUID, user_id: uuid.UUID, reason: Optional[str] = None) -> MeetupProposal:
        reason = _clean_text(reason, "Reason", MAX_MESSAGE_LENGTH)

        ctx = store.load_proposal(self.session, proposal_id)
        self._authorize(Operation.DECLINE_MEETUP, ctx.recovery, user_id)
        disc_name = ctx.recovery.disc_name

        outcome = transitions.decline_meetup(self.session, proposal_id, ctx.recovery.event.id, user_id)

        self._notify(outcome, disc_name, reason=reason, extra={"reason": reason} if reason else None)
        return self.session.get(MeetupProposal, proposal_id, populate_existing=True)

    def complete_recovery(self, recovery_event_id: uuid.UUID, user_id: uuid.UUID) -> RecoveryEvent:
        recovery = store.load_recovery(self.session, recovery_event_id)
        self._authorize(Operation.COMPLETE_RECOVERY, recovery, user_id)
        disc_name = recovery.disc_name

        outcome = transitions.complete_recovery(self.session, recovery_event_id, user_id)

        self._notify(outcome, disc_name)
        return self._fresh_event(recovery_event_id)

    # Drop-offs

    def authorize_drop_off(self, recovery_event_id: uuid.UUID, user_id: uuid.UUID) -> RecoveryContext:
        """Check the caller may drop off for this recovery before any photo is stored."""
        recovery = store.load_recovery(self.session, recovery_event_id)
        self._authorize(Operation.CREATE_DROP_OFF, recovery, user_id)
        return recovery

    def create_drop_off(
        self,
        recovery_event_id: uuid.UUID,
        user_id: uuid.UUID,
        photo_url: str,
        latitude: float,
        longitude: float,
        location_notes: Optional[str] = None,
    ) -> DropOff:
        if not photo_url or not photo_url.strip():
            raise InvalidInput("A drop-off photo is required")

        _check_coordinates(latitude, longitude, required=True)
        location_notes = _clean_text(location_notes, "Location notes", MAX_MESSAGE_LENGTH)

        recovery = store.load_recovery(self.session, recovery_event_id)
        self._authorize(Operation.CREATE_DROP_OFF, recovery, user_id)
        disc_name = recovery.disc_name

        outcome = transitions.create_drop_off(
            self.session,
            recovery_event_id,
            finder_id=user_id,
            photo_url=photo_url.strip(),
            latitude=latitude,
            longitude=longitude,
            location_notes=location_notes,
        )

        self._notify(outcome, disc_name)
        return self.session.get(DropOff, outcome.drop_off_id, populate_existing=True)

    def mark_retrieved(self, recovery_event_id: uuid.UUID, user_id: uuid.UUID) -> RecoveryEvent:
        recovery = store.load_recovery(self.session, recovery_event_id)
        self._authorize(Operation.MARK_RETRIEVED, recovery, user_id)
        disc_name = recovery.disc_name

        outcome = transitions.mark_retrieved(self.session, recovery_event_id, user_id)

        self._notify(outcome, disc_name)
        return self._fresh_event(recovery_event_id)

    # Custody changes

    def _linked_disc(self, recovery: RecoveryContext) -> Disc:
        if recovery.disc is None:
            raise PreconditionFailed("This recovery is not linked to a registered disc", reason="disc_unmatched")
        return recovery.disc

    def abandon_disc(self, recovery_event_id: uuid.UUID, user_id: uuid.UUID) -> RecoveryEvent:
        recovery = store.load_recovery(self.session, recovery_event_id)
        self._authorize(Operation.ABANDON_DISC, recovery, user_id)
        disc = self._linked_disc(recovery)
        disc_name = disc.name

        outcome = transitions.abandon(self.session, recovery_event_id, disc.id, user_id)

        self._notify(outcome, disc_name)
        return self._fresh_event(recovery_event_id)

    def surrender_disc(self, recovery_event_id: uuid.UUID, user_id: uuid.UUID) -> RecoveryEvent:
        recovery = store.load_recovery(self.session, recovery_event_id)
        self._authorize(Operation.SURRENDER_DISC, recovery, user_id)
        disc = self._linked_disc(recovery)
        disc_name = disc.name

        outcome = transitions.surrender(
            self.session,
            recovery_event_id,
            disc.id,
            finder_id=recovery.finder_id,
            original_owner_id=user_id,
            qr_code_id=disc.qr_code_id,
        )

        self._notify(outcome, disc_name)
        return self._fresh_event(recovery_event_id)

    def relinquish_disc(self, recovery_event_id: uuid.UUID, user_id: uuid.UUID) -> RecoveryEvent:
        recovery = store.load_recovery(self.session, recovery_event_id)
        self._authorize(Operation.RELINQUISH_DISC, recovery, user_id)
        disc = self._linked_disc(recovery)
        disc_name = disc.name

        outcome = transitions.relinquish(
            self.session,
            recovery_event_id,
            disc.id,
            finder_id=recovery.finder_id,
            original_owner_id=user_id,
            qr_code_id=disc.qr_code_id,
        )

        self._notify(outcome, disc_name)
        return self._fresh_event(recovery_event_id)

    def claim_disc(self, disc_id: uuid.UUID, user_id: uuid.UUID) -> Disc:
        disc = store.get_disc(self.session, disc_id)

        decision = guard.evaluate_claim(disc.owner_id)
        if decision.denied:
            raise PreconditionFailed("This disc is not available to claim", reason="already_claimed")

        transitions.claim(self.session, disc_id, user_id)
        return self.session.get(Disc, disc_id, populate_existing=True)

    # Reads

    def get_recovery_details(self, recovery_event_id: uuid.UUID, user_id: uuid.UUID) -> RecoveryDetails:
        recovery = store.load_recovery(self.session, recovery_event_id)

        # the event's own owner keeps read access after custody moves on
        decision = guard.evaluate(
            Operation.VIEW,
            user_id,
            recovery.event.owner_id,
            recovery.finder_id,
            recovery.event.status,
        )
        _raise_for(decision, Operation.VIEW)

        return store.load_details(self.session, recovery)

    def list_recoveries(self, user_id: uuid.UUID, role: str = Role.OWNER) -> List[RecoveryContext]:
        if role not in (Role.OWNER, Role.FINDER):
            raise InvalidInput("Role must be 'owner' or 'finder'")
        return store.list_recoveries_for(self.session, user_id, role)
