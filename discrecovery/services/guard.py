"""Authorization guard for recovery transitions.

Pure functions only: the guard decides from the row state the caller read and
never touches the database. Every transition re-checks its state inside its
atomic unit, so an ``allowed`` decision here is advisory; a denial is final.
"""

import uuid
from dataclasses import dataclass
from typing import FrozenSet, Optional

from discrecovery.models.recovery_event import RecoveryStatus


class Operation:
    REPORT_FOUND = "report_found"
    PROPOSE_MEETUP = "propose_meetup"
    ACCEPT_MEETUP = "accept_meetup"
    DECLINE_MEETUP = "decline_meetup"
    CREATE_DROP_OFF = "create_drop_off"
    COMPLETE_RECOVERY = "complete_recovery"
    MARK_RETRIEVED = "mark_retrieved"
    ABANDON_DISC = "abandon_disc"
    SURRENDER_DISC = "surrender_disc"
    RELINQUISH_DISC = "relinquish_disc"
    CLAIM_DISC = "claim_disc"
    VIEW = "view"


class Role:
    OWNER = "owner"
    FINDER = "finder"


class DenialReason:
    NOT_PARTICIPANT = "not_participant"
    WRONG_ROLE = "wrong_role"
    WRONG_STATE = "wrong_state"


@dataclass(frozen=True)
class TransitionRule:
    from_statuses: FrozenSet[str]
    to_status: Optional[str]
    roles: FrozenSet[str]


BOTH = frozenset({Role.OWNER, Role.FINDER})
OWNER_ONLY = frozenset({Role.OWNER})
FINDER_ONLY = frozenset({Role.FINDER})

TRANSITIONS = {
    Operation.PROPOSE_MEETUP: TransitionRule(
        frozenset({RecoveryStatus.FOUND, RecoveryStatus.MEETUP_PROPOSED}),
        RecoveryStatus.MEETUP_PROPOSED,
        BOTH,
    ),
    Operation.ACCEPT_MEETUP: TransitionRule(
        frozenset({RecoveryStatus.MEETUP_PROPOSED}),
        RecoveryStatus.MEETUP_CONFIRMED,
        OWNER_ONLY,
    ),
    Operation.DECLINE_MEETUP: TransitionRule(
        frozenset({RecoveryStatus.MEETUP_PROPOSED}),
        RecoveryStatus.FOUND,
        OWNER_ONLY,
    ),
    Operation.CREATE_DROP_OFF: TransitionRule(
        frozenset({RecoveryStatus.FOUND}),
        RecoveryStatus.DROPPED_OFF,
        FINDER_ONLY,
    ),
    Operation.COMPLETE_RECOVERY: TransitionRule(
        frozenset({RecoveryStatus.MEETUP_CONFIRMED}),
        RecoveryStatus.RECOVERED,
        BOTH,
    ),
    Operation.MARK_RETRIEVED: TransitionRule(
        frozenset({RecoveryStatus.DROPPED_OFF}),
        RecoveryStatus.RECOVERED,
        OWNER_ONLY,
    ),
    Operation.ABANDON_DISC: TransitionRule(
        frozenset({RecoveryStatus.FOUND, RecoveryStatus.MEETUP_PROPOSED, RecoveryStatus.MEETUP_CONFIRMED}),
        RecoveryStatus.ABANDONED,
        OWNER_ONLY,
    ),
    Operation.SURRENDER_DISC: TransitionRule(
        frozenset({RecoveryStatus.FOUND}),
        RecoveryStatus.SURRENDERED,
        OWNER_ONLY,
    ),
    Operation.RELINQUISH_DISC: TransitionRule(
        frozenset({RecoveryStatus.MEETUP_CONFIRMED, RecoveryStatus.DROPPED_OFF}),
        RecoveryStatus.RELINQUISHED,
        OWNER_ONLY,
    ),
    # read access: any participant, any state
    Operation.VIEW: TransitionRule(
        frozenset(RecoveryStatus.ACTIVE | RecoveryStatus.TERMINAL),
        None,
        BOTH,
    ),
}


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: Optional[str] = None
    role: Optional[str] = None

    @property
    def denied(self) -> bool:
        return not self.allowed


def allowed_from(operation: str) -> FrozenSet[str]:
    return TRANSITIONS[operation].from_statuses


def target_status(operation: str) -> Optional[str]:
    return TRANSITIONS[operation].to_status


def role_of(caller_id: uuid.UUID, owner_id: Optional[uuid.UUID], finder_id: Optional[uuid.UUID]) -> Optional[str]:
    if owner_id is not None and caller_id == owner_id:
        return Role.OWNER
    if finder_id is not None and caller_id == finder_id:
        return Role.FINDER
    return None


def evaluate(
    operation: str,
    caller_id: uuid.UUID,
    owner_id: Optional[uuid.UUID],
    finder_id: Optional[uuid.UUID],
    status: str,
) -> GuardDecision:
    """Decide whether ``caller_id`` may run ``operation`` on an event.

    Participation is checked before role and role before state, so a
    stranger is always told ``not_participant`` whatever the event's state.
    """
    rule = TRANSITIONS.get(operation)
    if rule is None:
        raise ValueError(f"Unknown recovery operation: {operation}")

    role = role_of(caller_id, owner_id, finder_id)
    if role is None:
        return GuardDecision(False, DenialReason.NOT_PARTICIPANT)

    if role not in rule.roles:
        return GuardDecision(False, DenialReason.WRONG_ROLE, role)

    if status not in rule.from_statuses:
        return GuardDecision(False, DenialReason.WRONG_STATE, role)

    return GuardDecision(True, role=role)


def evaluate_report_found(caller_id: uuid.UUID, owner_id: Optional[uuid.UUID]) -> GuardDecision:
    if owner_id is not None and caller_id == owner_id:
        return GuardDecision(False, DenialReason.WRONG_ROLE, Role.OWNER)
    return GuardDecision(True, role=Role.FINDER)


def evaluate_claim(disc_owner_id: Optional[uuid.UUID]) -> GuardDecision:
    # an owned disc is never claimable, not even by its owner
    if disc_owner_id is not None:
        return GuardDecision(False, DenialReason.WRONG_STATE)
    return GuardDecision(True)
