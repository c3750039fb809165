"""Post-commit notifications for recovery transitions.

Runs strictly after a transition's unit has committed. Nothing here can undo
or fail a transition: each step logs its own failure and moves on.
"""

import logging
import uuid
from typing import Optional

from fastapi import BackgroundTasks
from sqlmodel import Session

from discrecovery.models.notification import Notification, NotificationType
from discrecovery.models.profile import Profile
from discrecovery.services.guard import Operation
from discrecovery.services.push import ExpoPushChannel, PushStatus
from discrecovery.services.transitions import NotificationDraft, TransitionOutcome

logger = logging.getLogger(__name__)

DEFAULT_DISC_NAME = "the disc"

# operation -> (notification type, title, body template)
TEMPLATES = {
    Operation.REPORT_FOUND: (
        NotificationType.DISC_FOUND,
        "Your disc was found!",
        "{actor} found {disc}",
    ),
    Operation.PROPOSE_MEETUP: (
        NotificationType.MEETUP_PROPOSED,
        "New meetup proposal",
        "{actor} proposed a meetup for {disc}",
    ),
    Operation.ACCEPT_MEETUP: (
        NotificationType.MEETUP_ACCEPTED,
        "Meetup accepted!",
        "{actor} accepted your meetup proposal for {disc}",
    ),
    Operation.DECLINE_MEETUP: (
        NotificationType.MEETUP_DECLINED,
        "Meetup declined",
        "{actor} declined your meetup proposal for {disc}",
    ),
    Operation.CREATE_DROP_OFF: (
        NotificationType.DISC_DROPPED_OFF,
        "Disc dropped off for pickup",
        "{actor} left {disc} for you to pick up",
    ),
    Operation.COMPLETE_RECOVERY: (
        NotificationType.DISC_RECOVERED,
        "Disc recovered!",
        "{disc} has been marked as recovered by {actor}",
    ),
    Operation.MARK_RETRIEVED: (
        NotificationType.DISC_RETRIEVED,
        "Disc retrieved!",
        "{actor} picked up {disc}. Thank you for helping!",
    ),
    Operation.ABANDON_DISC: (
        NotificationType.DISC_ABANDONED,
        "Disc abandoned",
        "The owner has abandoned {disc}. It's now available for anyone to claim.",
    ),
    Operation.SURRENDER_DISC: (
        NotificationType.DISC_SURRENDERED,
        "Disc surrendered to you!",
        "{actor} has surrendered {disc} to you. It's now in your collection!",
    ),
    Operation.RELINQUISH_DISC: (
        NotificationType.DISC_RELINQUISHED,
        "Disc is now yours!",
        "{actor} has relinquished {disc} to you. It's now in your collection!",
    ),
}


def compose(operation: str, actor_name: str, disc_name: Optional[str], reason: Optional[str] = None) -> NotificationDraft:
    """Render the title and body for ``operation``; raises KeyError for operations without one."""
    _, title, template = TEMPLATES[operation]
    body = template.format(actor=actor_name, disc=disc_name or DEFAULT_DISC_NAME)

    # "{disc}" can open the sentence
    body = body[:1].upper() + body[1:]

    if reason and operation == Operation.DECLINE_MEETUP:
        body = f"{body}. Reason: {reason}"

    return NotificationDraft(title=title, body=body)


def notification_type(operation: str) -> str:
    return TEMPLATES[operation][0]


def deliver_push(bind, push_channel: ExpoPushChannel, recipient_id: uuid.UUID, title: str, body: str, data: dict) -> str:
    """Send one push on a session of its own; runs after the response when scheduled as a background task."""
    with Session(bind) as session:
        try:
            recipient = session.get(Profile, recipient_id)
            if recipient is None or not recipient.push_token:
                return PushStatus.SKIPPED

            result = push_channel.send(recipient.push_token, title, body, data)

            if result.status == PushStatus.DEVICE_NOT_REGISTERED:
                logger.info("Clearing unregistered push token for %s", recipient_id)
                recipient.push_token = None
                session.add(recipient)
                session.commit()
            elif result.status == PushStatus.FAILED:
                logger.warning("Push to %s failed: %s", recipient_id, result.detail)

            return result.status
        except Exception:
            session.rollback()
            logger.exception("Push delivery to %s raised", recipient_id)
            return PushStatus.FAILED


class NotificationDispatcher:
    def __init__(
        self,
        session: Session,
        push_channel: Optional[ExpoPushChannel] = None,
        background_tasks: Optional[BackgroundTasks] = None,
    ):
        self.session = session
        self.push_channel = push_channel
        self.background_tasks = background_tasks

    def _actor_name(self, actor_id: uuid.UUID) -> str:
        try:
            actor = self.session.get(Profile, actor_id)
        except Exception:
            logger.exception("Could not load profile %s for notification", actor_id)
            return "Someone"

        return actor.display_name() if actor else "Someone"

    def _persist(self, outcome: TransitionOutcome, draft: NotificationDraft, data: dict) -> Optional[Notification]:
        note = Notification(
            user_id=outcome.counterparty_id,
            type=notification_type(outcome.operation),
            title=draft.title,
            body=draft.body,
            data=data,
        )

        try:
            self.session.add(note)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("Failed to store %s notification for %s", outcome.operation, outcome.counterparty_id)
            return None

        return note

    def _push(self, recipient_id: uuid.UUID, title: str, body: str, data: dict) -> Optional[str]:
        if self.push_channel is None:
            return None

        bind = self.session.get_bind()
        if self.background_tasks is not None:
            self.background_tasks.add_task(deliver_push, bind, self.push_channel, recipient_id, title, body, data)
            return None

        return deliver_push(bind, self.push_channel, recipient_id, title, body, data)

    def notify(
        self,
        outcome: TransitionOutcome,
        disc_name: Optional[str] = None,
        reason: Optional[str] = None,
        extra: Optional[dict] = None,
    ) -> Optional[Notification]:
        """Store and push the counterparty's notification for a committed transition.

        Returns the stored notification, or None when there is nobody to
        notify or storing it failed.
        """
        if outcome.counterparty_id is None:
            return None

        data = outcome.payload()
        if extra:
            data.update(extra)

        if outcome.notification_id is not None:
            # already written inside the transition's own unit
            note = self.session.get(Notification, outcome.notification_id)
            if note is None:
                logger.warning("Notification %s missing after commit", outcome.notification_id)
                return None
        else:
            try:
                draft = compose(outcome.operation, self._actor_name(outcome.actor_id), disc_name, reason)
            except Exception:
                logger.exception("Could not compose %s notification", outcome.operation)
                return None

            note = self._persist(outcome, draft, data)
            if note is None:
                return None

        self._push(outcome.counterparty_id, note.title, note.body, dict(note.data or data))
        return note
