"""
Side effects that follow a donation state change.

Receipts, emails and in-app notifications are delivered here. Every public
method logs and swallows its own failures: by the time fanout runs the status
change is already committed and callers (including PayMongo webhooks) must
not see an error because an email could not be sent.
"""
from typing import Protocol

import structlog

from donation_service import database
from donation_service.models import (
    Account,
    Donation,
    DonationStatus,
    Event,
    Notification,
    OVERSIGHT_ROLES,
    RecipientType,
)

logger = structlog.get_logger(__name__)


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> None: ...


class LoggingMailer:
    """Stand-in transport; the email service consumes these log lines."""

    def send(self, to: str, subject: str, body: str) -> None:
        logger.info("Email queued", to=to, subject=subject)


def receipt_url_for(donation: Donation) -> str:
    # PDF rendering lives in the receipt service
    return f"/receipts/{donation.id}.pdf"


def _peso(donation: Donation) -> str:
    return f"PHP {float(donation.amount):,.2f}"


class OutcomeFanout:
    def __init__(self, session_factory=None, mailer: Mailer | None = None):
        self._session_factory = session_factory
        self.mailer = mailer or LoggingMailer()

    def _session(self):
        factory = self._session_factory or database.SessionLocal
        return factory()

    # -- recipients -------------------------------------------------------

    @staticmethod
    def _oversight_ids(db) -> list[str]:
        rows = db.query(Account.id).filter(Account.role.in_(OVERSIGHT_ROLES)).all()
        return [row[0] for row in rows]

    def _recipient_staff_ids(self, db, donation: Donation) -> list[str]:
        if donation.recipient_type == RecipientType.DEPARTMENT and donation.department_id:
            return [donation.department_id]
        if donation.recipient_type == RecipientType.EVENT and donation.event_id:
            event = db.get(Event, donation.event_id)
            if event and event.created_by:
                return [event.created_by]
        return self._oversight_ids(db)

    @staticmethod
    def _notify(db, user_ids, title: str, message: str, payload: dict) -> int:
        unique = list(dict.fromkeys(uid for uid in user_ids if uid))
        for uid in unique:
            db.add(Notification(user_id=uid, title=title, message=message, payload=payload))
        return len(unique)

    @staticmethod
    def _target_label(db, donation: Donation) -> str:
        if donation.recipient_type == RecipientType.EVENT and donation.event_id:
            event = db.get(Event, donation.event_id)
            if event:
                return event.title
        if donation.recipient_type == RecipientType.DEPARTMENT and donation.department_id:
            department = db.get(Account, donation.department_id)
            if department:
                return department.name
        return "CRD"

    # -- operations -------------------------------------------------------

    def deliver_outcome(self, donation: Donation, outcome: DonationStatus) -> None:
        try:
            with self._session() as db:
                current = db.get(Donation, donation.id)
                if current is None:
                    logger.warning("Fanout skipped, donation missing", donation_id=donation.id)
                    return
                if outcome == DonationStatus.SUCCEEDED:
                    self._deliver_success(db, current)
                else:
                    self._deliver_failure(db, current)
                db.commit()
            logger.info("Donation outcome delivered", donation_id=donation.id,
                        outcome=outcome.value)
        except Exception:
            logger.exception("Donation outcome fanout failed", donation_id=donation.id,
                             outcome=outcome.value)

    def _deliver_success(self, db, donation: Donation):
        donation.receipt_url = receipt_url_for(donation)
        target = self._target_label(db, donation)
        payload = {"donationId": donation.id, "receiptUrl": donation.receipt_url}

        self.mailer.send(
            donation.donor_email,
            "Thank you for your donation",
            f"We received your donation of {_peso(donation)} to {target}. "
            f"Your receipt: {donation.receipt_url}",
        )
        self._notify(db, [donation.user_id], "Donation received",
                     f"Your donation of {_peso(donation)} to {target} was successful.", payload)
        self._notify(db, self._recipient_staff_ids(db, donation), "New donation",
                     f"{donation.display_name} donated {_peso(donation)} to {target}.", payload)

    def _deliver_failure(self, db, donation: Donation):
        target = self._target_label(db, donation)
        payload = {"donationId": donation.id}

        self.mailer.send(
            donation.donor_email,
            "Your donation could not be completed",
            f"Your donation of {_peso(donation)} to {target} did not go through. "
            "No amount was charged.",
        )
        self._notify(db, [donation.user_id], "Donation failed",
                     f"Your donation of {_peso(donation)} to {target} failed.", payload)
        self._notify(db, self._recipient_staff_ids(db, donation), "Donation failed",
                     f"A donation of {_peso(donation)} to {target} failed.", payload)

    def notify_submitted(self, donation: Donation) -> None:
        """Cash donation recorded and waiting for verification."""
        try:
            with self._session() as db:
                target = self._target_label(db, donation)
                payload = {"donationId": donation.id}
                staff = self._recipient_staff_ids(db, donation)
                if donation.recipient_type == RecipientType.DEPARTMENT:
                    # Oversight sees department cash donations too
                    staff = staff + self._oversight_ids(db)

                self.mailer.send(
                    donation.donor_email,
                    "Cash donation submitted",
                    f"Your cash donation of {_peso(donation)} to {target} is awaiting verification.",
                )
                self._notify(db, [donation.user_id], "Cash donation submitted",
                             "Your cash donation is awaiting verification.", payload)
                self._notify(db, staff, "Cash donation to verify",
                             f"{donation.display_name} pledged {_peso(donation)} in cash to {target}.",
                             payload)
                db.commit()
        except Exception:
            logger.exception("Cash submission fanout failed", donation_id=donation.id)

    def notify_cash_verified(self, donation: Donation, by_department: bool) -> None:
        try:
            with self._session() as db:
                target = self._target_label(db, donation)
                payload = {"donationId": donation.id}

                self.mailer.send(
                    donation.donor_email,
                    "Cash donation verified",
                    f"Your cash donation of {_peso(donation)} to {target} has been verified.",
                )
                self._notify(db, [donation.user_id], "Cash donation verified",
                             f"Your cash donation to {target} has been verified.", payload)
                if by_department:
                    self._notify(db, self._oversight_ids(db), "Cash donation verified",
                                 f"{target} verified a cash donation of {_peso(donation)}.",
                                 payload)
                db.commit()
        except Exception:
            logger.exception("Cash verification fanout failed", donation_id=donation.id)


def get_fanout() -> OutcomeFanout:
    return OutcomeFanout()
