"""Read-side queries over donations: listings, receipts and event totals."""
from dataclasses import dataclass
from decimal import Decimal

import structlog
from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from donation_service.auth import Actor
from donation_service.errors import PermissionDeniedError, ValidationError
from donation_service.fanout import receipt_url_for
from donation_service.models import Donation, DonationStatus, Event
from donation_service.reconciliation import get_donation

logger = structlog.get_logger(__name__)

# Money that actually arrived
COMPLETED_STATUSES = (DonationStatus.SUCCEEDED, DonationStatus.CASH_COMPLETED)


@dataclass
class EventTotal:
    event_id: str
    title: str
    is_open_for_donation: bool
    total: Decimal
    count: int

    def to_dict(self):
        return {
            "eventId": self.event_id,
            "eventTitle": self.title,
            "isOpenForDonation": self.is_open_for_donation,
            "totalDonations": float(self.total),
            "donationCount": self.count,
        }


def can_view(actor: Actor, donation: Donation) -> bool:
    is_owner = donation.user_id is not None and donation.user_id == actor.id
    is_department = donation.department_id is not None and donation.department_id == actor.id
    return is_owner or is_department or actor.is_oversight


def _require_oversight(actor: Actor):
    if not actor.is_oversight:
        raise PermissionDeniedError(
            "Access denied. CRD Staff or System Administrator required."
        )


def get_visible_donation(db: Session, donation_id: str, actor: Actor) -> Donation:
    donation = get_donation(db, donation_id)
    if not can_view(actor, donation):
        raise PermissionDeniedError("Not allowed to view this donation")
    return donation


def list_my_donations(db: Session, actor: Actor) -> list[Donation]:
    return (
        db.query(Donation)
        .filter(Donation.user_id == actor.id)
        .order_by(Donation.created_at.desc())
        .all()
    )


def list_all_donations(db: Session, actor: Actor) -> list[Donation]:
    _require_oversight(actor)
    return db.query(Donation).order_by(Donation.created_at.desc()).all()


def get_receipt_url(db: Session, donation_id: str, actor: Actor) -> str:
    """Return the receipt location, issuing one for a completed donation that lacks it."""
    donation = get_visible_donation(db, donation_id, actor)
    if donation.receipt_url:
        return donation.receipt_url
    if donation.status not in COMPLETED_STATUSES:
        raise ValidationError("A receipt is available once the donation is completed")

    donation.receipt_url = receipt_url_for(donation)
    db.commit()
    logger.info("Receipt issued on request", donation_id=donation.id,
                receipt_url=donation.receipt_url)
    return donation.receipt_url


def totals_per_event(db: Session, actor: Actor) -> list[EventTotal]:
    _require_oversight(actor)
    rows = (
        db.query(Event, func.sum(Donation.amount), func.count(Donation.id))
        .outerjoin(Donation, and_(Donation.event_id == Event.id,
                                  Donation.status.in_(COMPLETED_STATUSES)))
        .group_by(Event.id)
        .order_by(Event.title)
        .all()
    )
    return [
        EventTotal(
            event_id=event.id,
            title=event.title,
            is_open_for_donation=event.is_open_for_donation,
            total=Decimal(str(total or 0)),
            count=count,
        )
        for event, total, count in rows
    ]
