import enum

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from donation_service.auth import Actor
from donation_service.errors import PermissionDeniedError, PreconditionFailedError, ValidationError
from donation_service.fanout import OutcomeFanout, get_fanout
from donation_service.models import (
    Donation,
    DonationStatus,
    FanoutMarker,
    PaymentMethod,
    Role,
    utcnow,
)
from donation_service.reconciliation import get_donation

logger = structlog.get_logger(__name__)


class CashAction(str, enum.Enum):
    VERIFY = "verify"
    COMPLETE = "complete"
    REJECT = "reject"


ALL_ACTIONS = frozenset(CashAction)


def permitted_actions(actor: Actor | None, donation: Donation) -> frozenset:
    """What ``actor`` may do with a cash donation."""
    if actor is None or donation.payment_method != PaymentMethod.CASH:
        return frozenset()
    if actor.is_oversight:
        return ALL_ACTIONS
    if actor.role == Role.DEPARTMENT and donation.department_id == actor.id:
        return ALL_ACTIONS
    return frozenset()


def _load(db: Session, donation_id: str, actor: Actor, action: CashAction) -> Donation:
    donation = get_donation(db, donation_id)
    if donation.payment_method != PaymentMethod.CASH:
        raise ValidationError("This is not a cash donation")
    if action not in permitted_actions(actor, donation):
        raise PermissionDeniedError(f"You are not allowed to {action.value} this donation")
    return donation


def _precondition(donation: Donation, expected: DonationStatus):
    return PreconditionFailedError(
        f"Donation is {donation.status.value}; expected {expected.value}",
        expected=expected.value,
    )


def verify_cash(db: Session, donation_id: str, actor: Actor,
                receipt_number: str | None = None, notes: str | None = None,
                fanout: OutcomeFanout | None = None) -> Donation:
    donation = _load(db, donation_id, actor, CashAction.VERIFY)
    expected = DonationStatus.CASH_PENDING_VERIFICATION

    now = utcnow()
    result = db.execute(
        update(Donation)
        .where(Donation.id == donation.id, Donation.status == expected)
        .values(
            status=DonationStatus.CASH_VERIFIED,
            cash_verified_by=actor.id,
            cash_verified_at=now,
            cash_receipt_number=receipt_number or "",
            cash_verification_notes=notes or "",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(donation)
    if result.rowcount != 1:
        raise _precondition(donation, expected)

    logger.info("Cash donation verified", donation_id=donation.id, verified_by=actor.id,
                receipt_number=receipt_number)
    (fanout or get_fanout()).notify_cash_verified(donation, by_department=actor.role == Role.DEPARTMENT)
    return donation


def complete_cash(db: Session, donation_id: str, actor: Actor,
                  fanout: OutcomeFanout | None = None) -> Donation:
    donation = _load(db, donation_id, actor, CashAction.COMPLETE)
    expected = DonationStatus.CASH_VERIFIED

    now = utcnow()
    result = db.execute(
        update(Donation)
        .where(
            Donation.id == donation.id,
            Donation.status == expected,
            Donation.fanout_completed_for == FanoutMarker.NONE,
        )
        .values(
            status=DonationStatus.CASH_COMPLETED,
            cash_completed_by=actor.id,
            cash_completed_at=now,
            fanout_completed_for=FanoutMarker.SUCCEEDED,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(donation)
    if result.rowcount != 1:
        raise _precondition(donation, expected)

    logger.info("Cash donation completed", donation_id=donation.id, completed_by=actor.id)
    (fanout or get_fanout()).deliver_outcome(donation, DonationStatus.SUCCEEDED)
    return donation


def reject_cash(db: Session, donation_id: str, actor: Actor, notes: str | None = None,
                fanout: OutcomeFanout | None = None) -> Donation:
    """Mark a cash pledge that never arrived as failed."""
    donation = _load(db, donation_id, actor, CashAction.REJECT)
    open_states = (DonationStatus.CASH_PENDING_VERIFICATION, DonationStatus.CASH_VERIFIED)

    now = utcnow()
    result = db.execute(
        update(Donation)
        .where(
            Donation.id == donation.id,
            Donation.status.in_(open_states),
            Donation.fanout_completed_for == FanoutMarker.NONE,
        )
        .values(
            status=DonationStatus.FAILED,
            cash_verification_notes=notes or donation.cash_verification_notes or "",
            fanout_completed_for=FanoutMarker.FAILED,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(donation)
    if result.rowcount != 1:
        raise _precondition(donation, DonationStatus.CASH_PENDING_VERIFICATION)

    logger.info("Cash donation rejected", donation_id=donation.id, rejected_by=actor.id)
    (fanout or get_fanout()).deliver_outcome(donation, DonationStatus.FAILED)
    return donation
