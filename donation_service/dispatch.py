from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from urllib.parse import urlencode

import structlog
from sqlalchemy.orm import Session

from donation_service.auth import Actor
from donation_service.config import Settings, get_settings
from donation_service.errors import NotFoundError, PermissionDeniedError, ValidationError
from donation_service.fanout import OutcomeFanout, get_fanout
from donation_service.models import (
    Account,
    Donation,
    DonationStatus,
    Event,
    PaymentMethod,
    RecipientType,
    ReferenceKind,
    Role,
)
from donation_service.paymongo_service import PayMongoClient, open_gateway
from donation_service import reconciliation

logger = structlog.get_logger(__name__)

# Intent-based methods and what PayMongo is told to accept
INTENT_METHODS = {
    PaymentMethod.CARD: ["card"],
    PaymentMethod.PAYMAYA: ["paymaya"],
}

CENTAVO = Decimal("0.01")
# Largest value the Numeric(12, 2) amount column holds
MAX_AMOUNT = Decimal("9999999999.99")


@dataclass
class DispatchResult:
    donation: Donation
    checkout_url: str | None = None
    client_key: str | None = None

    @property
    def reference_kind(self) -> ReferenceKind | None:
        return self.donation.reference_kind


def redirect_url(settings: Settings, donation_id: str) -> str:
    query = urlencode({"donationId": donation_id})
    return f"{settings.api_base_url}/donations/paymongo-redirect?{query}"


def _parse_method(value) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationError(f"Invalid payment method '{value}'. Expected one of: {allowed}")


def _parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValidationError("Donation amount must be a number")
    if not amount.is_finite():
        raise ValidationError("Donation amount must be a number")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"Donation amount must not exceed {MAX_AMOUNT}")
    # Round to centavos before the positivity check so 0.001 cannot become 0.00
    amount = amount.quantize(CENTAVO, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise ValidationError("Donation amount must be greater than zero")
    return amount


def _resolve_recipient(db: Session, recipient_type, department_id, event_id):
    try:
        kind = RecipientType(recipient_type or RecipientType.CRD)
    except ValueError:
        raise ValidationError(f"Invalid recipient type '{recipient_type}'")

    if kind == RecipientType.DEPARTMENT:
        if not department_id:
            raise ValidationError("departmentId is required for department donations")
        department = db.get(Account, department_id)
        if department is None or department.role != Role.DEPARTMENT:
            raise ValidationError("Recipient is not a department or organization")
        return kind, department_id, None

    if kind == RecipientType.EVENT:
        if not event_id:
            raise ValidationError("eventId is required for event donations")
        event = db.get(Event, event_id)
        if event is None:
            raise NotFoundError("Event not found")
        if not event.is_open_for_donation:
            raise ValidationError("Event is not open for donations")
        return kind, None, event_id

    return kind, None, None


def create_donation(
    db: Session,
    *,
    amount,
    payment_method,
    donor_name: str | None = None,
    donor_email: str | None = None,
    message: str | None = None,
    recipient_type: str | None = None,
    department_id: str | None = None,
    event_id: str | None = None,
    is_anonymous: bool = False,
    actor: Actor | None = None,
    gateway: PayMongoClient | None = None,
    fanout: OutcomeFanout | None = None,
    settings: Settings | None = None,
) -> DispatchResult:
    donor_name = (donor_name or (actor.name if actor else "") or "").strip()
    donor_email = (donor_email or (actor.email if actor else "") or "").strip()
    if not donor_name:
        raise ValidationError("Donor name is required")
    if not donor_email:
        raise ValidationError("Donor email is required")
    if payment_method is None or payment_method == "":
        raise ValidationError("Payment method is required")
    method = _parse_method(payment_method)
    amount = _parse_amount(amount)
    kind, department_id, event_id = _resolve_recipient(db, recipient_type, department_id, event_id)

    if method.is_gateway:
        # Configuration problems surface before anything is written
        settings = settings or get_settings()
        settings.require("paymongo_secret_key", "api_base_url", "frontend_url")

    donation = Donation(
        donor_name=donor_name,
        donor_email=donor_email,
        amount=amount,
        message=message or "",
        is_anonymous=bool(is_anonymous),
        user_id=actor.id if actor else None,
        payment_method=method,
        status=DonationStatus.PENDING if method.is_gateway else DonationStatus.CASH_PENDING_VERIFICATION,
        recipient_type=kind,
        department_id=department_id,
        event_id=event_id,
    )
    db.add(donation)
    db.commit()
    db.refresh(donation)
    logger.info("Donation created", donation_id=donation.id, payment_method=method.value,
                amount=str(amount), recipient_type=kind.value)

    if method == PaymentMethod.CASH:
        (fanout or get_fanout()).notify_submitted(donation)
        return DispatchResult(donation=donation)

    with open_gateway(gateway, settings) as client:
        if method == PaymentMethod.GCASH:
            return _dispatch_source(db, donation, client, settings)
        return _dispatch_intent(db, donation, client, settings)


def _dispatch_source(db, donation, gateway, settings) -> DispatchResult:
    # PayMongo does not tell outcomes apart by URL; both land on the redirect handler
    url = redirect_url(settings, donation.id)
    source = gateway.create_source(donation.amount_minor, donation.payment_method.value, url, url)

    donation.paymongo_reference_id = source.id
    donation.reference_kind = ReferenceKind.SOURCE
    donation.source_checkout_url = source.checkout_url
    db.commit()
    db.refresh(donation)
    logger.info("Source created", donation_id=donation.id, reference_id=source.id)
    return DispatchResult(donation=donation, checkout_url=source.checkout_url)


def _dispatch_intent(db, donation, gateway, settings) -> DispatchResult:
    intent = gateway.create_payment_intent(
        donation.amount_minor,
        INTENT_METHODS[donation.payment_method],
        three_d_secure="automatic",
        metadata={"donationId": donation.id},
    )
    donation.paymongo_reference_id = intent.id
    donation.reference_kind = ReferenceKind.INTENT
    db.commit()
    logger.info("Payment intent created", donation_id=donation.id, reference_id=intent.id)

    checkout_url = None
    if donation.payment_method == PaymentMethod.PAYMAYA:
        payment_method_id = gateway.create_payment_method(
            "paymaya", {"name": donation.donor_name, "email": donation.donor_email}
        )
        attached = gateway.attach_payment_method(
            intent.id, payment_method_id, return_url=redirect_url(settings, donation.id)
        )
        checkout_url = attached.redirect_url
        donation.source_checkout_url = checkout_url
        db.commit()

    db.refresh(donation)
    return DispatchResult(donation=donation, checkout_url=checkout_url, client_key=intent.client_key)


def attach_card_payment_method(
    db: Session,
    donation_id: str,
    payment_method_id: str,
    actor: Actor,
    gateway: PayMongoClient | None = None,
    fanout: OutcomeFanout | None = None,
    settings: Settings | None = None,
) -> DispatchResult:
    """Attach a client-tokenized card to the donation's payment intent."""
    donation = db.get(Donation, donation_id)
    if donation is None:
        raise NotFoundError("Donation not found")
    if donation.user_id and donation.user_id != actor.id:
        raise PermissionDeniedError("Not your donation")
    if donation.payment_method != PaymentMethod.CARD or donation.reference_kind != ReferenceKind.INTENT:
        raise ValidationError("Only card donations accept a payment method")
    if donation.status.is_terminal:
        return DispatchResult(donation=donation)

    settings = settings or get_settings()
    settings.require("paymongo_secret_key", "api_base_url")
    with open_gateway(gateway, settings) as client:
        intent = client.attach_payment_method(
            donation.paymongo_reference_id, payment_method_id,
            return_url=redirect_url(settings, donation.id),
        )
    result = reconciliation.apply_transition(
        db, donation.id, reconciliation.map_intent_status(intent.status), fanout
    )
    return DispatchResult(donation=result.donation, checkout_url=intent.redirect_url)
