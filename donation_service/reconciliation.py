"""
Reconciliation of gateway donations against PayMongo.

Three signals report on the same payment and may arrive in any order, more
than once, and concurrently:

* the client polls (``confirm_source``),
* PayMongo posts a webhook (``handle_webhook_event``),
* the donor's browser comes back from checkout (``handle_redirect``).

All status writes go through ``apply_transition``, a conditional UPDATE that
only moves a donation out of ``pending`` and sets the fanout marker in the
same statement. Whichever handler's UPDATE matches the row runs the fanout;
every other handler observes a no-op.
"""
from dataclasses import dataclass
from urllib.parse import urlencode

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from donation_service.config import Settings, get_settings
from donation_service.errors import (
    NotFoundError,
    UnrecognizedReferenceError,
    ValidationError,
)
from donation_service.fanout import OutcomeFanout, get_fanout
from donation_service.models import (
    Donation,
    DonationStatus,
    FanoutMarker,
    PaymentMethod,
    ReferenceKind,
    utcnow,
)
from donation_service.paymongo_service import PayMongoClient, open_gateway

logger = structlog.get_logger(__name__)

SOURCE_PREFIX = "src_"
INTENT_PREFIX = "pi_"

SOURCE_STATUSES = {
    "paid": DonationStatus.SUCCEEDED,
    "failed": DonationStatus.FAILED,
    "expired": DonationStatus.FAILED,
}

INTENT_STATUSES = {
    "succeeded": DonationStatus.SUCCEEDED,
    "paid": DonationStatus.SUCCEEDED,
    "failed": DonationStatus.FAILED,
    "canceled": DonationStatus.FAILED,
}

PAYMENT_STATUSES = {
    "paid": DonationStatus.SUCCEEDED,
    "failed": DonationStatus.FAILED,
}

WEBHOOK_EVENTS = {
    "payment.paid": DonationStatus.SUCCEEDED,
    "payment.failed": DonationStatus.FAILED,
    "payment.refunded": DonationStatus.FAILED,
    "source.canceled": DonationStatus.FAILED,
}

CHARGEABLE = "chargeable"
SOURCE_CHARGEABLE_EVENT = "source.chargeable"


@dataclass
class TransitionResult:
    donation: Donation
    changed: bool


@dataclass
class ReconciliationResult:
    donation: Donation
    gateway_status: str | None
    changed: bool

    @property
    def status(self) -> DonationStatus:
        return self.donation.status


@dataclass
class WebhookOutcome:
    event_type: str
    matched: bool
    donation_id: str | None = None
    changed: bool = False
    acknowledged: bool = True


@dataclass
class RedirectTarget:
    url: str
    donation: Donation | None


# -- classification and mapping ------------------------------------------

def classify_reference(reference_id: str) -> ReferenceKind:
    if reference_id and reference_id.startswith(SOURCE_PREFIX):
        return ReferenceKind.SOURCE
    if reference_id and reference_id.startswith(INTENT_PREFIX):
        return ReferenceKind.INTENT
    raise UnrecognizedReferenceError(reference_id)


def resolve_reference_kind(donation: Donation, reference_id: str) -> ReferenceKind:
    if donation.reference_kind and donation.paymongo_reference_id == reference_id:
        return donation.reference_kind
    return classify_reference(reference_id)


def map_source_status(status: str) -> DonationStatus:
    # "chargeable" stays pending here; capturing it is a separate step
    return SOURCE_STATUSES.get(status, DonationStatus.PENDING)


def map_intent_status(status: str) -> DonationStatus:
    return INTENT_STATUSES.get(status, DonationStatus.PENDING)


def map_payment_status(status: str) -> DonationStatus:
    return PAYMENT_STATUSES.get(status, DonationStatus.PENDING)


def map_webhook_event(event_type: str) -> DonationStatus | None:
    return WEBHOOK_EVENTS.get(event_type)


# -- record store ---------------------------------------------------------

def get_donation(db: Session, donation_id: str) -> Donation:
    donation = db.get(Donation, donation_id) if donation_id else None
    if donation is None:
        raise NotFoundError("Donation not found")
    return donation


def find_by_reference(db: Session, reference_id: str) -> Donation | None:
    return db.query(Donation).filter(Donation.paymongo_reference_id == reference_id).first()


def apply_transition(db: Session, donation_id: str, target: DonationStatus,
                     fanout: OutcomeFanout | None = None) -> TransitionResult:
    """Move a pending donation to ``target`` and run its fanout exactly once."""
    if target not in (DonationStatus.SUCCEEDED, DonationStatus.FAILED):
        return TransitionResult(get_donation(db, donation_id), changed=False)

    result = db.execute(
        update(Donation)
        .where(
            Donation.id == donation_id,
            Donation.status == DonationStatus.PENDING,
            Donation.fanout_completed_for == FanoutMarker.NONE,
        )
        .values(status=target, fanout_completed_for=FanoutMarker(target.value),
                updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    changed = result.rowcount == 1
    donation = get_donation(db, donation_id)

    if not changed:
        logger.info("Transition skipped", donation_id=donation_id, target=target.value,
                    current=donation.status.value)
        return TransitionResult(donation, changed=False)

    logger.info("Donation status changed", donation_id=donation_id, status=target.value)
    (fanout or get_fanout()).deliver_outcome(donation, target)
    return TransitionResult(donation, changed=True)


def backfill_reference(db: Session, donation: Donation, reference_id: str,
                       kind: ReferenceKind) -> bool:
    """Store ``reference_id`` on a donation that has none yet."""
    if donation.paymongo_reference_id == reference_id:
        return False
    if donation.paymongo_reference_id:
        raise ValidationError("Payment reference does not belong to this donation")

    result = db.execute(
        update(Donation)
        .where(Donation.id == donation.id, Donation.paymongo_reference_id.is_(None))
        .values(paymongo_reference_id=reference_id, reference_kind=kind, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(donation)
    if result.rowcount != 1 and donation.paymongo_reference_id != reference_id:
        raise ValidationError("Payment reference does not belong to this donation")
    if result.rowcount == 1:
        logger.info("Payment reference backfilled", donation_id=donation.id,
                    reference_id=reference_id)
    return result.rowcount == 1


def _set_capture_claim(db: Session, donation_id: str, claim: bool) -> bool:
    stmt = update(Donation).where(Donation.id == donation_id)
    if claim:
        stmt = stmt.where(Donation.status == DonationStatus.PENDING,
                          Donation.capture_claimed_at.is_(None))
    result = db.execute(
        stmt.values(capture_claimed_at=utcnow() if claim else None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def capture_source(db: Session, donation: Donation, source_id: str,
                   gateway: PayMongoClient) -> DonationStatus:
    """Create a payment against a chargeable source.

    Only the handler that wins the capture claim calls PayMongo, so a source
    is never charged twice. A failed call releases the claim for a retry.
    """
    if not _set_capture_claim(db, donation.id, claim=True):
        logger.info("Capture already claimed", donation_id=donation.id, reference_id=source_id)
        return DonationStatus.PENDING

    try:
        payment = gateway.create_payment(
            donation.amount_minor,
            source_id,
            description=f"Donation {donation.id}",
            metadata={"donationId": donation.id},
        )
    except Exception:
        _set_capture_claim(db, donation.id, claim=False)
        raise

    logger.info("Source captured", donation_id=donation.id, reference_id=source_id,
                payment_id=payment.id, payment_status=payment.status)
    return map_payment_status(payment.status)


# -- entry points ---------------------------------------------------------

def confirm_source(db: Session, donation_id: str, reference_id: str | None = None,
                   gateway: PayMongoClient | None = None,
                   fanout: OutcomeFanout | None = None) -> ReconciliationResult:
    """Poll PayMongo for a donation's payment and apply what it reports."""
    donation = get_donation(db, donation_id)
    if not donation.payment_method.is_gateway:
        raise ValidationError("Cash donations are not confirmed through the payment service")

    reference_id = reference_id or donation.paymongo_reference_id
    if not reference_id:
        return ReconciliationResult(donation, gateway_status=None, changed=False)

    kind = resolve_reference_kind(donation, reference_id)
    backfill_reference(db, donation, reference_id, kind)
    if donation.status.is_terminal:
        return ReconciliationResult(donation, gateway_status=None, changed=False)

    with open_gateway(gateway) as client:
        if kind == ReferenceKind.SOURCE:
            source = client.get_source(reference_id)
            gateway_status = source.status
            if source.status == CHARGEABLE:
                target = capture_source(db, donation, reference_id, client)
            else:
                target = map_source_status(source.status)
        else:
            intent = client.get_payment_intent(reference_id)
            gateway_status = intent.status
            target = map_intent_status(intent.status)

    logger.info("Payment status polled", donation_id=donation_id, reference_id=reference_id,
                gateway_status=gateway_status, target=target.value)
    result = apply_transition(db, donation_id, target, fanout)
    return ReconciliationResult(result.donation, gateway_status=gateway_status,
                                changed=result.changed)


def _mapping(value) -> dict:
    return value if isinstance(value, dict) else {}


def _text(value) -> str | None:
    return value if isinstance(value, str) and value else None


def normalize_event(payload: dict) -> tuple[str, dict]:
    """Return ``(event_type, resource)`` for flat or PayMongo-enveloped events.

    Malformed parts collapse to empty values so the event goes unmatched.
    """
    data = _mapping(payload.get("data"))
    event_type = _text(payload.get("type"))
    if event_type:
        return event_type, data
    attributes = _mapping(data.get("attributes"))
    return _text(attributes.get("type")) or "", _mapping(attributes.get("data"))


def _resolve_event_donation(db: Session, resource: dict) -> Donation | None:
    attributes = _mapping(resource.get("attributes"))
    donation_id = _text(_mapping(attributes.get("metadata")).get("donationId"))
    if donation_id:
        donation = db.get(Donation, donation_id)
        if donation is not None:
            return donation

    candidates = (
        _text(resource.get("id")),
        _text(_mapping(attributes.get("source")).get("id")),
        _text(attributes.get("payment_intent_id")),
    )
    for reference_id in candidates:
        if reference_id:
            donation = find_by_reference(db, reference_id)
            if donation is not None:
                return donation
    return None


def handle_webhook_event(db: Session, payload: dict,
                         gateway: PayMongoClient | None = None,
                         fanout: OutcomeFanout | None = None,
                         settings: Settings | None = None) -> WebhookOutcome:
    event_type, resource = normalize_event(payload)
    donation = _resolve_event_donation(db, resource)
    if donation is None:
        # PayMongo retries unmatched events; nothing here can act on them
        logger.info("Webhook event unmatched", event_type=event_type,
                    resource_id=resource.get("id"))
        return WebhookOutcome(event_type=event_type, matched=False)

    if event_type == SOURCE_CHARGEABLE_EVENT:
        settings = settings or get_settings()
        source_id = _text(resource.get("id")) or donation.paymongo_reference_id
        if (not settings.capture_on_webhook or donation.status != DonationStatus.PENDING
                or donation.reference_kind != ReferenceKind.SOURCE
                or source_id != donation.paymongo_reference_id):
            logger.info("Chargeable source noted", donation_id=donation.id, reference_id=source_id)
            return WebhookOutcome(event_type=event_type, matched=True, donation_id=donation.id)
        with open_gateway(gateway, settings) as client:
            target = capture_source(db, donation, source_id, client)
    else:
        target = map_webhook_event(event_type)
        if target is None:
            logger.info("Webhook event ignored", event_type=event_type, donation_id=donation.id)
            return WebhookOutcome(event_type=event_type, matched=True, donation_id=donation.id)

    result = apply_transition(db, donation.id, target, fanout)
    return WebhookOutcome(event_type=event_type, matched=True, donation_id=donation.id,
                          changed=result.changed)


def _landing(settings: Settings, outcome: str, **params) -> str:
    query = urlencode({k: v for k, v in params.items() if v})
    return f"{settings.frontend_url}/donation/{outcome}" + (f"?{query}" if query else "")


def handle_redirect(db: Session, donation_id: str | None = None,
                    reference_id: str | None = None,
                    settings: Settings | None = None) -> RedirectTarget:
    """Finish browser-return bookkeeping and pick a landing page.

    The landing page depends on the payment method only. The real outcome
    arrives through polling or the webhook.
    """
    settings = settings or get_settings()
    settings.require("frontend_url")

    donation = db.get(Donation, donation_id) if donation_id else None
    if donation is None and reference_id:
        donation = find_by_reference(db, reference_id)
    if donation is None:
        logger.warning("Redirect for unknown donation", donation_id=donation_id,
                       reference_id=reference_id)
        return RedirectTarget(_landing(settings, "failed", donationId=donation_id, error="true"), None)

    if reference_id and donation.payment_method != PaymentMethod.CASH:
        try:
            backfill_reference(db, donation, reference_id,
                               resolve_reference_kind(donation, reference_id))
        except (UnrecognizedReferenceError, ValidationError) as e:
            logger.warning("Redirect reference ignored", donation_id=donation.id,
                           reference_id=reference_id, error=e.message)

    outcome = "success" if donation.payment_method.is_gateway else "failed"
    url = _landing(settings, outcome, donationId=donation.id,
                   sourceId=donation.paymongo_reference_id)
    return RedirectTarget(url, donation)
