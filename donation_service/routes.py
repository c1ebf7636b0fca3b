from decimal import Decimal

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from donation_service.auth import Actor, optional_token, verify_token
from donation_service.cash import complete_cash, reject_cash, verify_cash
from donation_service.database import get_db
from donation_service.dispatch import attach_card_payment_method, create_donation
from donation_service.fanout import OutcomeFanout, get_fanout
from donation_service.reconciliation import confirm_source, handle_redirect
from donation_service.records import (
    get_receipt_url,
    get_visible_donation,
    list_all_donations,
    list_my_donations,
    totals_per_event,
)

router = APIRouter(prefix="/donations")


class DonationRequest(BaseModel):
    amount: Decimal
    paymentMethod: str
    donorName: str | None = None
    donorEmail: str | None = None
    message: str | None = None
    recipientType: str | None = None
    departmentId: str | None = None
    eventId: str | None = None
    isAnonymous: bool = False


class AttachRequest(BaseModel):
    donationId: str
    paymentMethodId: str


class ConfirmSourceRequest(BaseModel):
    donationId: str
    sourceId: str | None = None


class VerifyCashRequest(BaseModel):
    receiptNumber: str | None = None
    verificationNotes: str | None = None


class RejectCashRequest(BaseModel):
    verificationNotes: str | None = None


@router.post("")
def create_donation_api(
    request: DonationRequest,
    db: Session = Depends(get_db),
    actor: Actor | None = Depends(optional_token),
    fanout: OutcomeFanout = Depends(get_fanout),
):
    result = create_donation(
        db,
        amount=request.amount,
        payment_method=request.paymentMethod,
        donor_name=request.donorName,
        donor_email=request.donorEmail,
        message=request.message,
        recipient_type=request.recipientType,
        department_id=request.departmentId,
        event_id=request.eventId,
        is_anonymous=request.isAnonymous,
        actor=actor,
        fanout=fanout,
    )
    donation = result.donation
    if not donation.payment_method.is_gateway:
        return {
            "success": True,
            "type": "cash",
            "message": "Cash donation submitted. Please wait for verification.",
            "donationId": donation.id,
            "donation": donation.to_dict(),
        }
    return {
        "success": True,
        "type": result.reference_kind.value,
        "donationId": donation.id,
        "referenceId": donation.paymongo_reference_id,
        "checkoutUrl": result.checkout_url,
        "clientKey": result.client_key,
    }


@router.post("/attach")
def attach_payment_method_api(
    request: AttachRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(verify_token),
    fanout: OutcomeFanout = Depends(get_fanout),
):
    result = attach_card_payment_method(db, request.donationId, request.paymentMethodId,
                                        actor, fanout=fanout)
    return {
        "success": True,
        "status": result.donation.status.value,
        "redirectUrl": result.checkout_url,
        "donation": result.donation.to_dict(),
    }


@router.post("/confirm-source")
def confirm_source_api(
    request: ConfirmSourceRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(verify_token),
    fanout: OutcomeFanout = Depends(get_fanout),
):
    result = confirm_source(db, request.donationId, request.sourceId, fanout=fanout)
    return {
        "success": True,
        "status": result.status.value,
        "gatewayStatus": result.gateway_status,
        "donation": result.donation.to_dict(),
    }


@router.get("/paymongo-redirect")
def paymongo_redirect(donationId: str | None = None, id: str | None = None,
                      db: Session = Depends(get_db)):
    target = handle_redirect(db, donation_id=donationId, reference_id=id)
    return RedirectResponse(target.url, status_code=302)


# Fixed paths must be registered before /{donation_id}
@router.get("/me")
def my_donations_api(db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    donations = list_my_donations(db, actor)
    return {"success": True, "donations": [d.to_dict() for d in donations]}


@router.get("/all")
def all_donations_api(db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    donations = list_all_donations(db, actor)
    return {"success": True, "donations": [d.to_dict() for d in donations]}


@router.get("/totals-by-event")
def totals_by_event_api(db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    events = totals_per_event(db, actor)
    overall = sum((e.total for e in events), Decimal("0"))
    return {
        "success": True,
        "events": [e.to_dict() for e in events],
        "overallTotal": float(overall),
        "totalEvents": len(events),
    }


@router.get("/{donation_id}")
def get_donation_api(donation_id: str, db: Session = Depends(get_db),
                     actor: Actor = Depends(verify_token)):
    donation = get_visible_donation(db, donation_id, actor)
    return {"success": True, "donation": donation.to_dict()}


@router.get("/{donation_id}/receipt")
def download_receipt_api(donation_id: str, db: Session = Depends(get_db),
                         actor: Actor = Depends(verify_token)):
    return {"success": True, "receiptUrl": get_receipt_url(db, donation_id, actor)}


@router.post("/{donation_id}/verify-cash")
def verify_cash_api(
    donation_id: str,
    request: VerifyCashRequest | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(verify_token),
    fanout: OutcomeFanout = Depends(get_fanout),
):
    request = request or VerifyCashRequest()
    donation = verify_cash(db, donation_id, actor, receipt_number=request.receiptNumber,
                           notes=request.verificationNotes, fanout=fanout)
    return {"success": True, "message": "Cash donation verified", "donation": donation.to_dict()}


@router.post("/{donation_id}/complete-cash")
def complete_cash_api(
    donation_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(verify_token),
    fanout: OutcomeFanout = Depends(get_fanout),
):
    donation = complete_cash(db, donation_id, actor, fanout=fanout)
    return {"success": True, "message": "Cash donation completed", "donation": donation.to_dict()}


@router.post("/{donation_id}/reject-cash")
def reject_cash_api(
    donation_id: str,
    request: RejectCashRequest | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(verify_token),
    fanout: OutcomeFanout = Depends(get_fanout),
):
    notes = request.verificationNotes if request else None
    donation = reject_cash(db, donation_id, actor, notes=notes, fanout=fanout)
    return {"success": True, "message": "Cash donation rejected", "donation": donation.to_dict()}
