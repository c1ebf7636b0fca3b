import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Numeric, Boolean, DateTime, Enum, JSON, Text
from donation_service.database import Base


def _new_id():
    return uuid.uuid4().hex


def utcnow():
    return datetime.now(timezone.utc)


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    GCASH = "gcash"
    PAYMAYA = "paymaya"
    CARD = "card"

    @property
    def is_gateway(self) -> bool:
        return self is not PaymentMethod.CASH


class DonationStatus(str, enum.Enum):
    PENDING = "pending"
    CASH_PENDING_VERIFICATION = "cash_pending_verification"
    CASH_VERIFIED = "cash_verified"
    CASH_COMPLETED = "cash_completed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DonationStatus.SUCCEEDED, DonationStatus.FAILED,
                        DonationStatus.CASH_COMPLETED)


class ReferenceKind(str, enum.Enum):
    SOURCE = "source"
    INTENT = "intent"


class FanoutMarker(str, enum.Enum):
    NONE = "none"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RecipientType(str, enum.Enum):
    CRD = "crd"
    DEPARTMENT = "department"
    EVENT = "event"


class Role(str, enum.Enum):
    USER = "User"
    SYSTEM_ADMINISTRATOR = "System Administrator"
    CRD_STAFF = "CRD Staff"
    DEPARTMENT = "Department/Organization"
    AUDITOR = "Auditor"


OVERSIGHT_ROLES = (Role.CRD_STAFF, Role.SYSTEM_ADMINISTRATOR)


def _enum(cls):
    # Store the string values, not the member names
    return Enum(cls, values_callable=lambda e: [m.value for m in e],
                native_enum=False, validate_strings=True)


class Donation(Base):
    __tablename__ = "donations"

    id = Column(String, primary_key=True, default=_new_id)
    donor_name = Column(String, nullable=False)
    donor_email = Column(String, nullable=False)
    message = Column(Text, nullable=False, default="")
    is_anonymous = Column(Boolean, nullable=False, default=False)
    user_id = Column(String, nullable=True, index=True)            # linked account, None for guests

    amount = Column(Numeric(12, 2), nullable=False)                # major units (pesos)
    payment_method = Column(_enum(PaymentMethod), nullable=False)
    status = Column(_enum(DonationStatus), nullable=False)

    paymongo_reference_id = Column(String, nullable=True, index=True)
    reference_kind = Column(_enum(ReferenceKind), nullable=True)
    source_checkout_url = Column(String, nullable=True)
    capture_claimed_at = Column(DateTime(timezone=True), nullable=True)
    fanout_completed_for = Column(_enum(FanoutMarker), nullable=False, default=FanoutMarker.NONE)
    receipt_url = Column(String, nullable=True)

    recipient_type = Column(_enum(RecipientType), nullable=False, default=RecipientType.CRD)
    department_id = Column(String, nullable=True)
    event_id = Column(String, nullable=True)

    cash_verified_by = Column(String, nullable=True)
    cash_verified_at = Column(DateTime(timezone=True), nullable=True)
    cash_receipt_number = Column(String, nullable=True)
    cash_verification_notes = Column(Text, nullable=True)
    cash_completed_by = Column(String, nullable=True)
    cash_completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def amount_minor(self) -> int:
        return int(round(self.amount * 100))

    @property
    def display_name(self) -> str:
        return "Anonymous" if self.is_anonymous else self.donor_name

    def to_dict(self):
        return {
            "id": self.id,
            "donorName": self.display_name,
            "donorEmail": self.donor_email,
            "amount": float(self.amount),
            "message": self.message,
            "paymentMethod": self.payment_method.value,
            "status": self.status.value,
            "paymongoReferenceId": self.paymongo_reference_id,
            "referenceKind": self.reference_kind.value if self.reference_kind else None,
            "sourceCheckoutUrl": self.source_checkout_url,
            "receiptUrl": self.receipt_url,
            "recipientType": self.recipient_type.value,
            "department": self.department_id,
            "event": self.event_id,
            "user": self.user_id,
            "cashVerification": {
                "verifiedBy": self.cash_verified_by,
                "verifiedAt": self.cash_verified_at.isoformat() if self.cash_verified_at else None,
                "receiptNumber": self.cash_receipt_number,
                "verificationNotes": self.cash_verification_notes,
                "completedBy": self.cash_completed_by,
                "completedAt": self.cash_completed_at.isoformat() if self.cash_completed_at else None,
            },
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class Account(Base):
    # Read model; accounts are managed by the user service
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    role = Column(_enum(Role), nullable=False, default=Role.USER)


class Event(Base):
    # Read model; events are managed by the event service
    __tablename__ = "events"

    id = Column(String, primary_key=True, default=_new_id)
    title = Column(String, nullable=False)
    created_by = Column(String, nullable=True)
    is_open_for_donation = Column(Boolean, nullable=False, default=False)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="Update")
    message = Column(Text, nullable=False, default="")
    payload = Column(JSON, nullable=False, default=dict)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
