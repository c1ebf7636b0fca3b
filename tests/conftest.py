import os

# Must be set before donation_service.database is imported
os.environ["DATABASE_URL"] = "sqlite:///./test_donations.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PAYMONGO_SECRET_KEY"] = "sk_test_123"
os.environ["PAYMONGO_WEBHOOK_SECRET"] = ""
os.environ["PAYMONGO_CAPTURE_ON_WEBHOOK"] = "true"
os.environ["API_BASE_URL"] = "http://api.test"
os.environ["FRONTEND_URL"] = "http://front.test"

from decimal import Decimal

import pytest

from donation_service.auth import Actor
from donation_service.database import Base, SessionLocal, engine
from donation_service.fanout import OutcomeFanout
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
from donation_service.paymongo_service import PayMongoClient


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway(mocker):
    return mocker.Mock(spec=PayMongoClient)


@pytest.fixture
def fanout(mocker):
    return mocker.Mock(spec=OutcomeFanout)


def _account(db, name, email, role):
    account = Account(name=name, email=email, role=role)
    db.add(account)
    db.commit()
    return Actor(id=account.id, role=role, name=name, email=email)


@pytest.fixture
def donor(db):
    return _account(db, "Juan Dela Cruz", "juan@example.com", Role.USER)


@pytest.fixture
def staff(db):
    return _account(db, "CRD Staff", "crd@example.com", Role.CRD_STAFF)


@pytest.fixture
def department(db):
    return _account(db, "College of Engineering", "coe@example.com", Role.DEPARTMENT)


@pytest.fixture
def open_event(db, department):
    event = Event(title="Outreach Day", created_by=department.id, is_open_for_donation=True)
    db.add(event)
    db.commit()
    return event


@pytest.fixture
def make_donation(db):
    def _make(**overrides):
        values = dict(
            donor_name="Juan Dela Cruz",
            donor_email="juan@example.com",
            amount=Decimal("500.00"),
            payment_method=PaymentMethod.GCASH,
            status=DonationStatus.PENDING,
            paymongo_reference_id="src_abc123",
            reference_kind=ReferenceKind.SOURCE,
            recipient_type=RecipientType.CRD,
        )
        values.update(overrides)
        donation = Donation(**values)
        db.add(donation)
        db.commit()
        return donation
    return _make
