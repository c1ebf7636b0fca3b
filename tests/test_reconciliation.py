from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from donation_service import reconciliation
from donation_service.config import get_settings
from donation_service.database import SessionLocal
from donation_service.errors import GatewayError, UnrecognizedReferenceError, ValidationError
from donation_service.models import (
    Donation,
    DonationStatus,
    FanoutMarker,
    PaymentMethod,
    ReferenceKind,
)
from donation_service.paymongo_service import Payment, PaymentIntent, PayMongoClient, Source


def paid_event(reference_id="pay_1", donation_id=None, event_type="payment.paid", source_id=None):
    attributes = {"status": "paid", "metadata": {"donationId": donation_id} if donation_id else {}}
    if source_id:
        attributes["source"] = {"id": source_id, "type": "gcash"}
    return {"type": event_type, "data": {"id": reference_id, "attributes": attributes}}


class TestClassification:
    def test_source_and_intent_prefixes(self):
        assert reconciliation.classify_reference("src_abc") == ReferenceKind.SOURCE
        assert reconciliation.classify_reference("pi_abc") == ReferenceKind.INTENT

    @pytest.mark.parametrize("reference_id", ["pay_abc", "abc", "", "SRC_abc"])
    def test_unknown_prefix_is_rejected(self, reference_id):
        with pytest.raises(UnrecognizedReferenceError):
            reconciliation.classify_reference(reference_id)

    def test_stored_kind_wins_for_stored_reference(self, make_donation):
        donation = make_donation(paymongo_reference_id="legacy_1", reference_kind=ReferenceKind.INTENT)
        assert reconciliation.resolve_reference_kind(donation, "legacy_1") == ReferenceKind.INTENT


class TestMapping:
    @pytest.mark.parametrize("status, expected", [
        ("paid", DonationStatus.SUCCEEDED),
        ("failed", DonationStatus.FAILED),
        ("expired", DonationStatus.FAILED),
        ("chargeable", DonationStatus.PENDING),
        ("pending", DonationStatus.PENDING),
    ])
    def test_source_statuses(self, status, expected):
        assert reconciliation.map_source_status(status) == expected

    @pytest.mark.parametrize("status, expected", [
        ("succeeded", DonationStatus.SUCCEEDED),
        ("paid", DonationStatus.SUCCEEDED),
        ("failed", DonationStatus.FAILED),
        ("canceled", DonationStatus.FAILED),
        ("awaiting_payment_method", DonationStatus.PENDING),
        ("processing", DonationStatus.PENDING),
    ])
    def test_intent_statuses(self, status, expected):
        assert reconciliation.map_intent_status(status) == expected

    def test_webhook_events(self):
        assert reconciliation.map_webhook_event("payment.paid") == DonationStatus.SUCCEEDED
        for event_type in ("payment.failed", "payment.refunded", "source.canceled"):
            assert reconciliation.map_webhook_event(event_type) == DonationStatus.FAILED
        assert reconciliation.map_webhook_event("source.chargeable") is None
        assert reconciliation.map_webhook_event("checkout_session.payment.paid") is None


class TestApplyTransition:
    def test_first_success_fires_fanout_once(self, db, make_donation, fanout):
        donation = make_donation()

        first = reconciliation.apply_transition(db, donation.id, DonationStatus.SUCCEEDED, fanout)
        second = reconciliation.apply_transition(db, donation.id, DonationStatus.SUCCEEDED, fanout)

        assert first.changed is True
        assert second.changed is False
        assert first.donation.status == DonationStatus.SUCCEEDED
        assert first.donation.fanout_completed_for == FanoutMarker.SUCCEEDED
        fanout.deliver_outcome.assert_called_once()
        assert fanout.deliver_outcome.call_args.args[1] == DonationStatus.SUCCEEDED

    def test_succeeded_never_regresses(self, db, make_donation, fanout):
        donation = make_donation()
        reconciliation.apply_transition(db, donation.id, DonationStatus.SUCCEEDED, fanout)

        for target in (DonationStatus.FAILED, DonationStatus.PENDING):
            result = reconciliation.apply_transition(db, donation.id, target, fanout)
            assert result.changed is False
            assert result.donation.status == DonationStatus.SUCCEEDED
        assert fanout.deliver_outcome.call_count == 1

    def test_failure_fires_failure_fanout(self, db, make_donation, fanout):
        donation = make_donation()

        result = reconciliation.apply_transition(db, donation.id, DonationStatus.FAILED, fanout)

        assert result.donation.status == DonationStatus.FAILED
        fanout.deliver_outcome.assert_called_once()
        assert fanout.deliver_outcome.call_args.args[1] == DonationStatus.FAILED

    def test_pending_target_is_a_no_op(self, db, make_donation, fanout):
        donation = make_donation()

        result = reconciliation.apply_transition(db, donation.id, DonationStatus.PENDING, fanout)

        assert result.changed is False
        assert result.donation.status == DonationStatus.PENDING
        fanout.deliver_outcome.assert_not_called()

    def test_cash_records_are_not_touched(self, db, make_donation, fanout):
        donation = make_donation(payment_method=PaymentMethod.CASH,
                                 status=DonationStatus.CASH_PENDING_VERIFICATION,
                                 paymongo_reference_id=None, reference_kind=None)

        result = reconciliation.apply_transition(db, donation.id, DonationStatus.SUCCEEDED, fanout)

        assert result.changed is False
        assert result.donation.status == DonationStatus.CASH_PENDING_VERIFICATION

    def test_concurrent_handlers_fan_out_once(self, make_donation, fanout):
        donation_id = make_donation().id

        def handler(_):
            session = SessionLocal()
            try:
                return reconciliation.apply_transition(
                    session, donation_id, DonationStatus.SUCCEEDED, fanout
                ).changed
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(handler, range(8)))

        assert results.count(True) == 1
        assert fanout.deliver_outcome.call_count == 1


class TestConfirmSource:
    def test_chargeable_source_is_captured(self, db, make_donation, gateway, fanout):
        donation = make_donation()
        gateway.get_source.return_value = Source(id="src_abc123", status="chargeable")
        gateway.create_payment.return_value = Payment(id="pay_1", status="paid")

        result = reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        assert result.status == DonationStatus.SUCCEEDED
        assert result.gateway_status == "chargeable"
        assert result.changed is True
        args, kwargs = gateway.create_payment.call_args
        assert args[0] == 50000
        assert args[1] == "src_abc123"
        assert kwargs["metadata"] == {"donationId": donation.id}
        fanout.deliver_outcome.assert_called_once()

    def test_capture_with_pending_payment_waits(self, db, make_donation, gateway, fanout):
        donation = make_donation()
        gateway.get_source.return_value = Source(id="src_abc123", status="chargeable")
        gateway.create_payment.return_value = Payment(id="pay_1", status="pending")

        result = reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)
        again = reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        assert result.status == DonationStatus.PENDING
        assert again.status == DonationStatus.PENDING
        assert result.donation.capture_claimed_at is not None
        # The claim stops a second charge against the same source
        gateway.create_payment.assert_called_once()
        fanout.deliver_outcome.assert_not_called()

    def test_failed_capture_releases_claim(self, db, make_donation, gateway, fanout):
        donation = make_donation()
        gateway.get_source.return_value = Source(id="src_abc123", status="chargeable")
        gateway.create_payment.side_effect = GatewayError()

        with pytest.raises(GatewayError):
            reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        db.refresh(donation)
        assert donation.status == DonationStatus.PENDING
        assert donation.capture_claimed_at is None

    def test_paid_source_succeeds(self, db, make_donation, gateway, fanout):
        donation = make_donation()
        gateway.get_source.return_value = Source(id="src_abc123", status="paid")

        result = reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        assert result.status == DonationStatus.SUCCEEDED
        gateway.create_payment.assert_not_called()

    def test_expired_source_fails(self, db, make_donation, gateway, fanout):
        donation = make_donation()
        gateway.get_source.return_value = Source(id="src_abc123", status="expired")

        result = reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        assert result.status == DonationStatus.FAILED
        assert fanout.deliver_outcome.call_args.args[1] == DonationStatus.FAILED

    def test_awaiting_intent_stays_pending(self, db, make_donation, gateway, fanout):
        donation = make_donation(payment_method=PaymentMethod.CARD, paymongo_reference_id="pi_1",
                                 reference_kind=ReferenceKind.INTENT)
        gateway.get_payment_intent.return_value = PaymentIntent(id="pi_1",
                                                                status="awaiting_payment_method")

        result = reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        assert result.status == DonationStatus.PENDING
        assert result.changed is False
        fanout.deliver_outcome.assert_not_called()

    def test_terminal_donation_skips_gateway(self, db, make_donation, gateway, fanout):
        donation = make_donation(status=DonationStatus.SUCCEEDED,
                                 fanout_completed_for=FanoutMarker.SUCCEEDED)

        result = reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        assert result.status == DonationStatus.SUCCEEDED
        gateway.get_source.assert_not_called()

    def test_reference_is_backfilled_once(self, db, make_donation, gateway, fanout):
        donation = make_donation(paymongo_reference_id=None, reference_kind=None)
        gateway.get_source.return_value = Source(id="src_new", status="pending")

        reconciliation.confirm_source(db, donation.id, "src_new", gateway=gateway, fanout=fanout)

        db.refresh(donation)
        assert donation.paymongo_reference_id == "src_new"
        assert donation.reference_kind == ReferenceKind.SOURCE
        assert reconciliation.backfill_reference(db, donation, "src_new", ReferenceKind.SOURCE) is False

    def test_foreign_reference_is_rejected(self, db, make_donation, gateway, fanout):
        donation = make_donation()

        with pytest.raises(ValidationError):
            reconciliation.confirm_source(db, donation.id, "src_other", gateway=gateway, fanout=fanout)
        gateway.get_source.assert_not_called()

    def test_unrecognized_reference(self, db, make_donation, gateway, fanout):
        donation = make_donation(paymongo_reference_id=None, reference_kind=None)

        with pytest.raises(UnrecognizedReferenceError):
            reconciliation.confirm_source(db, donation.id, "xx_123", gateway=gateway, fanout=fanout)
        db.refresh(donation)
        assert donation.paymongo_reference_id is None

    def test_without_any_reference_returns_current_state(self, db, make_donation, gateway, fanout):
        donation = make_donation(paymongo_reference_id=None, reference_kind=None)

        result = reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        assert result.status == DonationStatus.PENDING
        assert result.gateway_status is None
        gateway.get_source.assert_not_called()

    def test_poll_closes_the_client_it_opens(self, db, make_donation, gateway, fanout, mocker):
        mocker.patch.object(PayMongoClient, "from_settings", return_value=gateway)
        donation = make_donation()
        gateway.get_source.return_value = Source(id="src_abc123", status="paid")

        reconciliation.confirm_source(db, donation.id, fanout=fanout)

        gateway.close.assert_called_once()

    def test_poll_closes_the_client_after_gateway_error(self, db, make_donation, gateway, fanout,
                                                        mocker):
        mocker.patch.object(PayMongoClient, "from_settings", return_value=gateway)
        donation = make_donation()
        gateway.get_source.side_effect = GatewayError(retryable=True)

        with pytest.raises(GatewayError):
            reconciliation.confirm_source(db, donation.id, fanout=fanout)

        gateway.close.assert_called_once()

    def test_injected_client_is_left_open(self, db, make_donation, gateway, fanout):
        donation = make_donation()
        gateway.get_source.return_value = Source(id="src_abc123", status="pending")

        reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        gateway.close.assert_not_called()


class TestWebhook:
    def test_payment_paid_by_correlation_id(self, db, make_donation, fanout):
        donation = make_donation()

        outcome = reconciliation.handle_webhook_event(db, paid_event(donation_id=donation.id),
                                                      fanout=fanout)

        assert outcome.matched is True
        assert outcome.changed is True
        db.refresh(donation)
        assert donation.status == DonationStatus.SUCCEEDED

    def test_replayed_event_is_idempotent(self, db, make_donation, fanout):
        donation = make_donation()
        event = paid_event(donation_id=donation.id)

        reconciliation.handle_webhook_event(db, event, fanout=fanout)
        replay = reconciliation.handle_webhook_event(db, event, fanout=fanout)

        assert replay.changed is False
        db.refresh(donation)
        assert donation.status == DonationStatus.SUCCEEDED
        fanout.deliver_outcome.assert_called_once()

    def test_falls_back_to_source_reference(self, db, make_donation, fanout):
        donation = make_donation()

        outcome = reconciliation.handle_webhook_event(
            db, paid_event(source_id="src_abc123"), fanout=fanout
        )

        assert outcome.donation_id == donation.id
        assert outcome.changed is True

    def test_unmatched_event_is_acknowledged(self, db, make_donation, fanout):
        donation = make_donation()

        outcome = reconciliation.handle_webhook_event(
            db, paid_event("pay_unknown", donation_id="missing", event_type="payment.failed"),
            fanout=fanout,
        )

        assert outcome.acknowledged is True
        assert outcome.matched is False
        db.refresh(donation)
        assert donation.status == DonationStatus.PENDING
        fanout.deliver_outcome.assert_not_called()

    def test_refund_does_not_touch_succeeded(self, db, make_donation, fanout):
        donation = make_donation(status=DonationStatus.SUCCEEDED,
                                 fanout_completed_for=FanoutMarker.SUCCEEDED)

        outcome = reconciliation.handle_webhook_event(
            db, paid_event(donation_id=donation.id, event_type="payment.refunded"), fanout=fanout
        )

        assert outcome.changed is False
        db.refresh(donation)
        assert donation.status == DonationStatus.SUCCEEDED

    def test_unknown_event_type_is_ignored(self, db, make_donation, fanout):
        donation = make_donation()

        outcome = reconciliation.handle_webhook_event(
            db, paid_event(donation_id=donation.id, event_type="link.payment.paid"), fanout=fanout
        )

        assert outcome.matched is True
        assert outcome.changed is False
        db.refresh(donation)
        assert donation.status == DonationStatus.PENDING

    def test_paymongo_envelope(self, db, make_donation, fanout):
        donation = make_donation()
        event = {
            "data": {
                "id": "evt_1",
                "type": "event",
                "attributes": {
                    "type": "source.canceled",
                    "data": {"id": "src_abc123", "type": "source", "attributes": {"status": "cancelled"}},
                },
            }
        }

        outcome = reconciliation.handle_webhook_event(db, event, fanout=fanout)

        assert outcome.event_type == "source.canceled"
        db.refresh(donation)
        assert donation.status == DonationStatus.FAILED

    def test_chargeable_source_is_captured(self, db, make_donation, gateway, fanout):
        donation = make_donation()
        gateway.create_payment.return_value = Payment(id="pay_1", status="paid")
        event = {"type": "source.chargeable",
                 "data": {"id": "src_abc123", "attributes": {"status": "chargeable"}}}

        outcome = reconciliation.handle_webhook_event(db, event, gateway=gateway, fanout=fanout)

        assert outcome.changed is True
        gateway.create_payment.assert_called_once()
        db.refresh(donation)
        assert donation.status == DonationStatus.SUCCEEDED

    def test_chargeable_is_informational_when_capture_disabled(self, db, make_donation, gateway, fanout):
        donation = make_donation()
        settings = replace(get_settings(), capture_on_webhook=False)
        event = {"type": "source.chargeable",
                 "data": {"id": "src_abc123", "attributes": {"status": "chargeable"}}}

        outcome = reconciliation.handle_webhook_event(db, event, gateway=gateway, fanout=fanout,
                                                      settings=settings)

        assert outcome.matched is True
        assert outcome.changed is False
        gateway.create_payment.assert_not_called()
        db.refresh(donation)
        assert donation.status == DonationStatus.PENDING


    def test_webhook_capture_closes_the_client_it_opens(self, db, make_donation, gateway, fanout,
                                                         mocker):
        mocker.patch.object(PayMongoClient, "from_settings", return_value=gateway)
        make_donation()
        gateway.create_payment.return_value = Payment(id="pay_1", status="paid")
        event = {"type": "source.chargeable",
                 "data": {"id": "src_abc123", "attributes": {"status": "chargeable"}}}

        reconciliation.handle_webhook_event(db, event, fanout=fanout)

        gateway.create_payment.assert_called_once()
        gateway.close.assert_called_once()

    @pytest.mark.parametrize("payload", [
        {"type": "payment.paid", "data": "not-an-object"},
        {"type": "payment.paid", "data": {"id": 42, "attributes": "not-an-object"}},
        {"type": "payment.paid", "data": {"attributes": {"metadata": "x", "source": ["src_abc123"]}}},
        {"type": ["payment.paid"], "data": None},
        {"data": {"attributes": {"type": 7, "data": "not-an-object"}}},
        {"data": ["src_abc123"]},
    ])
    def test_malformed_event_is_dropped(self, db, make_donation, fanout, payload):
        donation = make_donation()

        outcome = reconciliation.handle_webhook_event(db, payload, fanout=fanout)

        assert outcome.acknowledged is True
        assert outcome.matched is False
        db.refresh(donation)
        assert donation.status == DonationStatus.PENDING
        fanout.deliver_outcome.assert_not_called()


class TestRedirect:
    def test_gateway_donation_lands_on_success(self, db, make_donation):
        donation = make_donation()

        target = reconciliation.handle_redirect(db, donation_id=donation.id)

        assert target.url.startswith("http://front.test/donation/success?")
        assert f"donationId={donation.id}" in target.url
        assert "sourceId=src_abc123" in target.url

    def test_landing_ignores_gateway_status(self, db, make_donation):
        donation = make_donation(status=DonationStatus.FAILED, fanout_completed_for=FanoutMarker.FAILED)

        target = reconciliation.handle_redirect(db, donation_id=donation.id)

        assert "/donation/success" in target.url
        db.refresh(donation)
        assert donation.status == DonationStatus.FAILED

    def test_unknown_donation_lands_on_failure(self, db):
        target = reconciliation.handle_redirect(db, donation_id="nope")

        assert target.donation is None
        assert target.url.startswith("http://front.test/donation/failed?")

    def test_resolves_by_reference(self, db, make_donation):
        donation = make_donation()

        target = reconciliation.handle_redirect(db, reference_id="src_abc123")

        assert target.donation.id == donation.id

    def test_backfills_missing_reference(self, db, make_donation):
        donation = make_donation(paymongo_reference_id=None, reference_kind=None)

        reconciliation.handle_redirect(db, donation_id=donation.id, reference_id="src_late")

        db.refresh(donation)
        assert donation.paymongo_reference_id == "src_late"

    def test_bad_reference_is_ignored(self, db, make_donation):
        donation = make_donation(paymongo_reference_id=None, reference_kind=None)

        target = reconciliation.handle_redirect(db, donation_id=donation.id, reference_id="bogus")

        assert "/donation/success" in target.url
        db.refresh(donation)
        assert donation.paymongo_reference_id is None


class TestConvergence:
    def test_three_signals_fan_out_once(self, db, make_donation, gateway, fanout):
        donation = make_donation(paymongo_reference_id=None, reference_kind=None)
        gateway.get_source.return_value = Source(id="src_abc123", status="paid")

        reconciliation.handle_redirect(db, donation_id=donation.id)
        db.refresh(donation)
        assert donation.paymongo_reference_id is None

        reconciliation.confirm_source(db, donation.id, "src_abc123", gateway=gateway, fanout=fanout)
        reconciliation.handle_webhook_event(db, paid_event(donation_id=donation.id), fanout=fanout)
        reconciliation.handle_redirect(db, donation_id=donation.id, reference_id="src_abc123")
        reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        stored = db.get(Donation, donation.id)
        assert stored.status == DonationStatus.SUCCEEDED
        assert stored.paymongo_reference_id == "src_abc123"
        fanout.deliver_outcome.assert_called_once()

    def test_webhook_before_poll(self, db, make_donation, gateway, fanout):
        donation = make_donation()
        gateway.get_source.return_value = Source(id="src_abc123", status="pending")

        reconciliation.handle_webhook_event(db, paid_event(source_id="src_abc123"), fanout=fanout)
        result = reconciliation.confirm_source(db, donation.id, gateway=gateway, fanout=fanout)

        assert result.status == DonationStatus.SUCCEEDED
        fanout.deliver_outcome.assert_called_once()
