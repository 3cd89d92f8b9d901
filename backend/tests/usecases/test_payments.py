import json
from datetime import timedelta
from typing import Any

import pytest
from academy.domain.errors import (
    CapacityExceededError,
    ExpiredReservationError,
    InvalidReservationStateError,
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
)
from academy.domain.repositories import PaymentSnapshot
from academy.models import PaymentEventStatus, PaymentStatus, RegistrationStatus
from academy.usecases import payments as uc
from academy.usecases import registrations as reg_uc
from academy.utils.signatures import MANUAL_PAYMENT_SENTINEL, hmac_sha256_hex
from conftest import NOW, FakeGateway, FakeNotifier, FakePaymentLogRepo, FakeRegistrationRepo, make_draft, make_registration


def _client_signature(order_id: str, payment_id: str) -> str:
    return hmac_sha256_hex("key_secret", f"{order_id}|{payment_id}".encode())


async def _hold(reg_repo: FakeRegistrationRepo, settings, *, order_id: str | None = "order_1", **kwargs: Any):
    registration, _, _ = await reg_uc.create_registration(reg_repo, draft=make_draft(**kwargs), settings=settings, now=NOW)
    registration.gateway_order_id = order_id
    return registration


async def _verify(reg_repo, log_repo, gateway, notifier, settings, *, code="LS-RD26-00001", signature=None, now=NOW):
    return await uc.verify_client_payment(
        reg_repo,
        log_repo,
        gateway,
        notifier,
        code=code,
        order_id="order_1",
        payment_id="pay_1",
        signature=signature or _client_signature("order_1", "pay_1"),
        settings=settings,
        now=now,
    )


@pytest.mark.asyncio
async def test_create_order_uses_server_side_fee(reg_repo, gateway: FakeGateway, settings) -> None:
    await _hold(reg_repo, settings, order_id=None, material_type=False)

    order = await uc.create_payment_order(reg_repo, gateway, code="LS-RD26-00001", settings=settings, now=NOW)

    assert order == {"order_id": "order_1", "amount": 299, "currency": "INR", "key_id": "rzp_test_key"}
    assert gateway.orders[0]["receipt"] == "LS-RD26-00001"
    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.gateway_order_id == "order_1"
    assert registration.payment_amount == 299


@pytest.mark.asyncio
async def test_create_order_for_stale_hold_deletes_it(reg_repo, gateway: FakeGateway, settings) -> None:
    await reg_repo.save(make_registration(created_at=NOW - timedelta(minutes=12)))
    with pytest.raises(ExpiredReservationError):
        await uc.create_payment_order(reg_repo, gateway, code="LS-RD26-00001", settings=settings, now=NOW)
    assert gateway.orders == []
    assert await reg_repo.get_by_code("LS-RD26-00001") is None


@pytest.mark.asyncio
async def test_create_order_for_unknown_code(reg_repo, gateway: FakeGateway, settings) -> None:
    with pytest.raises(NotFoundError):
        await uc.create_payment_order(reg_repo, gateway, code="LS-RD26-00404", settings=settings, now=NOW)


@pytest.mark.asyncio
async def test_verify_round_trip_registers_and_records(
    reg_repo, log_repo: FakePaymentLogRepo, gateway, notifier: FakeNotifier, settings
) -> None:
    await _hold(reg_repo, settings)

    registration, already_paid = await _verify(reg_repo, log_repo, gateway, notifier, settings)

    assert already_paid is False
    stored = await reg_repo.get_by_code("LS-RD26-00001")
    assert stored is registration
    assert stored.status == RegistrationStatus.REGISTERED
    assert stored.payment_status == PaymentStatus.PAID
    assert stored.payment_confirmed_at == NOW
    assert stored.payment_amount == 499
    assert stored.payment_method == "upi"
    assert [e.status for e in log_repo.entries] == [PaymentEventStatus.CAPTURED]
    assert log_repo.entries[0].source == "client_verification"
    assert notifier.confirmations == ["LS-RD26-00001"]
    assert notifier.admin == ["LS-RD26-00001"]


@pytest.mark.asyncio
async def test_verify_twice_is_idempotent(reg_repo, log_repo: FakePaymentLogRepo, gateway, notifier: FakeNotifier, settings) -> None:
    await _hold(reg_repo, settings)

    await _verify(reg_repo, log_repo, gateway, notifier, settings)
    registration, already_paid = await _verify(reg_repo, log_repo, gateway, notifier, settings)

    assert already_paid is True
    assert registration.status == RegistrationStatus.REGISTERED
    assert len(log_repo.entries) == 1
    assert notifier.confirmations == ["LS-RD26-00001"]


@pytest.mark.asyncio
async def test_verify_after_deletion_threshold_expires_and_deletes(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await _hold(reg_repo, settings)
    later = NOW + timedelta(minutes=11)

    with pytest.raises(ExpiredReservationError) as excinfo:
        await _verify(reg_repo, log_repo, gateway, notifier, settings, now=later)

    assert excinfo.value.data["age_minutes"] == 11
    assert await reg_repo.get_by_code("LS-RD26-00001") is None
    with pytest.raises(NotFoundError):
        await reg_uc.get_registration_details(reg_repo, code="LS-RD26-00001", settings=settings, now=later)


@pytest.mark.asyncio
async def test_verify_inside_display_window_but_past_deletion_still_expires(
    reg_repo, log_repo, gateway, notifier, settings
) -> None:
    # 12 minutes: still "valid" per the 15 minute countdown, but past the 10 minute cutoff.
    await _hold(reg_repo, settings)
    with pytest.raises(ExpiredReservationError):
        await _verify(reg_repo, log_repo, gateway, notifier, settings, now=NOW + timedelta(minutes=12))


@pytest.mark.asyncio
async def test_verify_rejects_bad_signature_without_changes(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await _hold(reg_repo, settings)

    with pytest.raises(SignatureVerificationError):
        await _verify(reg_repo, log_repo, gateway, notifier, settings, signature="deadbeef")

    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.status == RegistrationStatus.PENDING_PAYMENT
    assert log_repo.entries == []


@pytest.mark.asyncio
async def test_verify_rejects_non_ascii_signature(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await _hold(reg_repo, settings)

    with pytest.raises(SignatureVerificationError):
        await _verify(reg_repo, log_repo, gateway, notifier, settings, signature="\u00e9" * 64)

    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.status == RegistrationStatus.PENDING_PAYMENT
    assert log_repo.entries == []


@pytest.mark.asyncio
async def test_verify_rejects_order_of_another_registration(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await _hold(reg_repo, settings, order_id="order_other")
    with pytest.raises(ValidationError):
        await _verify(reg_repo, log_repo, gateway, notifier, settings)


@pytest.mark.asyncio
async def test_manual_payment_sentinel_skips_signature(reg_repo, log_repo, gateway: FakeGateway, notifier, settings) -> None:
    await _hold(reg_repo, settings)

    registration, _ = await _verify(reg_repo, log_repo, gateway, notifier, settings, signature=MANUAL_PAYMENT_SENTINEL)

    assert registration.payment_status == PaymentStatus.PAID
    assert log_repo.entries[0].source == "manual"


@pytest.mark.asyncio
async def test_manual_payment_sentinel_can_be_disabled(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await _hold(reg_repo, settings)
    locked = settings.model_copy(update={"allow_manual_payment": False})
    with pytest.raises(SignatureVerificationError):
        await _verify(reg_repo, log_repo, gateway, notifier, locked, signature=MANUAL_PAYMENT_SENTINEL)


@pytest.mark.asyncio
async def test_verify_falls_back_when_payment_details_unavailable(reg_repo, log_repo, notifier, settings) -> None:
    await _hold(reg_repo, settings)
    registration, _ = await _verify(reg_repo, log_repo, FakeGateway(fail_fetch=True), notifier, settings)
    assert registration.payment_method == "card"


@pytest.mark.asyncio
async def test_side_effect_failures_do_not_undo_confirmation(reg_repo, log_repo, gateway, settings) -> None:
    await _hold(reg_repo, settings)

    registration, _ = await _verify(reg_repo, log_repo, gateway, FakeNotifier(fail=True), settings)

    assert registration.status == RegistrationStatus.REGISTERED
    assert registration.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_verify_rejects_cancelled_registration(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await reg_repo.save(
        make_registration(status=RegistrationStatus.CANCELLED, payment_status=PaymentStatus.REFUNDED)
    )
    with pytest.raises(InvalidReservationStateError):
        await _verify(reg_repo, log_repo, gateway, notifier, settings)


@pytest.mark.asyncio
async def test_confirm_rejects_when_batch_filled_by_others(reg_repo, log_repo, notifier, settings) -> None:
    registration = await _hold(reg_repo, settings)
    for i in range(20):
        await reg_repo.save(
            make_registration(
                code=f"LS-RD26-{i + 100:05d}",
                child_name=f"Child {i}",
                status=RegistrationStatus.REGISTERED,
                payment_status=PaymentStatus.PAID,
            )
        )
    payment = PaymentSnapshot(payment_id="pay_1", order_id="order_1", signature=None, amount=499, currency="INR")

    with pytest.raises(CapacityExceededError):
        await uc.confirm_payment(
            reg_repo, log_repo, notifier, registration, payment=payment, source="webhook", settings=settings, now=NOW
        )
    assert registration.status == RegistrationStatus.PENDING_PAYMENT


@pytest.mark.asyncio
async def test_confirm_loses_race_against_sweep(reg_repo, log_repo, notifier, settings) -> None:
    registration = await _hold(reg_repo, settings)

    class SweptRepo(FakeRegistrationRepo):
        async def mark_paid(self, code, payment, *, now):
            # The sweep deleted the row between the checks and the update.
            await self.delete(code)
            return False

    swept = SweptRepo(log_repo)
    swept.rows = reg_repo.rows
    payment = PaymentSnapshot(payment_id="pay_1", order_id="order_1", signature=None, amount=499, currency="INR")

    with pytest.raises(ExpiredReservationError):
        await uc.confirm_payment(
            swept, log_repo, notifier, registration, payment=payment, source="webhook", settings=settings, now=NOW
        )
    assert log_repo.entries == []


def _event(name: str, **entity: Any) -> dict[str, Any]:
    base = {"id": "pay_1", "order_id": "order_1", "amount": 49900, "currency": "INR", "method": "upi"}
    base.update(entity)
    return {"event": name, "payload": {"payment": {"entity": base}}}


@pytest.mark.asyncio
async def test_webhook_captured_confirms_registration(reg_repo, log_repo, notifier, settings) -> None:
    await _hold(reg_repo, settings)

    outcome = await uc.handle_webhook_event(reg_repo, log_repo, notifier, _event("payment.captured"), settings=settings, now=NOW)

    assert outcome == "captured"
    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.is_complete()
    assert registration.payment_amount == 499
    assert log_repo.entries[0].source == "webhook"
    assert log_repo.entries[0].raw_payload["id"] == "pay_1"


@pytest.mark.asyncio
async def test_webhook_and_client_paths_converge(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await _hold(reg_repo, settings)
    await _verify(reg_repo, log_repo, gateway, notifier, settings)

    outcome = await uc.handle_webhook_event(reg_repo, log_repo, notifier, _event("payment.captured"), settings=settings, now=NOW)

    assert outcome == "already_paid"
    assert len(log_repo.entries) == 1
    assert notifier.confirmations == ["LS-RD26-00001"]


@pytest.mark.asyncio
async def test_webhook_captured_for_stale_hold_is_acknowledged_but_not_applied(reg_repo, log_repo, notifier, settings) -> None:
    await _hold(reg_repo, settings)

    outcome = await uc.handle_webhook_event(
        reg_repo, log_repo, notifier, _event("payment.captured"), settings=settings, now=NOW + timedelta(minutes=20)
    )

    assert outcome == "reservation_expired"
    assert await reg_repo.get_by_code("LS-RD26-00001") is None


@pytest.mark.asyncio
async def test_webhook_authorized_records_payment_id(reg_repo, log_repo, notifier, settings) -> None:
    await _hold(reg_repo, settings)

    outcome = await uc.handle_webhook_event(reg_repo, log_repo, notifier, _event("payment.authorized"), settings=settings, now=NOW)

    assert outcome == "authorized"
    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.gateway_payment_id == "pay_1"
    assert registration.payment_status == PaymentStatus.PENDING
    assert log_repo.entries[0].status == PaymentEventStatus.AUTHORIZED


@pytest.mark.asyncio
async def test_webhook_failed_keeps_hold_open(reg_repo, log_repo, notifier: FakeNotifier, settings) -> None:
    await _hold(reg_repo, settings)

    outcome = await uc.handle_webhook_event(
        reg_repo,
        log_repo,
        notifier,
        _event("payment.failed", error_code="BAD_REQUEST_ERROR", error_description="card declined"),
        settings=settings,
        now=NOW,
    )

    assert outcome == "failed"
    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.status == RegistrationStatus.PENDING_PAYMENT
    assert registration.payment_status == PaymentStatus.PENDING
    assert log_repo.entries[0].error_description == "card declined"
    assert notifier.failures == [("LS-RD26-00001", "card declined")]


@pytest.mark.asyncio
async def test_webhook_failed_after_payment_does_not_downgrade(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await _hold(reg_repo, settings)
    await _verify(reg_repo, log_repo, gateway, notifier, settings)

    await uc.handle_webhook_event(reg_repo, log_repo, notifier, _event("payment.failed", id="pay_2"), settings=settings, now=NOW)

    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_webhook_refund_is_terminal(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await _hold(reg_repo, settings)
    await _verify(reg_repo, log_repo, gateway, notifier, settings)

    outcome = await uc.handle_webhook_event(
        reg_repo, log_repo, notifier, _event("payment.refunded", order_id=None), settings=settings, now=NOW
    )

    assert outcome == "refunded"
    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.status == RegistrationStatus.CANCELLED
    assert registration.payment_status == PaymentStatus.REFUNDED
    assert [e.status for e in log_repo.entries] == [PaymentEventStatus.CAPTURED, PaymentEventStatus.REFUNDED]


@pytest.mark.asyncio
async def test_webhook_unknown_event_and_unmatched_order(reg_repo, log_repo, notifier, settings) -> None:
    assert await uc.handle_webhook_event(reg_repo, log_repo, notifier, _event("order.paid"), settings=settings) == "ignored"
    assert (
        await uc.handle_webhook_event(reg_repo, log_repo, notifier, _event("payment.captured"), settings=settings)
        == "unmatched"
    )


def test_parse_webhook_checks_signature_over_raw_body(settings) -> None:
    body = json.dumps(_event("payment.captured")).encode()
    good = hmac_sha256_hex("webhook_secret", body)

    assert uc.parse_webhook(body, good, settings=settings)["event"] == "payment.captured"
    with pytest.raises(SignatureVerificationError):
        uc.parse_webhook(body, "0" * 64, settings=settings)
    with pytest.raises(SignatureVerificationError):
        uc.parse_webhook(body, None, settings=settings)


def test_parse_webhook_rejects_non_json(settings) -> None:
    body = b"not json"
    with pytest.raises(ValidationError):
        uc.parse_webhook(body, hmac_sha256_hex("webhook_secret", body), settings=settings)


def test_parse_webhook_rejects_non_ascii_signature(settings) -> None:
    body = json.dumps(_event("payment.captured")).encode()
    with pytest.raises(SignatureVerificationError):
        uc.parse_webhook(body, "é" * 64, settings=settings)


@pytest.mark.asyncio
async def test_webhook_failed_after_refund_keeps_refund(reg_repo, log_repo, gateway, notifier, settings) -> None:
    await _hold(reg_repo, settings)
    await _verify(reg_repo, log_repo, gateway, notifier, settings)
    await uc.handle_webhook_event(
        reg_repo, log_repo, notifier, _event("payment.refunded", order_id=None), settings=settings, now=NOW
    )

    outcome = await uc.handle_webhook_event(
        reg_repo, log_repo, notifier, _event("payment.failed", id="pay_2"), settings=settings, now=NOW
    )

    assert outcome == "failed"
    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.status == RegistrationStatus.CANCELLED
    assert registration.payment_status == PaymentStatus.REFUNDED
    assert log_repo.entries[-1].status == PaymentEventStatus.FAILED
    assert notifier.failures == []


@pytest.mark.asyncio
async def test_webhook_failed_for_stale_hold_evicts_it(reg_repo, log_repo, notifier, settings) -> None:
    await _hold(reg_repo, settings)

    outcome = await uc.handle_webhook_event(
        reg_repo, log_repo, notifier, _event("payment.failed"), settings=settings, now=NOW + timedelta(minutes=20)
    )

    assert outcome == "reservation_expired"
    assert await reg_repo.get_by_code("LS-RD26-00001") is None
    assert log_repo.entries == []
    assert notifier.failures == []
