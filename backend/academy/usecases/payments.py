import json
import logging
from datetime import datetime
from typing import Any, Literal, Optional

from ..config import Settings
from ..domain.errors import (
    CapacityExceededError,
    ExpiredReservationError,
    GatewayError,
    InvalidReservationStateError,
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
)
from ..domain.gateways import Notifier, PaymentGateway
from ..domain.repositories import PaymentLogRepository, PaymentSnapshot, RegistrationRepository
from ..domain.services import ScopeKey, ensure_can_confirm, registration_fee
from ..models import PaymentEventStatus, PaymentLog, PaymentStatus, Registration, RegistrationStatus
from ..utils.audit_log import AuditAction, AuditInitiator, emit_audit_log
from ..utils.signatures import MANUAL_PAYMENT_SENTINEL, verify_payment_signature, verify_webhook_signature
from ..utils.time import utc_now_naive
from . import slots as slot_usecase
from .registrations import evict_if_expired

logger = logging.getLogger(__name__)

PaymentSource = Literal["client_verification", "webhook", "manual"]


def fee_for(registration: Registration, settings: Settings) -> int:
    return registration_fee(
        material_type=registration.material_type,
        with_material=settings.fee_with_material,
        without_material=settings.fee_without_material,
    )


def _audit(
    registration: Registration,
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    status_from: Any,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    try:
        emit_audit_log(
            action=action,
            initiator=initiator,
            registration_code=registration.registration_code,
            event_name=registration.event_name,
            batch=registration.batch,
            session_date=registration.session_date.isoformat(),
            status_from=status_from,
            status_to=registration.status,
            payment_status=registration.payment_status,
            extra=extra,
        )
    except RuntimeError:
        logger.exception("audit log failed for %s", registration.registration_code)


async def _append_log(log_repo: PaymentLogRepository, entry: PaymentLog) -> None:
    try:
        await log_repo.append(entry)
    except Exception:
        logger.exception(
            "failed to append %s payment log for %s",
            entry.status.value,
            entry.registration_code,
        )


async def create_payment_order(
    reg_repo: RegistrationRepository,
    gateway: PaymentGateway,
    *,
    code: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Open a gateway order for a live hold. The amount always comes from the fee rule."""
    now = now or utc_now_naive()
    registration = await reg_repo.get_by_code(code)
    if registration is None:
        raise NotFoundError("registration not found", data={"registration_code": code})
    await evict_if_expired(reg_repo, registration, settings=settings, now=now)
    if registration.status != RegistrationStatus.PENDING_PAYMENT:
        raise InvalidReservationStateError(
            "registration is not awaiting payment",
            data={"registration_code": code, "status": registration.status.value},
        )

    amount = fee_for(registration, settings)
    order = await gateway.create_order(
        amount=amount,
        currency=settings.currency,
        receipt=code,
        notes={
            "registration_code": code,
            "child_name": registration.child_name,
            "event_name": registration.event_name,
        },
    )
    registration.gateway_order_id = order.order_id
    registration.payment_amount = amount
    registration.payment_currency = order.currency
    registration.updated_at = now
    await reg_repo.save(registration)
    logger.info("order %s created for %s: %d %s", order.order_id, code, amount, order.currency)
    return {
        "order_id": order.order_id,
        "amount": amount,
        "currency": order.currency,
        "key_id": gateway.key_id,
    }


async def _ensure_confirmable(
    reg_repo: RegistrationRepository,
    registration: Registration,
    *,
    settings: Settings,
    now: datetime,
) -> bool:
    """Pre-mutation checks shared by both payment paths. True means already paid."""
    if registration.payment_status == PaymentStatus.PAID:
        return True
    if registration.status != RegistrationStatus.PENDING_PAYMENT:
        raise InvalidReservationStateError(
            f"registration is {registration.status.value}, payment cannot be applied",
            data={"registration_code": registration.registration_code, "status": registration.status.value},
        )
    await evict_if_expired(reg_repo, registration, settings=settings, now=now)
    snapshot = await slot_usecase.get_availability(
        reg_repo,
        scope=ScopeKey(registration.event_name, registration.batch, registration.session_date),
        settings=settings,
        now=now,
    )
    ensure_can_confirm(snapshot)
    return False


async def confirm_payment(
    reg_repo: RegistrationRepository,
    log_repo: PaymentLogRepository,
    notifier: Notifier,
    registration: Registration,
    *,
    payment: PaymentSnapshot,
    source: PaymentSource,
    settings: Settings,
    raw: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> tuple[Registration, bool]:
    """Move a hold to registered/paid. Returns (registration, already_paid).

    The transition is one conditional UPDATE; everything after it is best
    effort and never undoes the confirmation.
    """
    now = now or utc_now_naive()
    code = registration.registration_code
    if await _ensure_confirmable(reg_repo, registration, settings=settings, now=now):
        logger.info("payment for %s already confirmed", code)
        return registration, True

    status_from = registration.status
    if not await reg_repo.mark_paid(code, payment, now=now):
        current = await reg_repo.get_by_code(code)
        if current is None:
            # The sweep got there first.
            raise ExpiredReservationError(
                "registration expired before payment could be applied, please register again",
                data={"registration_code": code, "delete_threshold_minutes": settings.hold_delete_minutes},
            )
        if current.payment_status == PaymentStatus.PAID:
            return current, True
        raise InvalidReservationStateError(
            f"registration is {current.status.value}, payment cannot be applied",
            data={"registration_code": code, "status": current.status.value},
        )

    confirmed = await reg_repo.get_by_code(code)
    if confirmed is None:  # pragma: no cover - deleted between update and read
        raise ExpiredReservationError("registration disappeared after confirmation", data={"registration_code": code})
    logger.info("payment %s confirmed %s via %s", payment.payment_id, code, source)

    await _append_log(
        log_repo,
        PaymentLog(
            registration_code=code,
            gateway_payment_id=payment.payment_id,
            gateway_order_id=payment.order_id,
            gateway_signature=payment.signature,
            amount=payment.amount,
            currency=payment.currency,
            status=PaymentEventStatus.CAPTURED,
            method=payment.method,
            bank=payment.bank,
            wallet=payment.wallet,
            vpa=payment.vpa,
            source=source,
            raw_payload=raw,
            created_at=now,
        ),
    )
    try:
        await notifier.send_registration_confirmation(confirmed)
    except Exception:
        logger.exception("confirmation email failed for %s", code)
    try:
        await notifier.send_admin_notification(confirmed)
    except Exception:
        logger.exception("admin notification failed for %s", code)
    _audit(
        confirmed,
        action="registration.confirmed",
        initiator="gateway" if source == "webhook" else "user",
        status_from=status_from,
        extra={"payment_id": payment.payment_id, "amount": payment.amount, "source": source},
    )
    return confirmed, False


async def _payment_details(gateway: PaymentGateway, payment_id: str) -> dict[str, Any]:
    try:
        return await gateway.fetch_payment(payment_id)
    except GatewayError:
        logger.warning("could not fetch details for payment %s, using client data", payment_id)
        return {}


async def verify_client_payment(
    reg_repo: RegistrationRepository,
    log_repo: PaymentLogRepository,
    gateway: PaymentGateway,
    notifier: Notifier,
    *,
    code: str,
    order_id: str,
    payment_id: str,
    signature: str,
    settings: Settings,
    method: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[Registration, bool]:
    now = now or utc_now_naive()
    registration = await reg_repo.get_by_code(code)
    if registration is None:
        raise NotFoundError("registration not found", data={"registration_code": code})

    manual = signature == MANUAL_PAYMENT_SENTINEL
    if manual:
        # Escape hatch for payments collected outside the gateway checkout.
        if not settings.allow_manual_payment:
            raise SignatureVerificationError("manual payments are disabled")
        logger.warning("manual payment %s recorded for %s without signature check", payment_id, code)
    elif not verify_payment_signature(
        order_id=order_id,
        payment_id=payment_id,
        signature=signature,
        secret=settings.razorpay_key_secret,
    ):
        logger.warning("invalid payment signature for %s (payment %s)", code, payment_id)
        raise SignatureVerificationError("payment signature verification failed")

    if registration.gateway_order_id and order_id and registration.gateway_order_id != order_id:
        raise ValidationError(
            "payment order does not belong to this registration",
            data={"registration_code": code},
        )

    details: dict[str, Any] = {} if manual else await _payment_details(gateway, payment_id)
    payment = PaymentSnapshot(
        payment_id=payment_id,
        order_id=order_id or registration.gateway_order_id,
        signature=signature,
        amount=fee_for(registration, settings),
        currency=settings.currency,
        method=details.get("method") or method or "card",
        bank=details.get("bank"),
        wallet=details.get("wallet"),
        vpa=details.get("vpa"),
    )
    return await confirm_payment(
        reg_repo,
        log_repo,
        notifier,
        registration,
        payment=payment,
        source="manual" if manual else "client_verification",
        settings=settings,
        raw=details or None,
        now=now,
    )


def parse_webhook(body: bytes, signature: Optional[str], *, settings: Settings) -> dict[str, Any]:
    """Authenticate a webhook body and decode it. Nothing is touched on failure."""
    if not verify_webhook_signature(body=body, signature=signature, secret=settings.razorpay_webhook_secret):
        raise SignatureVerificationError("invalid webhook signature")
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise ValidationError("webhook body is not valid JSON") from exc
    if not isinstance(event, dict):
        raise ValidationError("webhook body must be a JSON object")
    return event


def _payment_entity(event: dict[str, Any]) -> dict[str, Any]:
    entity = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
    return entity if isinstance(entity, dict) else {}


async def _find_for_entity(
    reg_repo: RegistrationRepository,
    entity: dict[str, Any],
    *,
    by_payment_first: bool = False,
) -> Optional[Registration]:
    payment_id = entity.get("id")
    order_id = entity.get("order_id")
    if by_payment_first and payment_id:
        found = await reg_repo.get_by_payment_id(str(payment_id))
        if found is not None:
            return found
    if order_id:
        found = await reg_repo.get_by_order_id(str(order_id))
        if found is not None:
            return found
    notes = entity.get("notes") or {}
    code = notes.get("registration_code") if isinstance(notes, dict) else None
    if code:
        return await reg_repo.get_by_code(str(code))
    return None


def _entity_amount(entity: dict[str, Any], fallback: int) -> int:
    try:
        return int(entity["amount"]) // 100
    except (KeyError, TypeError, ValueError):
        return fallback


def _log_from_entity(
    registration: Registration,
    entity: dict[str, Any],
    *,
    status: PaymentEventStatus,
    settings: Settings,
    now: datetime,
) -> PaymentLog:
    return PaymentLog(
        registration_code=registration.registration_code,
        gateway_payment_id=str(entity.get("id") or registration.gateway_payment_id or ""),
        gateway_order_id=entity.get("order_id") or registration.gateway_order_id,
        amount=_entity_amount(entity, fee_for(registration, settings)),
        currency=entity.get("currency") or settings.currency,
        status=status,
        method=entity.get("method"),
        bank=entity.get("bank"),
        wallet=entity.get("wallet"),
        vpa=entity.get("vpa"),
        card_id=entity.get("card_id"),
        error_code=entity.get("error_code"),
        error_description=entity.get("error_description"),
        source="webhook",
        raw_payload=entity,
        created_at=now,
    )


async def handle_webhook_event(
    reg_repo: RegistrationRepository,
    log_repo: PaymentLogRepository,
    notifier: Notifier,
    event: dict[str, Any],
    *,
    settings: Settings,
    now: Optional[datetime] = None,
) -> str:
    """Apply one authenticated gateway event. Returns a short outcome label for logging.

    Business-rule rejections (expired hold, full batch) are outcomes here, not
    errors: the gateway only needs an acknowledgement.
    """
    now = now or utc_now_naive()
    name = str(event.get("event") or "")
    entity = _payment_entity(event)
    payment_id = entity.get("id")
    logger.info("webhook %s received for payment %s", name, payment_id)

    if name not in ("payment.authorized", "payment.captured", "payment.failed", "payment.refunded"):
        logger.info("unhandled webhook event %s", name)
        return "ignored"

    registration = await _find_for_entity(reg_repo, entity, by_payment_first=name == "payment.refunded")
    if registration is None:
        logger.error("no registration for %s (order %s)", name, entity.get("order_id"))
        return "unmatched"
    code = registration.registration_code

    if name == "payment.authorized":
        if registration.payment_status != PaymentStatus.PAID and payment_id:
            registration.gateway_payment_id = str(payment_id)
            registration.updated_at = now
            await reg_repo.save(registration)
        await _append_log(
            log_repo,
            _log_from_entity(registration, entity, status=PaymentEventStatus.AUTHORIZED, settings=settings, now=now),
        )
        return "authorized"

    if name == "payment.captured":
        if not payment_id:
            logger.error("captured event without payment id for %s", code)
            return "unmatched"
        payment = PaymentSnapshot(
            payment_id=str(payment_id),
            order_id=entity.get("order_id") or registration.gateway_order_id,
            signature=None,
            amount=_entity_amount(entity, fee_for(registration, settings)),
            currency=entity.get("currency") or settings.currency,
            method=entity.get("method"),
            bank=entity.get("bank"),
            wallet=entity.get("wallet"),
            vpa=entity.get("vpa"),
        )
        try:
            _, already_paid = await confirm_payment(
                reg_repo,
                log_repo,
                notifier,
                registration,
                payment=payment,
                source="webhook",
                settings=settings,
                raw=entity,
                now=now,
            )
        except (ExpiredReservationError, CapacityExceededError, InvalidReservationStateError) as exc:
            logger.warning("captured payment %s for %s not applied: %s", payment_id, code, exc.message)
            return exc.reason
        return "already_paid" if already_paid else "captured"

    if name == "payment.failed":
        status_from = registration.status
        if registration.status != RegistrationStatus.PENDING_PAYMENT:
            logger.warning("failure event for %s %s ignored", registration.status.value, code)
        else:
            try:
                await evict_if_expired(reg_repo, registration, settings=settings, now=now, initiator="gateway")
            except ExpiredReservationError as exc:
                logger.warning("failure event %s for stale hold %s: %s", payment_id, code, exc.message)
                return exc.reason
            # The hold stays live for a retry until it ages out.
            registration.payment_status = PaymentStatus.PENDING
            registration.updated_at = now
            await reg_repo.save(registration)
            try:
                await notifier.send_payment_failure(registration, reason=entity.get("error_description"))
            except Exception:
                logger.exception("payment failure notice failed for %s", code)
            _audit(
                registration,
                action="registration.payment_failed",
                initiator="gateway",
                status_from=status_from,
                extra={"payment_id": payment_id, "error_code": entity.get("error_code")},
            )
        await _append_log(
            log_repo,
            _log_from_entity(registration, entity, status=PaymentEventStatus.FAILED, settings=settings, now=now),
        )
        return "failed"

    # payment.refunded: financial reconciliation only, capacity is not handed back.
    status_from = registration.status
    registration.status = RegistrationStatus.CANCELLED
    registration.payment_status = PaymentStatus.REFUNDED
    registration.payment_state = "refunded"
    registration.updated_at = now
    await reg_repo.save(registration)
    await _append_log(
        log_repo,
        _log_from_entity(registration, entity, status=PaymentEventStatus.REFUNDED, settings=settings, now=now),
    )
    _audit(
        registration,
        action="registration.refunded",
        initiator="gateway",
        status_from=status_from,
        extra={"payment_id": payment_id},
    )
    return "refunded"

