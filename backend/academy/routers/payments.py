import logging

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..deps import get_app_settings, get_gateway, get_notifier, get_session, unit_of_work
from ..domain.errors import DomainError, SignatureVerificationError
from ..domain.gateways import Notifier, PaymentGateway
from ..infrastructure.repositories import SqlAlchemyPaymentLogRepository, SqlAlchemyRegistrationRepository
from ..schemas import PaymentOrderRead, PaymentVerified, PaymentVerifyRequest, RegistrationCodeRequest, RegistrationRead
from ..usecases import payments as payment_usecase
from .errors import to_http

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["payments"])


@router.post("/payment-orders", response_model=PaymentOrderRead)
async def create_payment_order(
    payload: RegistrationCodeRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentOrderRead:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    try:
        async with unit_of_work(session):
            order = await payment_usecase.create_payment_order(
                reg_repo,
                gateway,
                code=payload.registration_code.strip(),
                settings=settings,
            )
    except DomainError as exc:
        raise to_http(exc) from exc
    return PaymentOrderRead(**order)


@router.post("/payments/verify", response_model=PaymentVerified)
async def verify_payment(
    payload: PaymentVerifyRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentVerified:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    log_repo = SqlAlchemyPaymentLogRepository(session)
    try:
        async with unit_of_work(session):
            registration, already_paid = await payment_usecase.verify_client_payment(
                reg_repo,
                log_repo,
                gateway,
                notifier,
                code=payload.registration_code.strip(),
                order_id=payload.razorpay_order_id,
                payment_id=payload.razorpay_payment_id,
                signature=payload.razorpay_signature,
                method=payload.payment_method,
                settings=settings,
            )
    except DomainError as exc:
        raise to_http(exc) from exc
    return PaymentVerified(already_paid=already_paid, registration=RegistrationRead.from_db(registration))


@router.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    notifier: Notifier = Depends(get_notifier),
) -> JSONResponse:
    body = await request.body()
    try:
        event = payment_usecase.parse_webhook(body, x_razorpay_signature, settings=settings)
    except SignatureVerificationError as exc:
        logger.warning("webhook rejected: %s", exc.message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"reason": exc.reason, "message": "webhook rejected"},
        )
    except DomainError as exc:
        # Authentic but unreadable: redelivery would not help.
        logger.error("webhook body ignored: %s", exc.message)
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ok"})

    reg_repo = SqlAlchemyRegistrationRepository(session)
    log_repo = SqlAlchemyPaymentLogRepository(session)
    outcome = "error"
    try:
        async with unit_of_work(session):
            outcome = await payment_usecase.handle_webhook_event(
                reg_repo,
                log_repo,
                notifier,
                event,
                settings=settings,
            )
    except Exception:
        # Acknowledge anyway: a 5xx only makes the gateway redeliver the same event.
        logger.exception("webhook %s processing failed", event.get("event"))
    logger.info("webhook %s handled: %s", event.get("event"), outcome)
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ok"})
