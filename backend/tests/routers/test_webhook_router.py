import json
from typing import Any, AsyncIterator

import pytest
from academy.deps import get_app_settings, get_notifier, get_session
from academy.main import app
from academy.models import PaymentStatus, RegistrationStatus
from academy.routers import payments as router
from academy.utils.signatures import hmac_sha256_hex
from academy.utils.time import utc_now_naive
from conftest import FakeNotifier, FakePaymentLogRepo, FakeRegistrationRepo, make_registration
from httpx import ASGITransport, AsyncClient


class DummySession:
    def __init__(self) -> None:
        self.commits = 0
        self.rollbacks = 0

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1


@pytest.fixture
def session() -> DummySession:
    return DummySession()


@pytest.fixture
def client_app(monkeypatch, settings, session, reg_repo: FakeRegistrationRepo, log_repo: FakePaymentLogRepo):
    async def override_session() -> AsyncIterator[DummySession]:
        yield session

    monkeypatch.setattr(router, "SqlAlchemyRegistrationRepository", lambda s: reg_repo)
    monkeypatch.setattr(router, "SqlAlchemyPaymentLogRepository", lambda s: log_repo)
    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_notifier] = lambda: FakeNotifier()
    yield app
    app.dependency_overrides.clear()


def _body(event: str = "payment.captured") -> bytes:
    entity = {"id": "pay_1", "order_id": "order_1", "amount": 49900, "currency": "INR", "method": "upi"}
    return json.dumps({"event": event, "payload": {"payment": {"entity": entity}}}).encode()


async def _post(app_: Any, body: bytes, signature: str | None) -> Any:
    headers = {"content-type": "application/json"}
    if signature is not None:
        headers["x-razorpay-signature"] = signature
    async with AsyncClient(transport=ASGITransport(app=app_), base_url="http://test") as client:
        return await client.post("/webhooks/payments", content=body, headers=headers)


async def _seed_hold(reg_repo: FakeRegistrationRepo) -> None:
    # The router stamps events with the wall clock, so the hold must be fresh by it.
    registration = make_registration(created_at=utc_now_naive())
    registration.gateway_order_id = "order_1"
    await reg_repo.save(registration)


@pytest.mark.asyncio
async def test_valid_webhook_confirms_and_acknowledges(client_app, reg_repo, log_repo, session) -> None:
    await _seed_hold(reg_repo)
    body = _body()

    resp = await _post(client_app, body, hmac_sha256_hex("webhook_secret", body))

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.status == RegistrationStatus.REGISTERED
    assert registration.payment_status == PaymentStatus.PAID
    assert session.commits == 1


@pytest.mark.asyncio
async def test_tampered_webhook_is_rejected_without_changes(client_app, reg_repo, log_repo, session) -> None:
    await _seed_hold(reg_repo)
    body = _body()
    signature = hmac_sha256_hex("webhook_secret", body)
    tampered = body.replace(b"49900", b"100")

    resp = await _post(client_app, tampered, signature)

    assert resp.status_code == 400
    assert resp.json()["reason"] == "invalid_signature"
    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.status == RegistrationStatus.PENDING_PAYMENT
    assert log_repo.entries == []
    assert session.commits == 0


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(client_app) -> None:
    resp = await _post(client_app, _body(), None)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_internal_failure_is_still_acknowledged(client_app, monkeypatch, session) -> None:
    async def exploding(*args: object, **kwargs: object) -> str:
        raise RuntimeError("database went away")

    monkeypatch.setattr(router.payment_usecase, "handle_webhook_event", exploding)
    body = _body()

    resp = await _post(client_app, body, hmac_sha256_hex("webhook_secret", body))

    assert resp.status_code == 200
    assert session.rollbacks == 1


@pytest.mark.asyncio
async def test_unmatched_order_is_acknowledged(client_app, log_repo) -> None:
    body = _body()
    resp = await _post(client_app, body, hmac_sha256_hex("webhook_secret", body))
    assert resp.status_code == 200
    assert log_repo.entries == []


@pytest.mark.asyncio
async def test_non_ascii_signature_header_is_rejected(client_app, reg_repo, log_repo, session) -> None:
    await _seed_hold(reg_repo)
    headers = {"content-type": "application/json", "x-razorpay-signature": b"\xe9" * 64}

    async with AsyncClient(transport=ASGITransport(app=client_app), base_url="http://test") as client:
        resp = await client.post("/webhooks/payments", content=_body(), headers=headers)

    assert resp.status_code == 400
    registration = await reg_repo.get_by_code("LS-RD26-00001")
    assert registration.status == RegistrationStatus.PENDING_PAYMENT
    assert log_repo.entries == []
    assert session.commits == 0


@pytest.mark.asyncio
async def test_signed_unreadable_body_is_acknowledged(client_app, log_repo, session) -> None:
    body = b"not json"

    resp = await _post(client_app, body, hmac_sha256_hex("webhook_secret", body))

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert log_repo.entries == []
    assert session.commits == 0
