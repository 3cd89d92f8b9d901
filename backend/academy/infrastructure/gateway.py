from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..domain.errors import GatewayError
from ..domain.gateways import GatewayOrder, PaymentGateway

logger = logging.getLogger(__name__)


class RazorpayGateway(PaymentGateway):
    """Thin async client for the two gateway calls the payment flow needs.

    Amounts are passed in whole rupees and converted to paise on the wire.
    Failures surface as GatewayError; the caller decides whether to retry.
    """

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        base_url: str,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._key_id = key_id
        self._key_secret = key_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def key_id(self) -> str:
        return self._key_id

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            auth=(self._key_id, self._key_secret),
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("gateway %s %s failed with %s", method, path, exc.response.status_code)
            raise GatewayError(
                "payment provider rejected the request",
                data={"provider_status": exc.response.status_code},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("gateway %s %s failed: %s", method, path, exc)
            raise GatewayError("payment provider unavailable") from exc

    async def create_order(
        self,
        *,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, str],
    ) -> GatewayOrder:
        body = await self._request(
            "POST",
            "/orders",
            json={
                "amount": amount * 100,
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 1,
                "notes": notes,
            },
        )
        order_id = body.get("id")
        if not order_id:
            raise GatewayError("payment provider returned no order id")
        return GatewayOrder(
            order_id=str(order_id),
            amount_minor=int(body.get("amount", amount * 100)),
            currency=str(body.get("currency", currency)),
        )

    async def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")
