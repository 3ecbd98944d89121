"""
MercadoPago client.

Only two calls are needed: open a checkout preference for a reservation and
read back the authoritative state of a payment. Both go through ``_request``,
which turns every transport or server problem into GatewayUnavailable so
callers never see a half-finished call as anything but retryable.
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import quote

import httpx

from app.config import GATEWAY_TIMEOUT_SECONDS, MERCADOPAGO_ACCESS_TOKEN, MERCADOPAGO_API_URL
from app.errors import GatewayRejected, GatewayUnavailable

logger = logging.getLogger(__name__)

# MercadoPago payment ids are plain integers
PAYMENT_ID_RE = re.compile(r"[0-9]{1,32}")


@dataclass(frozen=True)
class ReturnUrls:
    success: str
    failure: str
    pending: str


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayPayment:
    payment_id: str
    status: str
    external_reference: Optional[str]
    payment_method: Optional[str]


class MercadoPagoGateway:
    """Synchronous MercadoPago REST client with a bounded timeout."""

    def __init__(
        self,
        access_token: Optional[str] = MERCADOPAGO_ACCESS_TOKEN,
        base_url: str = MERCADOPAGO_API_URL,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.access_token = access_token
        self.client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        if not self.access_token:
            logger.error("MercadoPago access token not configured")
            raise GatewayUnavailable("MercadoPago access token not configured")

        headers = {"Authorization": f"Bearer {self.access_token}", **kwargs.pop("headers", {})}
        try:
            response = self.client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException:
            logger.warning(f"⏳ MercadoPago timeout on {method} {path}")
            raise GatewayUnavailable(f"MercadoPago timed out on {method} {path}") from None
        except httpx.RequestError as e:
            logger.warning(f"❌ MercadoPago request error on {method} {path}: {e}")
            raise GatewayUnavailable(f"MercadoPago unreachable: {e}") from None

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"❌ MercadoPago {method} {path} returned {response.status_code}")
            raise GatewayUnavailable(f"MercadoPago returned {response.status_code}")
        if response.status_code >= 400:
            logger.error(f"❌ MercadoPago {method} {path} rejected ({response.status_code}): {response.text}")
            raise GatewayRejected(f"MercadoPago rejected the request ({response.status_code})", response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise GatewayUnavailable(f"MercadoPago returned a non-JSON body on {method} {path}") from None
        if not isinstance(data, dict):
            logger.error(f"❌ MercadoPago {method} {path} returned {type(data).__name__}, expected an object")
            raise GatewayRejected(f"MercadoPago returned an unexpected body on {method} {path}", response.status_code)
        return data

    def create_intent(
        self,
        title: str,
        description: str,
        amount: Decimal,
        currency: str,
        correlation_key: str,
        return_urls: ReturnUrls,
        payer: Optional[dict] = None,
    ) -> PaymentIntent:
        """Create a checkout preference whose ``external_reference`` is ``correlation_key``."""
        preference = {
            "items": [{
                "title": title,
                "description": description,
                "quantity": 1,
                "currency_id": currency,
                "unit_price": float(amount),
            }],
            "back_urls": {
                "success": return_urls.success,
                "failure": return_urls.failure,
                "pending": return_urls.pending,
            },
            "auto_return": "approved",
            "external_reference": correlation_key,
        }
        if payer:
            preference["payer"] = payer

        data = self._request(
            "POST",
            "/checkout/preferences",
            json=preference,
            headers={"X-Idempotency-Key": correlation_key},
        )
        intent_id = data.get("id")
        redirect_url = data.get("init_point") or data.get("sandbox_init_point")
        if not intent_id or not redirect_url:
            raise GatewayUnavailable("MercadoPago preference response missing id or init_point")
        return PaymentIntent(intent_id=str(intent_id), redirect_url=redirect_url)

    def get_payment(self, payment_id: str) -> GatewayPayment:
        payment_id = str(payment_id)
        if not PAYMENT_ID_RE.fullmatch(payment_id):
            raise GatewayRejected(f"Invalid MercadoPago payment id {payment_id!r}", 400)
        data = self._request("GET", f"/v1/payments/{quote(payment_id, safe='')}")
        reference = data.get("external_reference")
        return GatewayPayment(
            payment_id=str(data.get("id") or payment_id),
            status=str(data.get("status") or "unknown"),
            external_reference=str(reference) if reference else None,
            payment_method=data.get("payment_method_id"),
        )
