import hashlib
import hmac
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import httpx
import structlog

from donation_service.config import Settings, get_settings
from donation_service.errors import GatewayError

logger = structlog.get_logger(__name__)

CURRENCY = "PHP"


@dataclass
class Source:
    id: str
    status: str
    checkout_url: str | None = None


@dataclass
class PaymentIntent:
    id: str
    status: str
    client_key: str | None = None
    redirect_url: str | None = None


@dataclass
class Payment:
    id: str
    status: str


def _body(attributes):
    return {"data": {"attributes": attributes}}


def _source(data) -> Source:
    attrs = data.get("attributes", {})
    return Source(
        id=data["id"],
        status=attrs.get("status", ""),
        checkout_url=(attrs.get("redirect") or {}).get("checkout_url"),
    )


def _intent(data) -> PaymentIntent:
    attrs = data.get("attributes", {})
    next_action = attrs.get("next_action") or {}
    return PaymentIntent(
        id=data["id"],
        status=attrs.get("status", ""),
        client_key=attrs.get("client_key"),
        redirect_url=(next_action.get("redirect") or {}).get("url"),
    )


class PayMongoClient:
    """Thin client over the PayMongo v1 REST API."""

    def __init__(self, secret_key: str, base_url: str, timeout: float = 15.0,
                 transport: httpx.BaseTransport | None = None):
        self._http = httpx.Client(
            base_url=base_url,
            auth=(secret_key, ""),
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PayMongoClient":
        settings = settings or get_settings()
        settings.require("paymongo_secret_key")
        return cls(settings.paymongo_secret_key, settings.paymongo_api_base,
                   settings.paymongo_timeout)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _request(self, method: str, path: str, json=None) -> dict:
        try:
            response = self._http.request(method, path, json=json)
        except httpx.TimeoutException:
            logger.warning("PayMongo request timed out", method=method, path=path)
            raise GatewayError("Payment service timed out. Please try again.")
        except httpx.HTTPError as e:
            logger.error("PayMongo request failed", method=method, path=path, error=str(e))
            raise GatewayError()

        if response.is_error:
            # PSP details stay in the logs
            logger.error(
                "PayMongo rejected request",
                method=method,
                path=path,
                status_code=response.status_code,
                response=response.text,
            )
            raise GatewayError(
                "Payment could not be processed by the payment service.",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return response.json()["data"]

    def create_source(self, amount: int, source_type: str, success_url: str,
                      failed_url: str) -> Source:
        data = self._request("POST", "/sources", _body({
            "amount": amount,
            "currency": CURRENCY,
            "type": source_type,
            "redirect": {"success": success_url, "failed": failed_url},
        }))
        return _source(data)

    def create_payment_intent(self, amount: int, methods: list[str],
                              three_d_secure: str = "automatic",
                              metadata: dict | None = None) -> PaymentIntent:
        data = self._request("POST", "/payment_intents", _body({
            "amount": amount,
            "currency": CURRENCY,
            "payment_method_allowed": methods,
            "payment_method_options": {"card": {"request_three_d_secure": three_d_secure}},
            "metadata": metadata or {},
        }))
        return _intent(data)

    def create_payment_method(self, method_type: str, billing: dict | None = None) -> str:
        attributes = {"type": method_type}
        if billing:
            attributes["billing"] = billing
        data = self._request("POST", "/payment_methods", _body(attributes))
        return data["id"]

    def attach_payment_method(self, intent_id: str, payment_method_id: str,
                              return_url: str | None = None) -> PaymentIntent:
        attributes = {"payment_method": payment_method_id}
        if return_url:
            attributes["return_url"] = return_url
        data = self._request("POST", f"/payment_intents/{intent_id}/attach", _body(attributes))
        return _intent(data)

    def get_source(self, source_id: str) -> Source:
        return _source(self._request("GET", f"/sources/{source_id}"))

    def get_payment_intent(self, intent_id: str) -> PaymentIntent:
        return _intent(self._request("GET", f"/payment_intents/{intent_id}"))

    def create_payment(self, amount: int, source_id: str, description: str | None = None,
                       metadata: dict | None = None) -> Payment:
        attributes = {
            "amount": amount,
            "currency": CURRENCY,
            "source": {"id": source_id, "type": "source"},
        }
        if description:
            attributes["description"] = description
        if metadata:
            attributes["metadata"] = metadata
        data = self._request("POST", "/payments", _body(attributes))
        return Payment(id=data["id"], status=data.get("attributes", {}).get("status", ""))


@contextmanager
def open_gateway(gateway: PayMongoClient | None = None,
                 settings: Settings | None = None) -> Iterator[PayMongoClient]:
    """Yield ``gateway`` as-is, or a client built from settings that is closed on exit."""
    if gateway is not None:
        yield gateway
        return
    client = PayMongoClient.from_settings(settings)
    try:
        yield client
    finally:
        client.close()


def verify_webhook_signature(payload: bytes, header: str | None, secret: str) -> bool:
    """Check a ``Paymongo-Signature`` header (``t=..,te=..,li=..``)."""
    if not header:
        return False
    parts = dict(
        item.split("=", 1) for item in header.split(",") if "=" in item
    )
    timestamp = parts.get("t")
    if not timestamp:
        return False
    expected = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return any(
        parts.get(key) and hmac.compare_digest(parts[key], expected)
        for key in ("te", "li")
    )
