from abc import ABC, abstractmethod
from typing import Dict, Optional, TypedDict
import hmac
import hashlib
import logging
import uuid

import httpx

from .errors import GatewayError, GatewayNotConfigured
from .helpers import ct_equal

log = logging.getLogger(__name__)


# ----------------------------
# Signature rule
# ----------------------------
def expected_signature(secret: str, order_id: str, payment_id: str) -> str:
    body = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(
    order_id: str, payment_id: str, signature: Optional[str], secret: str
) -> bool:
    """Pure check of a callback triple against the shared secret."""
    if not signature or not order_id or not payment_id:
        return False
    expected = expected_signature(secret, order_id, payment_id)
    return ct_equal(expected, signature)


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class CreateIntentResult(TypedDict):
    intent_id: str
    amount: int  # minor units
    currency: str


class PaymentGateway(ABC):
    name = "gateway"

    def __init__(self, key_id: Optional[str], key_secret: Optional[str]):
        self.key_id = key_id
        self._secret = key_secret

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self._secret)

    def require_secret(self) -> str:
        if not self._secret:
            raise GatewayNotConfigured("payment gateway secret not configured")
        return self._secret

    def verify(self, order_id: str, payment_id: str, signature: str) -> bool:
        return verify_signature(
            order_id, payment_id, signature, self.require_secret()
        )

    async def create_intent(
        self, amount_minor: int, currency: str, receipt: str, notes: dict
    ) -> CreateIntentResult:
        if not self.configured:
            raise GatewayNotConfigured("payment gateway keys not configured")
        return await self._create_intent(amount_minor, currency, receipt,
                                         notes)

    @abstractmethod
    async def _create_intent(
        self, amount_minor: int, currency: str, receipt: str, notes: dict
    ) -> CreateIntentResult: ...

    async def aclose(self) -> None:
        return None


# ----------------------------
# Mock gateway (development / tests)
# ----------------------------
class MockGateway(PaymentGateway):
    name = "mock"

    def __init__(self, key_id: Optional[str] = "mock_key",
                 key_secret: Optional[str] = "mock_secret",
                 max_open: int = 10_000):
        super().__init__(key_id, key_secret)
        self.max_open = max_open
        self.intents: Dict[str, CreateIntentResult] = {}

    async def _create_intent(
        self, amount_minor: int, currency: str, receipt: str, notes: dict
    ) -> CreateIntentResult:
        intent: CreateIntentResult = {
            "intent_id": f"order_{uuid.uuid4().hex[:14]}",
            "amount": amount_minor,
            "currency": currency,
        }
        self.intents[intent["intent_id"]] = intent
        while len(self.intents) > self.max_open:
            # oldest unpaid intent goes first
            del self.intents[next(iter(self.intents))]
        return intent

    def pay(self, intent_id: str) -> Dict[str, str]:
        """Simulate the checkout widget: a signed (order, payment) pair.

        An intent can be paid once; paying forgets it.
        """
        secret = self.require_secret()
        if self.intents.pop(intent_id, None) is None:
            raise GatewayError("unknown intent")
        payment_id = f"pay_{uuid.uuid4().hex[:14]}"
        return {
            "order_id": intent_id,
            "payment_id": payment_id,
            "signature": expected_signature(secret, intent_id, payment_id),
        }


# ----------------------------
# Razorpay orders API
# ----------------------------
class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(self, key_id: Optional[str], key_secret: Optional[str],
                 base_url: str = "https://api.razorpay.com/v1",
                 http: Optional[httpx.AsyncClient] = None):
        super().__init__(key_id, key_secret)
        self.base_url = base_url.rstrip("/")
        self._http = http
        self._owns_http = http is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=10.0)
        return self._http

    async def _create_intent(
        self, amount_minor: int, currency: str, receipt: str, notes: dict
    ) -> CreateIntentResult:
        try:
            r = await self._client().post(
                f"{self.base_url}/orders",
                json={
                    "amount": amount_minor,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes,
                },
                auth=(self.key_id, self._secret),
            )
            r.raise_for_status()
            body = r.json()
        except httpx.HTTPError as e:
            log.error("gateway order creation failed: %s", e)
            raise GatewayError("payment gateway request failed") from e
        return {
            "intent_id": body["id"],
            "amount": int(body["amount"]),
            "currency": body["currency"],
        }

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None


def new_gateway(kind: str, key_id: Optional[str], key_secret: Optional[str],
                base_url: str) -> PaymentGateway:
    if kind == "razorpay":
        return RazorpayGateway(key_id, key_secret, base_url=base_url)
    if kind == "mock":
        return MockGateway(key_id or "mock_key", key_secret or "mock_secret")
    raise RuntimeError(f"unknown payment gateway {kind!r}")
