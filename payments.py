"""
Payment authorization gateway

Three calls are used: create an authorization intent for an amount, look up
an intent the client already holds, and cancel an intent when the order it
was meant for cannot be placed. Capture happens on the client with the
returned client secret.

Every call takes a timeout in seconds and is made without network retries,
so a slow processor cannot hold a checkout past its time budget.
"""
import logging
from typing import Dict, NamedTuple, Optional

import stripe

import config
from errors import InvalidRequestError, PaymentGatewayError

logger = logging.getLogger(__name__)

# Payment methods that are authorised before the order is written.
AUTHORIZED_METHODS = {"stripe"}

# Intent statuses that can still end in a capture.
OPEN_INTENT_STATUSES = frozenset({
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "processing",
    "requires_capture",
})


def requires_authorization(payment_method: str) -> bool:
    return payment_method in AUTHORIZED_METHODS


class PaymentIntent(NamedTuple):
    id: str
    client_secret: Optional[str]
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_INTENT_STATUSES


class PaymentGateway:
    def create_intent(self, amount_cents: int, currency: str, metadata: Dict[str, str],
                      timeout: Optional[float] = None) -> PaymentIntent:
        raise NotImplementedError

    def retrieve_intent(self, intent_id: str, timeout: Optional[float] = None) -> PaymentIntent:
        raise NotImplementedError

    def cancel_intent(self, intent_id: str, timeout: Optional[float] = None) -> None:
        raise NotImplementedError


def _as_intent(intent) -> PaymentIntent:
    return PaymentIntent(
        id=intent.id,
        client_secret=intent.client_secret,
        amount_cents=intent.amount,
        currency=intent.currency,
        status=intent.status,
    )


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: str = config.STRIPE_SECRET_KEY,
                 default_timeout: float = config.PAYMENT_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.default_timeout = default_timeout

    def _client(self, timeout: Optional[float]) -> stripe.StripeClient:
        seconds = self.default_timeout if timeout is None else max(timeout, 0.001)
        return stripe.StripeClient(
            self.api_key,
            http_client=stripe.RequestsClient(timeout=seconds),
            max_network_retries=0,
        )

    def create_intent(self, amount_cents, currency, metadata, timeout=None):
        if amount_cents <= 0:
            raise InvalidRequestError("Amount is required")
        try:
            intent = self._client(timeout).v1.payment_intents.create(params={
                "amount": amount_cents,
                "currency": currency,
                "metadata": {k: v for k, v in metadata.items() if v is not None},
                "description": f"Order {metadata.get('orderId') or metadata.get('orderNumber') or ''}".strip(),
            })
        except stripe.StripeError as e:
            logger.error("Payment intent creation failed for %s %s: %s", amount_cents, currency, e)
            raise PaymentGatewayError() from e
        logger.info("Created payment intent %s for %s %s", intent.id, amount_cents, currency)
        return _as_intent(intent)

    def retrieve_intent(self, intent_id, timeout=None):
        try:
            intent = self._client(timeout).v1.payment_intents.retrieve(intent_id)
        except stripe.InvalidRequestError as e:
            logger.warning("Unknown payment intent %s: %s", intent_id, e)
            raise InvalidRequestError("Unknown payment intent", payment_intent_id=intent_id) from e
        except stripe.StripeError as e:
            logger.error("Looking up payment intent %s failed: %s", intent_id, e)
            raise PaymentGatewayError() from e
        return _as_intent(intent)

    def cancel_intent(self, intent_id, timeout=None):
        try:
            self._client(timeout).v1.payment_intents.cancel(intent_id)
        except stripe.StripeError as e:
            logger.error("Cancelling payment intent %s failed: %s", intent_id, e)
            raise PaymentGatewayError() from e
        logger.info("Cancelled payment intent %s", intent_id)


_gateway = None


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
