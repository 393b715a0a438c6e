from types import SimpleNamespace

import pytest
import stripe

import payments
from errors import InvalidRequestError, PaymentGatewayError
from payments import StripeGateway


class FakeIntents:
    def __init__(self, fail=None):
        self.calls = []
        self.fail = fail

    def _answer(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if self.fail:
            raise self.fail
        return SimpleNamespace(id="pi_1", client_secret="pi_1_secret", amount=2750,
                               currency="usd", status="requires_payment_method")

    def create(self, params):
        return self._answer("create", params=params)

    def retrieve(self, intent):
        return self._answer("retrieve", intent)

    def cancel(self, intent):
        return self._answer("cancel", intent)


@pytest.fixture
def stripe_calls(monkeypatch):
    made = {"clients": [], "intents": FakeIntents()}

    def fake_client(api_key, **kwargs):
        made["clients"].append(dict(kwargs, api_key=api_key))
        return SimpleNamespace(v1=SimpleNamespace(payment_intents=made["intents"]))

    monkeypatch.setattr(stripe, "StripeClient", fake_client)
    monkeypatch.setattr(stripe, "RequestsClient", lambda timeout: ("requests", timeout))
    return made


def test_create_intent_is_bounded_and_not_retried(stripe_calls):
    gateway = StripeGateway(api_key="sk_test_x", default_timeout=10)

    intent = gateway.create_intent(2750, "usd", {"userId": "u1", "userEmail": None}, timeout=2.5)

    client = stripe_calls["clients"][0]
    assert client["api_key"] == "sk_test_x"
    assert client["http_client"] == ("requests", 2.5)
    assert client["max_network_retries"] == 0
    name, _, kwargs = stripe_calls["intents"].calls[0]
    assert name == "create"
    assert kwargs["params"]["amount"] == 2750
    assert kwargs["params"]["metadata"] == {"userId": "u1"}
    assert (intent.id, intent.amount_cents, intent.is_open) == ("pi_1", 2750, True)


def test_calls_without_budget_use_default_timeout(stripe_calls):
    gateway = StripeGateway(api_key="sk_test_x", default_timeout=7)

    gateway.cancel_intent("pi_1")
    looked_up = gateway.retrieve_intent("pi_1", timeout=0)

    assert stripe_calls["clients"][0]["http_client"] == ("requests", 7)
    assert stripe_calls["clients"][1]["http_client"] == ("requests", 0.001)
    assert looked_up.currency == "usd"


def test_connection_errors_become_gateway_errors(stripe_calls):
    stripe_calls["intents"].fail = stripe.APIConnectionError("timed out")
    gateway = StripeGateway(api_key="sk_test_x")

    with pytest.raises(PaymentGatewayError):
        gateway.create_intent(100, "usd", {})
    with pytest.raises(PaymentGatewayError):
        gateway.cancel_intent("pi_1")


def test_unknown_intent_is_an_invalid_request(stripe_calls):
    stripe_calls["intents"].fail = stripe.InvalidRequestError("No such payment_intent", "intent")

    with pytest.raises(InvalidRequestError):
        StripeGateway(api_key="sk_test_x").retrieve_intent("pi_nope")


def test_zero_amount_is_refused_before_calling_stripe(stripe_calls):
    with pytest.raises(InvalidRequestError):
        StripeGateway(api_key="sk_test_x").create_intent(0, "usd", {})
    assert stripe_calls["clients"] == []


def test_only_card_payments_need_authorization():
    assert payments.requires_authorization("stripe")
    assert not payments.requires_authorization("bank_transfer")
