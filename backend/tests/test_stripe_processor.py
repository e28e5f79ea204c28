from types import SimpleNamespace

import pytest

from taskhub.domain.errors import PaymentProcessorError
from taskhub.infra.stripe_client import StripePaymentProcessor
from taskhub.shared.circuit_breaker import CircuitBreaker


class FakeStripeError(Exception):
    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.user_message = message


class FakeResource:
    def __init__(self, prefix: str, calls: list, fail_with: Exception | None = None) -> None:
        self.prefix = prefix
        self.calls = calls
        self.fail_with = fail_with

    def create(self, **kwargs):
        self.calls.append((self.prefix, kwargs))
        if self.fail_with is not None:
            raise self.fail_with
        return SimpleNamespace(
            id=f"{self.prefix}_1",
            status="requires_confirmation",
            client_secret=f"{self.prefix}_secret",
            metadata=kwargs.get("metadata"),
        )

    def retrieve(self, ref):
        self.calls.append((self.prefix, {"ref": ref}))
        return SimpleNamespace(id=ref, status="succeeded", metadata={})


def _fake_sdk(fail_with: Exception | None = None):
    calls: list = []
    sdk = SimpleNamespace(
        api_key=None,
        StripeError=FakeStripeError,
        PaymentIntent=FakeResource("pi", calls, fail_with),
        Transfer=FakeResource("tr", calls, fail_with),
        Refund=FakeResource("re", calls, fail_with),
    )
    return sdk, calls


def _processor(sdk, *, secret_key: str | None = "sk_test", failure_threshold: int = 5):
    circuit = CircuitBreaker(name="stripe-test", failure_threshold=failure_threshold, recovery_time=60)
    return StripePaymentProcessor(secret_key=secret_key, circuit=circuit, stripe_sdk=sdk)


@pytest.mark.anyio
async def test_authorize_forwards_amount_and_idempotency_key():
    sdk, calls = _fake_sdk()
    processor = _processor(sdk)

    intent = await processor.authorize(
        amount_cents=12300,
        currency="usd",
        idempotency_key="escrow-intent:req-1",
        metadata={"request_id": "req-1"},
    )

    assert intent.ref == "pi_1"
    assert intent.client_secret == "pi_secret"
    assert sdk.api_key == "sk_test"
    (_, kwargs), = calls
    assert kwargs["amount"] == 12300
    assert kwargs["idempotency_key"] == "escrow-intent:req-1"


@pytest.mark.anyio
async def test_refund_and_transfer_return_processor_refs():
    sdk, calls = _fake_sdk()
    processor = _processor(sdk)

    transfer_ref = await processor.transfer(
        amount_cents=8500,
        currency="usd",
        destination="acct_123",
        idempotency_key="escrow-transfer:pay-1",
        metadata={},
    )
    refund_ref = await processor.refund(
        intent_ref="pi_9", amount_cents=12300, idempotency_key="escrow-refund:pay-1", reason="no show"
    )

    assert (transfer_ref, refund_ref) == ("tr_1", "re_1")
    assert calls[1][1]["payment_intent"] == "pi_9"
    assert calls[1][1]["metadata"] == {"reason": "no show"}


@pytest.mark.anyio
async def test_missing_secret_key_fails_without_calling_stripe():
    sdk, calls = _fake_sdk()
    processor = _processor(sdk, secret_key=None)

    with pytest.raises(PaymentProcessorError) as exc_info:
        await processor.retrieve_intent("pi_1")

    assert exc_info.value.processor_code == "not_configured"
    assert calls == []


@pytest.mark.anyio
async def test_stripe_errors_are_translated_and_open_the_circuit():
    sdk, calls = _fake_sdk(fail_with=FakeStripeError("Your card was declined.", code="card_declined"))
    processor = _processor(sdk, failure_threshold=1)

    with pytest.raises(PaymentProcessorError) as exc_info:
        await processor.authorize(
            amount_cents=100, currency="usd", idempotency_key="k", metadata={}
        )
    assert exc_info.value.processor_code == "card_declined"
    assert exc_info.value.detail == "Your card was declined."

    with pytest.raises(PaymentProcessorError) as exc_info:
        await processor.authorize(
            amount_cents=100, currency="usd", idempotency_key="k", metadata={}
        )
    assert exc_info.value.processor_code == "circuit_open"
    assert len(calls) == 1
