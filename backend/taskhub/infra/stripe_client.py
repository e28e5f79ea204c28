from __future__ import annotations

import logging
from typing import Any, Callable

import anyio

from taskhub.domain.errors import PaymentProcessorError
from taskhub.domain.escrow.processor import ProcessorIntent
from taskhub.infra.metrics import metrics
from taskhub.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)


def build_stripe_circuit(app_settings) -> CircuitBreaker:
    return CircuitBreaker(
        name="stripe",
        failure_threshold=app_settings.stripe_circuit_failure_threshold,
        recovery_time=app_settings.stripe_circuit_recovery_seconds,
        window_seconds=app_settings.stripe_circuit_window_seconds,
        half_open_max_calls=app_settings.stripe_circuit_half_open_max_calls,
        timeout_seconds=app_settings.stripe_request_timeout_seconds,
    )


class StripePaymentProcessor:
    """Escrow processor backed by Stripe PaymentIntents, Transfers and Refunds.

    The SDK is synchronous; every call runs in a worker thread behind the
    ``stripe`` circuit breaker and carries the caller's idempotency key.
    """

    def __init__(
        self,
        *,
        secret_key: str | None,
        circuit: CircuitBreaker,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key
        self.circuit = circuit

    async def _call(self, operation: str, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        if not self.secret_key:
            raise PaymentProcessorError(
                detail="Stripe secret key not configured", processor_code="not_configured"
            )
        self.stripe.api_key = self.secret_key

        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        try:
            return await self.circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))
        except CircuitBreakerOpenError as exc:
            metrics.record_processor_error(operation)
            raise PaymentProcessorError(
                detail="Payment processor temporarily unavailable", processor_code="circuit_open"
            ) from exc
        except self.stripe.StripeError as exc:
            metrics.record_processor_error(operation)
            code = getattr(exc, "code", None) or type(exc).__name__
            logger.warning(
                "stripe_call_failed",
                extra={"extra": {"operation": operation, "code": code}},
            )
            raise PaymentProcessorError(
                detail=getattr(exc, "user_message", None) or "Payment processor rejected the request",
                processor_code=str(code),
            ) from exc
        except TimeoutError as exc:
            metrics.record_processor_error(operation)
            raise PaymentProcessorError(
                detail="Payment processor timed out", processor_code="timeout"
            ) from exc

    @staticmethod
    def _intent(payload: Any) -> ProcessorIntent:
        metadata = getattr(payload, "metadata", None) or {}
        return ProcessorIntent(
            ref=payload.id,
            status=payload.status,
            client_secret=getattr(payload, "client_secret", None),
            metadata=dict(metadata),
        )

    async def authorize(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ProcessorIntent:
        intent = await self._call(
            "authorize",
            self.stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return self._intent(intent)

    async def retrieve_intent(self, intent_ref: str) -> ProcessorIntent:
        intent = await self._call("retrieve", self.stripe.PaymentIntent.retrieve, intent_ref)
        return self._intent(intent)

    async def transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        transfer = await self._call(
            "transfer",
            self.stripe.Transfer.create,
            amount=amount_cents,
            currency=currency,
            destination=destination,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return transfer.id

    async def refund(
        self,
        *,
        intent_ref: str,
        amount_cents: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str:
        params: dict[str, Any] = {"payment_intent": intent_ref, "amount": amount_cents}
        if reason:
            params["metadata"] = {"reason": reason[:500]}
        refund = await self._call(
            "refund",
            self.stripe.Refund.create,
            idempotency_key=idempotency_key,
            **params,
        )
        return refund.id
