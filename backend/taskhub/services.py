from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from taskhub.domain.escrow.processor import PaymentProcessor
from taskhub.domain.events import EventBus
from taskhub.domain.matching import service as matching_service
from taskhub.domain.notifications import subscribers as notification_subscribers
from taskhub.domain.notifications.connections import ConnectionRegistry
from taskhub.domain.notifications.service import NotificationDispatcher
from taskhub.domain.service_requests.queue import MediatorQueue, RoundRobinMediatorQueue
from taskhub.infra.metrics import Metrics, configure_metrics
from taskhub.infra.stripe_client import StripePaymentProcessor, build_stripe_circuit
from taskhub.settings import Settings


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    metrics: Metrics
    registry: ConnectionRegistry
    dispatcher: NotificationDispatcher
    bus: EventBus
    queue: MediatorQueue
    payment_processor: PaymentProcessor


def build_app_services(
    app_settings: Settings,
    *,
    metrics: Metrics | None = None,
    payment_processor: PaymentProcessor | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    registry = ConnectionRegistry(metrics_client=metrics_client)
    dispatcher = NotificationDispatcher(registry, metrics_client=metrics_client)
    bus = EventBus()
    matching_service.register(bus, app_settings, metrics_client)
    notification_subscribers.register(bus, dispatcher)
    processor = payment_processor or StripePaymentProcessor(
        secret_key=app_settings.stripe_secret_key,
        circuit=build_stripe_circuit(app_settings),
    )
    return AppServices(
        metrics=metrics_client,
        registry=registry,
        dispatcher=dispatcher,
        bus=bus,
        queue=RoundRobinMediatorQueue(),
        payment_processor=processor,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
