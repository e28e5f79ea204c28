import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from taskhub.domain.escrow.processor import ProcessorIntent  # noqa: E402
from taskhub.domain.errors import PaymentProcessorError  # noqa: E402
from taskhub.infra.db import Base, TaskhubSession, get_db_session  # noqa: E402
from taskhub.infra.metrics import Metrics  # noqa: E402
from taskhub.main import app  # noqa: E402
from taskhub.services import build_app_services  # noqa: E402
from taskhub.settings import settings  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    # One shared connection so every session sees the same SQLite file state.
    database = tmp_path_factory.mktemp("db") / "taskhub.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{database}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def create_schema() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_schema())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=TaskhubSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    saved = {
        name: getattr(settings, name)
        for name in ("testing", "app_env", "metrics_token", "work_commencement_window_hours")
    }
    settings.testing = True
    settings.app_env = "dev"
    yield
    for name, value in saved.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def wipe() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(wipe())
    yield


class FakePaymentProcessor:
    """Records processor calls; outcomes are steered through attributes."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.intent_status = "succeeded"
        self.fail_on: set[str] = set()
        self._counter = 0

    def _next_ref(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise PaymentProcessorError(
                detail="Card was declined", processor_code=f"{operation}_failed"
            )

    async def authorize(self, *, amount_cents, currency, idempotency_key, metadata):
        self.calls.append(
            (
                "authorize",
                {
                    "amount_cents": amount_cents,
                    "currency": currency,
                    "idempotency_key": idempotency_key,
                    "metadata": metadata,
                },
            )
        )
        self._maybe_fail("authorize")
        return ProcessorIntent(
            ref=self._next_ref("pi"),
            status="requires_confirmation",
            client_secret="pi_secret",
            metadata=metadata,
        )

    async def retrieve_intent(self, intent_ref):
        self.calls.append(("retrieve", {"intent_ref": intent_ref}))
        self._maybe_fail("retrieve")
        return ProcessorIntent(ref=intent_ref, status=self.intent_status)

    async def transfer(self, *, amount_cents, currency, destination, idempotency_key, metadata):
        self.calls.append(
            (
                "transfer",
                {
                    "amount_cents": amount_cents,
                    "destination": destination,
                    "idempotency_key": idempotency_key,
                },
            )
        )
        self._maybe_fail("transfer")
        return self._next_ref("tr")

    async def refund(self, *, intent_ref, amount_cents, idempotency_key, reason=None):
        self.calls.append(
            (
                "refund",
                {
                    "intent_ref": intent_ref,
                    "amount_cents": amount_cents,
                    "idempotency_key": idempotency_key,
                },
            )
        )
        self._maybe_fail("refund")
        return self._next_ref("re")

    def calls_for(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]


@pytest.fixture()
def payment_processor():
    return FakePaymentProcessor()


@pytest.fixture()
def services(payment_processor):
    return build_app_services(
        settings, metrics=Metrics(enabled=False), payment_processor=payment_processor
    )


@pytest.fixture()
def client(async_session_maker, services):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_services = getattr(app.state, "services", None)
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.services = services
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.services = original_services
    app.state.db_session_factory = original_factory
