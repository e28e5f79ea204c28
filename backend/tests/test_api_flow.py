import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from taskhub.domain.service_requests.db_models import ServiceRequest
from taskhub.domain.users.db_models import UserRole
from taskhub.infra.metrics import configure_metrics
from taskhub.settings import settings
from taskhub.shared.clock import utcnow
from tests.factories import (
    auth_headers,
    create_client,
    create_open_job,
    create_provider,
    create_user,
)


def _seed_marketplace(async_session_maker):
    async def seed():
        async with async_session_maker() as session:
            client = await create_client(session)
            provider_user, provider = await create_provider(session)
            job = await create_open_job(session, client)
            await session.commit()
            return client, provider_user, provider, job

    return asyncio.run(seed())


def _seed_approved_request(async_session_maker):
    async def seed():
        async with async_session_maker() as session:
            client = await create_client(session)
            provider_user, provider = await create_provider(session)
            approver = await create_user(session, UserRole.PAYMENT_APPROVER)
            job = await create_open_job(session, client)
            job.status = "in_progress"
            request = ServiceRequest(
                job_id=job.job_id,
                provider_id=provider.provider_id,
                client_id=client.user_id,
                status="call_center_approved",
                approved_at=utcnow(),
            )
            session.add(request)
            await session.commit()
            return client, provider_user, approver, request

    return asyncio.run(seed())


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["checks"]["database"]["ok"] is True


def test_requests_require_valid_token(client, async_session_maker):
    client_user, provider_user, _, _ = _seed_marketplace(async_session_maker)

    assert client.get("/v1/jobs").status_code == 401
    bad = client.get("/v1/jobs", headers={"Authorization": "Bearer not-a-token"})
    assert bad.status_code == 401
    wrong_role = client.get("/v1/jobs", headers=auth_headers(client_user.user_id, UserRole.ADMIN))
    assert wrong_role.status_code == 401

    forbidden = client.get(
        "/v1/jobs", headers=auth_headers(provider_user.user_id, UserRole.SERVICE_PROVIDER)
    )
    assert forbidden.status_code == 403


def test_domain_errors_render_problem_details(client, async_session_maker):
    client_user, _, _, _ = _seed_marketplace(async_session_maker)
    headers = auth_headers(client_user.user_id, UserRole.CLIENT)

    missing = client.post("/v1/quotes/does-not-exist/approve-price", headers=headers)

    assert missing.status_code == 404
    assert missing.headers["content-type"].startswith("application/problem+json")
    body = missing.json()
    assert body["title"] == "Not Found"
    assert body["status"] == 404
    assert body["request_id"] == missing.headers["X-Request-ID"]

    invalid = client.post("/v1/jobs", headers=headers, json={"title": "No category"})
    assert invalid.status_code == 422
    assert invalid.json()["errors"]


def test_provider_sees_job_without_location(client, async_session_maker):
    client_user, provider_user, _, job = _seed_marketplace(async_session_maker)

    owner_view = client.get(
        f"/v1/jobs/{job.job_id}", headers=auth_headers(client_user.user_id, UserRole.CLIENT)
    )
    provider_view = client.get(
        f"/v1/jobs/{job.job_id}",
        headers=auth_headers(provider_user.user_id, UserRole.SERVICE_PROVIDER),
    )

    assert owner_view.json()["location"] == "123 Queen St W, Toronto"
    body = provider_view.json()
    assert "location" not in body and "latitude" not in body
    assert body["approximate_distance"] == "~3km away"
    assert body["has_address"] is False


def test_quote_flow_over_http(client, async_session_maker):
    client_user, provider_user, _, job = _seed_marketplace(async_session_maker)
    client_headers = auth_headers(client_user.user_id, UserRole.CLIENT)
    provider_headers = auth_headers(provider_user.user_id, UserRole.SERVICE_PROVIDER)

    created = client.post(
        f"/v1/jobs/{job.job_id}/quotes",
        headers=provider_headers,
        json={"quote_amount_cents": 9000, "message": "I can fix this tomorrow morning."},
    )
    assert created.status_code == 201
    quote_id = created.json()["quote_id"]

    out_of_order = client.post(f"/v1/quotes/{quote_id}/release-details", headers=client_headers)
    assert out_of_order.status_code == 409

    for step in ("approve-price", "approve-task", "release-details"):
        response = client.post(f"/v1/quotes/{quote_id}/{step}", headers=client_headers)
        assert response.status_code == 200, response.text
    assert response.json()["status"] == "customer_details_released"

    inbox = client.get("/v1/notifications", headers=provider_headers).json()
    released = [item for item in inbox["items"] if item["type"] == "customer_details_released"]
    assert released[0]["payload"]["task_details"]["location"] == "123 Queen St W, Toronto"
    assert released[0]["payload"]["client_info"]["phone"] == "416-555-0199"
    price = [item for item in inbox["items"] if item["type"] == "price_approved"]
    assert price[0]["payload"]["has_address"] is False
    assert "client_info" not in price[0]["payload"]

    started = client.post(f"/v1/quotes/{quote_id}/start", headers=provider_headers)
    assert started.status_code == 200
    assert started.json()["work_started_at"] is not None


def test_escrow_flow_over_http(client, async_session_maker, payment_processor):
    client_user, provider_user, approver, request = _seed_approved_request(async_session_maker)
    client_headers = auth_headers(client_user.user_id, UserRole.CLIENT)
    provider_headers = auth_headers(provider_user.user_id, UserRole.SERVICE_PROVIDER)
    approver_headers = auth_headers(approver.user_id, UserRole.PAYMENT_APPROVER)

    intent = client.post(
        "/v1/payments/intents",
        headers=client_headers,
        json={"request_id": request.request_id, "amount_cents": 10000},
    )
    assert intent.status_code == 201
    body = intent.json()
    assert (body["total_amount_cents"], body["payout_amount_cents"]) == (12300, 8500)
    payment_id = body["payment_id"]

    duplicate = client.post(
        "/v1/payments/intents",
        headers=client_headers,
        json={"request_id": request.request_id, "amount_cents": 10000},
    )
    assert duplicate.status_code == 409

    confirmed = client.post(f"/v1/payments/{payment_id}/confirm", headers=client_headers)
    assert confirmed.json()["status"] == "held"

    account = client.put(
        "/v1/providers/me/bank-account",
        headers=provider_headers,
        json={
            "external_account_ref": "acct_123",
            "account_holder_name": "Pat Provider",
            "account_number": "000123456789",
        },
    )
    assert account.json()["masked_account_number"] == "****6789"

    submitted = client.post(
        f"/v1/payments/{payment_id}/submit-work",
        headers=provider_headers,
        json={"photos": [{"photo_url": "https://cdn.example.com/done.jpg"}]},
    )
    assert submitted.json()["status"] == "awaiting_approval"

    pending = client.get("/v1/payments/pending-approvals", headers=approver_headers)
    assert [p["payment_id"] for p in pending.json()] == [payment_id]

    released = client.post(f"/v1/payments/{payment_id}/approve", headers=approver_headers)
    assert released.status_code == 200
    assert released.json()["status"] == "released"
    assert payment_processor.calls_for("transfer")[0]["amount_cents"] == 8500


def test_processor_failure_maps_to_bad_gateway(client, async_session_maker, payment_processor):
    client_user, _, _, request = _seed_approved_request(async_session_maker)
    payment_processor.fail_on.add("authorize")

    response = client.post(
        "/v1/payments/intents",
        headers=auth_headers(client_user.user_id, UserRole.CLIENT),
        json={"request_id": request.request_id, "amount_cents": 10000},
    )

    assert response.status_code == 502
    assert {"field": "processor", "message": "authorize_failed"} in response.json()["errors"]


def test_notification_inbox_over_http(client, async_session_maker, services):
    async def seed():
        async with async_session_maker() as session:
            user = await create_client(session)
            first = await services.dispatcher.notify(
                session, user_id=user.user_id, type="a", title="t", message="m"
            )
            await services.dispatcher.notify(
                session, user_id=user.user_id, type="b", title="t", message="m"
            )
            await session.commit()
            return user, first

    user, first = asyncio.run(seed())
    headers = auth_headers(user.user_id, UserRole.CLIENT)

    inbox = client.get("/v1/notifications", headers=headers).json()
    assert inbox["unread_count"] == 2
    assert len(inbox["items"]) == 2

    read = client.post(f"/v1/notifications/{first.notification_id}/read", headers=headers)
    assert read.json()["is_read"] is True
    assert client.post("/v1/notifications/read-all", headers=headers).json() == {"updated": 1}
    unread = client.get("/v1/notifications?unread_only=true", headers=headers).json()
    assert unread == {"items": [], "unread_count": 0}


def test_websocket_session(client, async_session_maker):
    client_user, _, _, _ = _seed_marketplace(async_session_maker)
    token = auth_headers(client_user.user_id, UserRole.CLIENT)["Authorization"].split(" ", 1)[1]

    with client.websocket_connect(f"/v1/ws?token={token}") as websocket:
        hello = websocket.receive_json()
        assert hello == {
            "type": "connection_established",
            "user_id": client_user.user_id,
            "unread_count": 0,
        }
        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}
        websocket.send_json({"type": "mark_read", "notification_id": "missing"})
        reply = websocket.receive_json()
        assert reply["type"] == "mark_read_response"
        assert reply["success"] is False
        websocket.send_json({"type": "shout"})
        assert websocket.receive_json()["type"] == "error"


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/v1/ws?token=garbage") as websocket:
            websocket.receive_json()
    assert exc_info.value.code == 4001


def test_metrics_endpoint_requires_token_when_configured(client):
    configure_metrics(True)
    settings.metrics_token = "scrape-token"

    assert client.get("/metrics").status_code == 401
    assert client.get("/metrics", headers={"Authorization": "Bearer wrong"}).status_code == 401
    response = client.get("/metrics", headers={"Authorization": "Bearer scrape-token"})
    assert response.status_code == 200
    assert "http_requests_total" in response.text
