from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import voucher_ledger.models  # noqa: F401
from voucher_ledger import events
from voucher_ledger.audit.models import AuditEntry
from voucher_ledger.core.auth import AuthUser, get_current_user
from voucher_ledger.core.config import get_settings
from voucher_ledger.core.database import Base, get_db
from voucher_ledger.core.events import InternalEvent, event_bus
from voucher_ledger.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_state(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("AUDIT_DISPATCH", "sync")
    get_settings.cache_clear()
    app.state.rate_limiter.clear()
    yield
    app.state.rate_limiter.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_voucher(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/vouchers",
        json={
            "doc_date": "2024-04-10",
            "description": "Corr voucher",
            "lines": [{"debit_acc": "1111", "credit_acc": "511", "amount": 250}],
        },
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/vouchers/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/vouchers/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_unsafe_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "bad id with spaces"})

    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") != "bad id with spaces"
    uuid.UUID(response.headers["x-correlation-id"])


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    voucher = _create_voucher(client, "corr-audit-1")

    entry = db_session.scalars(
        select(AuditEntry).where(AuditEntry.entity_id == voucher["id"], AuditEntry.action == "CREATE")
    ).one()
    assert entry.correlation_id == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    received: list[InternalEvent] = []

    def handler(event: InternalEvent) -> None:
        received.append(event)

    event_bus.subscribe(events.VOUCHER_POSTED, handler)
    try:
        voucher = _create_voucher(client, "corr-event-0")
        response = client.post(f"/vouchers/{voucher['id']}/post", headers={"X-Correlation-Id": "corr-event-1"})
        assert response.status_code == 200
    finally:
        event_bus.unsubscribe(events.VOUCHER_POSTED, handler)

    assert received
    assert received[-1].payload["event_type"] == "voucher.posted"
    assert received[-1].payload["correlation_id"] == "corr-event-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    app.state.rate_limiter.clear()

    _create_voucher(client, "corr-rate-1")

    second = client.post(
        "/vouchers",
        json={
            "doc_date": "2024-04-10",
            "lines": [{"debit_acc": "1111", "credit_acc": "511", "amount": 1}],
        },
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
