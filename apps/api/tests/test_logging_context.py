from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMContact, CRMFunnel, CRMFunnelStage, CRMJob, CRMOpportunity, utcnow
from app.crm.service import ActorUser
from app.logging import JsonLogFormatter
from app.main import app


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("BUSINESS_TIMEZONE", "UTC")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions={"crm.opportunities.read", "crm.jobs.run"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_breached_opportunity(db_session: Session) -> CRMOpportunity:
    funnel = CRMFunnel(name="Prospecting", position=1)
    db_session.add(funnel)
    db_session.flush()
    stage = CRMFunnelStage(funnel_id=funnel.id, name="Meeting", position=1, sla_hours=24)
    contact = CRMContact(full_name="Log Contact", owner_user_id="owner-1")
    db_session.add_all([stage, contact])
    db_session.flush()
    opportunity = CRMOpportunity(
        contact_id=contact.id,
        current_funnel_id=funnel.id,
        current_stage_id=stage.id,
        stage_entered_at=utcnow() - timedelta(hours=30),
        created_by="seller-1",
    )
    db_session.add(opportunity)
    db_session.commit()
    return opportunity


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/crm/opportunities/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/opportunities/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_job_context_and_correlation_id(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    opportunity = _seed_breached_opportunity(db_session)

    response = client.post("/api/crm/jobs/check-sla-breaches", json={}, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 200

    job = db_session.scalar(
        select(CRMJob).where(CRMJob.job_type == "SLA_BREACH_CHECK").order_by(CRMJob.created_at.desc())
    )
    assert job is not None

    job_records = [record for record in caplog.records if record.name == "app.crm.jobs"]
    assert {record.getMessage() for record in job_records} == {"job.started", "job.finished"}
    assert all(
        getattr(record, "job_id", None) == str(job.id)
        and getattr(record, "job_type", None) == "SLA_BREACH_CHECK"
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in job_records
    )

    sla_records = [record for record in caplog.records if record.getMessage() == "sla.notification_created"]
    assert len(sla_records) == 1
    assert getattr(sla_records[0], "opportunity_id", None) == str(opportunity.id)
    assert getattr(sla_records[0], "correlation_id", None) == "abc-123"


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.crm.bulk",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "bulk.mark_won_finished",
            "total": 5,
            "processed": 4,
            "errors": 1,
            "secret": "hidden",
            "correlation_id": "fmt-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["msg"] == "bulk.mark_won_finished"
    assert payload["logger"] == "app.crm.bulk"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"total": 5, "processed": 4, "errors": 1}
