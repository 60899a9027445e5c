from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.bulk_conversion import BulkConversionProcessor
from app.crm.jobs import PipelineJobRunner
from app.crm.models import CRMContact, CRMFunnel, CRMFunnelStage, CRMJob, CRMOpportunity, utcnow
from app.crm.service import ActorUser
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
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="owner-1",
            permissions={"crm.jobs.run", "crm.opportunities.read"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def stage(db_session: Session) -> CRMFunnelStage:
    funnel = CRMFunnel(name="Prospecting", position=1)
    db_session.add(funnel)
    db_session.flush()
    stage = CRMFunnelStage(funnel_id=funnel.id, name="Proposal", position=1, sla_hours=24)
    db_session.add(stage)
    db_session.commit()
    return stage


def _opportunity(db_session: Session, stage: CRMFunnelStage, hours_in_stage: int = 1) -> CRMOpportunity:
    contact = CRMContact(full_name="Ana Souza", owner_user_id="owner-1")
    db_session.add(contact)
    db_session.flush()
    opportunity = CRMOpportunity(
        contact_id=contact.id,
        current_funnel_id=stage.funnel_id,
        current_stage_id=stage.id,
        stage_entered_at=utcnow() - timedelta(hours=hours_in_stage),
        proposal_value=Decimal("1500"),
        created_by="seller-1",
    )
    db_session.add(opportunity)
    db_session.commit()
    return opportunity


def test_bulk_mark_won_requires_ids(client: TestClient, db_session: Session) -> None:
    response = client.post("/api/crm/jobs/bulk-mark-won", json={"funnel_id": str(uuid.uuid4())})

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "funnel_id and stage_id required"}
    assert db_session.scalar(select(CRMJob)) is None

    not_a_uuid = client.post("/api/crm/jobs/bulk-mark-won", json={"funnel_id": "abc", "stage_id": "def"})
    assert not_a_uuid.status_code == 400


def test_bulk_mark_won_returns_summary_and_records_job(
    client: TestClient,
    db_session: Session,
    stage: CRMFunnelStage,
) -> None:
    first = _opportunity(db_session, stage)
    second = _opportunity(db_session, stage)

    response = client.post(
        "/api/crm/jobs/bulk-mark-won",
        json={"funnel_id": str(stage.funnel_id), "stage_id": str(stage.id)},
        headers={"X-Correlation-Id": "corr-bulk-1"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["total"] == 2
    assert body["processed"] == 2
    assert body["errors"] == 0
    assert {item["id"] for item in body["results"]} == {str(first.id), str(second.id)}
    assert all(item["status"] == "ok" and item["value"] == 1500.0 for item in body["results"])

    job = client.get(f"/api/crm/jobs/{body['job_id']}")
    assert job.status_code == 200
    job_body = job.json()
    assert job_body["job_type"] == "BULK_MARK_WON"
    assert job_body["status"] == "Succeeded"
    assert job_body["correlation_id"] == "corr-bulk-1"
    assert job_body["params"] == {"funnel_id": str(stage.funnel_id), "stage_id": str(stage.id)}
    assert job_body["result"]["processed"] == 2

    job_audits = audit.entries_for("crm.job", body["job_id"])
    assert job_audits and job_audits[-1]["after"] == {"status": "Succeeded"}


def test_bulk_mark_won_infrastructure_failure_returns_500(
    client: TestClient,
    db_session: Session,
    stage: CRMFunnelStage,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _opportunity(db_session, stage)

    def broken(self, session, funnel_id, stage_id):  # type: ignore[no-untyped-def]
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(BulkConversionProcessor, "mark_won", broken)

    response = client.post(
        "/api/crm/jobs/bulk-mark-won",
        json={"funnel_id": str(stage.funnel_id), "stage_id": str(stage.id)},
    )
    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "database unavailable"

    job = db_session.scalar(select(CRMJob).where(CRMJob.id == uuid.UUID(body["job_id"])))
    assert job is not None
    assert job.status == "Failed"


def test_check_sla_breaches_endpoint_notifies_owner(
    client: TestClient,
    stage: CRMFunnelStage,
    db_session: Session,
) -> None:
    late = _opportunity(db_session, stage, hours_in_stage=30)
    _opportunity(db_session, stage, hours_in_stage=2)

    response = client.post("/api/crm/jobs/check-sla-breaches", json={})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["checked"] == 2
    assert body["breached"] == 1
    assert body["notified"] == 1

    repeat = client.post("/api/crm/jobs/check-sla-breaches", json={})
    assert repeat.json()["notified"] == 0
    assert repeat.json()["already_notified"] == 1

    notifications = client.get("/api/crm/notifications", params={"unread_only": True})
    assert notifications.status_code == 200
    items = notifications.json()
    assert len(items) == 1
    assert items[0]["link"] == f"/pipeline/{late.id}"
    assert items[0]["type"] == "sla_breach"

    marked = client.post(f"/api/crm/notifications/{items[0]['id']}/read")
    assert marked.status_code == 200
    assert marked.json()["is_read"] is True
    assert client.get("/api/crm/notifications", params={"unread_only": True}).json() == []


def test_jobs_require_permission(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: ActorUser(user_id="viewer-1", permissions=set())
    try:
        with TestClient(app) as test_client:
            response = test_client.post("/api/crm/jobs/check-sla-breaches", json={})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.jobs.run"


def test_unknown_job_is_not_found(client: TestClient) -> None:
    response = client.get(f"/api/crm/jobs/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_job_endpoints_return_json_when_store_is_unreachable() -> None:
    unreachable = create_engine("sqlite:////nonexistent_dir/pipeline/db.sqlite")
    UnreachableSession = sessionmaker(bind=unreachable, autocommit=False, autoflush=False)

    def override_get_db() -> Generator[Session, None, None]:
        session = UnreachableSession()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: ActorUser(user_id="owner-1", permissions={"crm.jobs.run"})
    try:
        with TestClient(app) as test_client:
            sla = test_client.post("/api/crm/jobs/check-sla-breaches", json={})
            bulk = test_client.post(
                "/api/crm/jobs/bulk-mark-won",
                json={"funnel_id": str(uuid.uuid4()), "stage_id": str(uuid.uuid4())},
            )
    finally:
        app.dependency_overrides.clear()

    for response in (sla, bulk):
        assert response.status_code == 500
        assert response.headers["content-type"].startswith("application/json")
        body = response.json()
        assert body["success"] is False
        assert body["error"]


def test_runner_keeps_original_error_when_failure_cannot_be_recorded(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    runner = PipelineJobRunner()
    actor = ActorUser(user_id="owner-1", permissions={"crm.jobs.run"})
    job = runner.create_job(db_session, actor, "BULK_MARK_WON", {})

    def broken_work(session, _actor, _params):  # type: ignore[no-untyped-def]
        def dead_commit() -> None:
            raise OperationalError("COMMIT", {}, Exception("server closed the connection"))

        monkeypatch.setattr(session, "commit", dead_commit)
        raise RuntimeError("contract store timed out")

    with pytest.raises(RuntimeError, match="contract store timed out"):
        runner.run(db_session, actor, job.id, broken_work)


def test_sla_check_is_refused_while_another_is_running(client: TestClient, db_session: Session) -> None:
    running = CRMJob(
        job_type="SLA_BREACH_CHECK",
        status="Running",
        requested_by_user_id="system:scheduler",
        started_at=utcnow() - timedelta(minutes=5),
    )
    db_session.add(running)
    db_session.commit()

    response = client.post("/api/crm/jobs/check-sla-breaches", json={})
    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["job_id"] == str(running.id)
    assert db_session.scalar(select(func.count()).select_from(CRMJob)) == 1

    running.started_at = utcnow() - timedelta(hours=2)
    db_session.commit()

    stale = client.post("/api/crm/jobs/check-sla-breaches", json={})
    assert stale.status_code == 200
    assert stale.json()["success"] is True
