from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.crm.tasks as crm_tasks
from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.core.database import Base
from app.crm.models import CRMContact, CRMFunnel, CRMFunnelStage, CRMJob, CRMNotification, CRMOpportunity, utcnow


@pytest.fixture()
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(crm_tasks, "SessionLocal", factory)
    monkeypatch.setenv("BUSINESS_TIMEZONE", "UTC")
    get_settings.cache_clear()
    yield factory
    get_settings.cache_clear()
    Base.metadata.drop_all(bind=engine)


def _seed(factory: sessionmaker[Session]) -> tuple[str, str]:
    with factory() as session:
        funnel = CRMFunnel(name="Prospecting", position=1)
        session.add(funnel)
        session.flush()
        stage = CRMFunnelStage(funnel_id=funnel.id, name="Meeting", position=1, sla_hours=24)
        contact = CRMContact(full_name="Scheduled Contact", owner_user_id="owner-1")
        session.add_all([stage, contact])
        session.flush()
        session.add(
            CRMOpportunity(
                contact_id=contact.id,
                current_funnel_id=funnel.id,
                current_stage_id=stage.id,
                stage_entered_at=utcnow() - timedelta(hours=30),
                created_by="seller-1",
            )
        )
        session.commit()
        return str(funnel.id), str(stage.id)


def test_sla_check_is_scheduled_hourly() -> None:
    entry = celery_app.conf.beat_schedule["crm-check-sla-breaches"]
    assert entry["task"] == "app.crm.tasks.check_sla_breaches"
    assert entry["schedule"] == 3600.0


def test_pipeline_tasks_are_registered() -> None:
    assert "app.crm.tasks.check_sla_breaches" in celery_app.tasks
    assert "app.crm.tasks.bulk_mark_won" in celery_app.tasks


def test_check_sla_breaches_task_runs_as_scheduler(session_factory: sessionmaker[Session]) -> None:
    _seed(session_factory)

    job = crm_tasks.check_sla_breaches()

    assert job["job_type"] == "SLA_BREACH_CHECK"
    assert job["status"] == "Succeeded"
    assert job["requested_by_user_id"] == crm_tasks.SYSTEM_ACTOR_ID
    assert job["result"]["notified"] == 1

    with session_factory() as session:
        notifications = session.scalars(select(CRMNotification)).all()
        assert [item.user_id for item in notifications] == ["owner-1"]


def test_bulk_mark_won_task_records_requesting_user(session_factory: sessionmaker[Session]) -> None:
    funnel_id, stage_id = _seed(session_factory)

    job = crm_tasks.bulk_mark_won(funnel_id, stage_id, requested_by_user_id="manager-1")

    assert job["job_type"] == "BULK_MARK_WON"
    assert job["status"] == "Succeeded"
    assert job["result"]["processed"] == 1

    with session_factory() as session:
        stored = session.scalar(select(CRMJob).where(CRMJob.job_type == "BULK_MARK_WON"))
        assert stored is not None
        assert stored.requested_by_user_id == "manager-1"


def test_scheduled_sla_check_skips_while_another_is_running(session_factory: sessionmaker[Session]) -> None:
    _seed(session_factory)
    with session_factory() as session:
        running = CRMJob(
            job_type="SLA_BREACH_CHECK",
            status="Running",
            requested_by_user_id="manager-1",
            started_at=utcnow() - timedelta(minutes=1),
        )
        session.add(running)
        session.commit()
        running_id = str(running.id)

    result = crm_tasks.check_sla_breaches()

    assert result == {"status": "Skipped", "job_id": running_id}
    with session_factory() as session:
        assert session.scalars(select(CRMNotification)).all() == []
