from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crm.models import (
    CRMContact,
    CRMFunnel,
    CRMFunnelStage,
    CRMNotification,
    CRMOpportunity,
)
from app.crm.notifications import DbNotificationSink
from app.crm.sla_monitor import SlaBreachMonitor, day_window, round_half_up


ENTERED_AT = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)


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


@pytest.fixture()
def monitor() -> SlaBreachMonitor:
    return SlaBreachMonitor(business_timezone="UTC")


def _stage(session: Session, sla_hours: int | None, name: str = "Meeting", position: int = 1) -> CRMFunnelStage:
    funnel = session.scalar(select(CRMFunnel).where(CRMFunnel.position == 1))
    if funnel is None:
        funnel = CRMFunnel(name="Prospecting", position=1)
        session.add(funnel)
        session.flush()
    stage = CRMFunnelStage(funnel_id=funnel.id, name=name, position=position, sla_hours=sla_hours)
    session.add(stage)
    session.flush()
    return stage


def _opportunity(
    session: Session,
    stage: CRMFunnelStage,
    *,
    owner: str | None = "owner-1",
    name: str = "Ana Souza",
    entered_at: datetime = ENTERED_AT,
    status: str = "active",
) -> CRMOpportunity:
    contact = CRMContact(full_name=name, owner_user_id=owner)
    session.add(contact)
    session.flush()
    opportunity = CRMOpportunity(
        contact_id=contact.id,
        current_funnel_id=stage.funnel_id,
        current_stage_id=stage.id,
        status=status,
        stage_entered_at=entered_at,
        created_by="seller-1",
    )
    session.add(opportunity)
    session.commit()
    return opportunity


def _notifications(session: Session) -> list[CRMNotification]:
    return list(session.scalars(select(CRMNotification).order_by(CRMNotification.created_at.asc())).all())


def test_stages_without_sla_never_notify(db_session: Session, monitor: SlaBreachMonitor) -> None:
    no_sla = _stage(db_session, None, name="Lead", position=1)
    zero_sla = _stage(db_session, 0, name="Meeting", position=2)
    _opportunity(db_session, no_sla, entered_at=ENTERED_AT - timedelta(days=30))
    _opportunity(db_session, zero_sla, entered_at=ENTERED_AT - timedelta(days=30))

    result = monitor.run(db_session, now=ENTERED_AT)

    assert result.stages_checked == 0
    assert result.notified == 0
    assert _notifications(db_session) == []


def test_exact_sla_is_not_a_breach(db_session: Session, monitor: SlaBreachMonitor) -> None:
    stage = _stage(db_session, 24)
    _opportunity(db_session, stage)

    on_limit = monitor.run(db_session, now=ENTERED_AT + timedelta(hours=24))
    assert on_limit.breached == 0
    assert _notifications(db_session) == []

    past_limit = monitor.run(db_session, now=ENTERED_AT + timedelta(hours=24, seconds=1))
    assert past_limit.breached == 1
    assert past_limit.notified == 1


def test_breach_is_notified_once_per_day(db_session: Session, monitor: SlaBreachMonitor) -> None:
    stage = _stage(db_session, 24)
    opportunity = _opportunity(db_session, stage)

    first = monitor.run(db_session, now=datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))
    second = monitor.run(db_session, now=datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))
    third = monitor.run(db_session, now=datetime(2026, 3, 2, 23, 59, tzinfo=timezone.utc))

    assert first.notified == 1
    assert second.notified == 0 and second.already_notified == 1
    assert third.notified == 0
    assert len(_notifications(db_session)) == 1

    next_day = monitor.run(db_session, now=datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc))
    assert next_day.notified == 1

    notifications = _notifications(db_session)
    assert len(notifications) == 2
    assert {item.link for item in notifications} == {f"/pipeline/{opportunity.id}"}
    assert {item.user_id for item in notifications} == {"owner-1"}
    assert {item.type for item in notifications} == {"sla_breach"}


def test_forty_eight_hour_sla_scenario(db_session: Session, monitor: SlaBreachMonitor) -> None:
    stage = _stage(db_session, 48, name="Proposal")
    _opportunity(db_session, stage, name="Bruno Lima")

    at_47 = monitor.run(db_session, now=ENTERED_AT + timedelta(hours=47))
    assert at_47.notified == 0

    at_49 = monitor.run(db_session, now=ENTERED_AT + timedelta(hours=49))
    assert at_49.notified == 1

    at_50 = monitor.run(db_session, now=ENTERED_AT + timedelta(hours=50))
    assert at_50.notified == 0

    notifications = _notifications(db_session)
    assert len(notifications) == 1
    notification = notifications[0]
    assert notification.title == "SLA breached: Bruno Lima"
    assert "49h" in notification.message
    assert 'stage "Proposal"' in notification.message
    assert 'funnel "Prospecting"' in notification.message
    assert "SLA: 48h" in notification.message
    assert "exceeded by 1h" in notification.message
    assert notification.is_read is False


def test_missing_owner_and_terminal_opportunities_are_skipped(db_session: Session, monitor: SlaBreachMonitor) -> None:
    stage = _stage(db_session, 24)
    _opportunity(db_session, stage, owner=None)
    _opportunity(db_session, stage, status="won")

    result = monitor.run(db_session, now=ENTERED_AT + timedelta(days=3))

    assert result.checked == 1
    assert result.breached == 1
    assert result.notified == 0
    assert _notifications(db_session) == []


def test_failure_on_one_opportunity_does_not_stop_the_scan(db_session: Session) -> None:
    stage = _stage(db_session, 24)
    failing = _opportunity(db_session, stage, name="Broken", entered_at=ENTERED_AT - timedelta(hours=1))
    healthy = _opportunity(db_session, stage, name="Healthy")

    class FlakySink(DbNotificationSink):
        def create_notification(self, user_id, notification_type, title, message, link, created_at=None):  # type: ignore[no-untyped-def]
            if link == f"/pipeline/{failing.id}":
                raise RuntimeError("notification store unavailable")
            return super().create_notification(user_id, notification_type, title, message, link, created_at)

    monitor = SlaBreachMonitor(notification_sink_factory=FlakySink, business_timezone="UTC")
    result = monitor.run(db_session, now=ENTERED_AT + timedelta(days=2))

    assert result.breached == 2
    assert result.errors == 1
    assert result.notified == 1
    assert [item.link for item in _notifications(db_session)] == [f"/pipeline/{healthy.id}"]


def test_monitor_only_reads_opportunities(db_session: Session, monitor: SlaBreachMonitor) -> None:
    stage = _stage(db_session, 24)
    opportunity = _opportunity(db_session, stage)

    monitor.run(db_session, now=ENTERED_AT + timedelta(days=2))

    db_session.expire_all()
    stored = db_session.scalar(select(CRMOpportunity).where(CRMOpportunity.id == opportunity.id))
    assert stored is not None
    assert stored.status == "active"
    assert stored.current_stage_id == stage.id
    assert stored.row_version == 1
    assert db_session.scalar(select(func.count()).select_from(CRMNotification)) == 1


def test_day_window_follows_business_timezone() -> None:
    start, end = day_window(datetime(2026, 3, 2, 2, 0, tzinfo=timezone.utc), "America/Sao_Paulo")

    assert start == datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 2, 3, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(("value", "expected"), [(0.4, 0), (0.5, 1), (1.5, 2), (2.49, 2)])
def test_round_half_up(value: float, expected: int) -> None:
    assert round_half_up(value) == expected


def test_unknown_stage_ids_are_ignored(db_session: Session, monitor: SlaBreachMonitor) -> None:
    stage = _stage(db_session, 24)
    _opportunity(db_session, stage)

    orphan = _opportunity(db_session, stage, name="Orphan")
    orphan.current_stage_id = uuid.uuid4()
    db_session.commit()

    result = monitor.run(db_session, now=ENTERED_AT + timedelta(days=2))

    assert result.checked == 1
    assert result.notified == 1
