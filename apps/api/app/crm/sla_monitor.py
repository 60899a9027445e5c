from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from app.core.config import get_settings
from app.crm.models import OPPORTUNITY_STATUS_ACTIVE, CRMOpportunity, ensure_utc, utcnow
from app.crm.notifications import SLA_BREACH_NOTIFICATION, DbNotificationSink, NotificationService, NotificationSink
from app.crm.repositories import FunnelRepository
from app.crm.schemas import SlaCheckResult
from app.metrics import observe_sla_check


logger = logging.getLogger("app.crm.sla")
tracer = trace.get_tracer("app.crm.sla")


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def opportunity_link(opportunity_id: uuid.UUID) -> str:
    return f"/pipeline/{opportunity_id}"


def day_window(now: datetime, business_timezone: str) -> tuple[datetime, datetime]:
    """UTC bounds of the business-timezone calendar day containing ``now``."""
    zone = ZoneInfo(business_timezone)
    local_day = ensure_utc(now).astimezone(zone).date()
    start = datetime.combine(local_day, time.min, tzinfo=zone)
    end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


@dataclass
class _Candidate:
    opportunity_id: uuid.UUID
    stage_id: uuid.UUID
    stage_entered_at: datetime
    contact_name: str | None
    owner_user_id: str | None


class SlaBreachMonitor:
    """Periodic scan of active opportunities that stayed in a stage longer than its SLA.

    Each breached opportunity produces at most one notification per business
    day for the contact owner. A failure on one opportunity is rolled back and
    counted; the scan continues with the rest.
    """

    def __init__(
        self,
        notification_sink_factory: Callable[[Session], NotificationSink] = DbNotificationSink,
        clock: Callable[[], datetime] = utcnow,
        business_timezone: str | None = None,
    ) -> None:
        self.notification_sink_factory = notification_sink_factory
        self.clock = clock
        self.business_timezone = business_timezone or get_settings().business_timezone
        self.funnels = FunnelRepository()
        self.notifications = NotificationService()

    def run(self, session: Session, now: datetime | None = None) -> SlaCheckResult:
        moment = ensure_utc(now or self.clock())
        result = SlaCheckResult()

        with tracer.start_as_current_span("crm.sla.check") as span:
            stages = {stage.id: stage for stage in self.funnels.sla_stages(session)}
            result.stages_checked = len(stages)
            span.set_attribute("stages_checked", len(stages))
            if not stages:
                logger.info("sla.no_stages")
                return result

            stage_facts = {
                stage_id: (stage.name, stage.sla_hours, stage.funnel.name if stage.funnel else None)
                for stage_id, stage in stages.items()
            }
            candidates = self._load_candidates(session, list(stages.keys()))
            result.checked = len(candidates)
            day_start, day_end = day_window(moment, self.business_timezone)
            sink = self.notification_sink_factory(session)

            for candidate in candidates:
                facts = stage_facts.get(candidate.stage_id)
                if facts is None:
                    logger.debug("sla.stage_missing", extra={"opportunity_id": str(candidate.opportunity_id)})
                    continue
                stage_name, sla_hours, funnel_name = facts
                if not sla_hours:
                    continue

                hours_in_stage = (moment - candidate.stage_entered_at).total_seconds() / 3600
                if hours_in_stage <= sla_hours:
                    continue
                result.breached += 1

                if not candidate.owner_user_id:
                    logger.info(
                        "sla.owner_missing",
                        extra={"opportunity_id": str(candidate.opportunity_id), "stage_id": str(candidate.stage_id)},
                    )
                    continue

                try:
                    link = opportunity_link(candidate.opportunity_id)
                    if self.notifications.exists_between(
                        session,
                        user_id=candidate.owner_user_id,
                        notification_type=SLA_BREACH_NOTIFICATION,
                        link=link,
                        start=day_start,
                        end=day_end,
                    ):
                        result.already_notified += 1
                        continue

                    contact_name = candidate.contact_name or "Contact"
                    overdue = round_half_up(hours_in_stage - sla_hours)
                    sink.create_notification(
                        candidate.owner_user_id,
                        SLA_BREACH_NOTIFICATION,
                        f"SLA breached: {contact_name}",
                        (
                            f'{contact_name} has been {round_half_up(hours_in_stage)}h in stage "{stage_name}" '
                            f'of funnel "{funnel_name or "Funnel"}" (SLA: {sla_hours}h, exceeded by {overdue}h).'
                        ),
                        link,
                        created_at=moment,
                    )
                    session.commit()
                    result.notified += 1
                    logger.info(
                        "sla.notification_created",
                        extra={
                            "opportunity_id": str(candidate.opportunity_id),
                            "stage_id": str(candidate.stage_id),
                            "user_id": candidate.owner_user_id,
                        },
                    )
                except Exception as exc:
                    session.rollback()
                    result.errors += 1
                    logger.exception(
                        "sla.notification_failed",
                        extra={"opportunity_id": str(candidate.opportunity_id), "error": str(exc)},
                    )

            span.set_attribute("breached", result.breached)
            span.set_attribute("notified", result.notified)

        observe_sla_check("notified", result.notified)
        observe_sla_check("already_notified", result.already_notified)
        observe_sla_check("error", result.errors)
        logger.info(
            "sla.check_finished",
            extra={
                "checked": result.checked,
                "breached": result.breached,
                "notified": result.notified,
                "already_notified": result.already_notified,
                "errors": result.errors,
            },
        )
        return result

    def _load_candidates(self, session: Session, stage_ids: list[uuid.UUID]) -> list[_Candidate]:
        rows = session.scalars(
            select(CRMOpportunity)
            .where(
                and_(
                    CRMOpportunity.status == OPPORTUNITY_STATUS_ACTIVE,
                    CRMOpportunity.current_stage_id.in_(stage_ids),
                )
            )
            .options(selectinload(CRMOpportunity.contact))
            .order_by(CRMOpportunity.stage_entered_at.asc(), CRMOpportunity.id.asc())
        ).all()
        return [
            _Candidate(
                opportunity_id=row.id,
                stage_id=row.current_stage_id,
                stage_entered_at=ensure_utc(row.stage_entered_at),
                contact_name=row.contact.full_name if row.contact else None,
                owner_user_id=row.contact.owner_user_id if row.contact else None,
            )
            for row in rows
            if row.current_stage_id is not None
        ]
