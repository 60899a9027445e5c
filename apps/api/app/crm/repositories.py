from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from app.crm.models import CRMFunnel, CRMFunnelStage, CRMOpportunityHistory, ensure_utc, utcnow


def ordered(items: Iterable[CRMFunnel | CRMFunnelStage]) -> list:
    """Sort funnels or stages by position; the id breaks ties so the order is total."""
    return sorted(items, key=lambda item: (item.position, str(item.id)))


class FunnelRepository:
    def get_funnel(self, session: Session, funnel_id: uuid.UUID) -> CRMFunnel | None:
        return session.scalar(
            select(CRMFunnel).where(CRMFunnel.id == funnel_id).options(selectinload(CRMFunnel.stages))
        )

    def list_funnels(self, session: Session, include_inactive: bool = False) -> list[CRMFunnel]:
        query = select(CRMFunnel).options(selectinload(CRMFunnel.stages))
        if not include_inactive:
            query = query.where(CRMFunnel.is_active.is_(True))
        return ordered(session.scalars(query).all())

    def get_stage(self, session: Session, stage_id: uuid.UUID) -> CRMFunnelStage | None:
        return session.scalar(select(CRMFunnelStage).where(CRMFunnelStage.id == stage_id))

    def list_stages(self, session: Session, funnel_id: uuid.UUID) -> list[CRMFunnelStage]:
        return ordered(session.scalars(select(CRMFunnelStage).where(CRMFunnelStage.funnel_id == funnel_id)).all())

    def first_stage(self, session: Session, funnel_id: uuid.UUID) -> CRMFunnelStage | None:
        stages = self.list_stages(session, funnel_id)
        return stages[0] if stages else None

    def next_funnel(self, session: Session, funnel_id: uuid.UUID) -> CRMFunnel | None:
        current = session.scalar(select(CRMFunnel).where(CRMFunnel.id == funnel_id))
        if current is None:
            return None
        candidates = session.scalars(
            select(CRMFunnel).where(and_(CRMFunnel.is_active.is_(True), CRMFunnel.position > current.position))
        ).all()
        following = ordered(candidates)
        return following[0] if following else None

    def next_funnel_first_stage(
        self,
        session: Session,
        funnel_id: uuid.UUID,
    ) -> tuple[CRMFunnel, CRMFunnelStage] | None:
        funnel = self.next_funnel(session, funnel_id)
        if funnel is None:
            return None
        stage = self.first_stage(session, funnel.id)
        if stage is None:
            return None
        return funnel, stage

    def position_taken(
        self,
        session: Session,
        funnel_id: uuid.UUID,
        position: int,
        exclude_stage_id: uuid.UUID | None = None,
    ) -> bool:
        query = select(CRMFunnelStage.id).where(
            and_(CRMFunnelStage.funnel_id == funnel_id, CRMFunnelStage.position == position)
        )
        if exclude_stage_id is not None:
            query = query.where(CRMFunnelStage.id != exclude_stage_id)
        return session.scalar(query.limit(1)) is not None

    def sla_stages(self, session: Session) -> list[CRMFunnelStage]:
        return list(
            session.scalars(
                select(CRMFunnelStage)
                .where(and_(CRMFunnelStage.sla_hours.is_not(None), CRMFunnelStage.sla_hours > 0))
                .options(selectinload(CRMFunnelStage.funnel))
            ).all()
        )


class OpportunityHistoryRepository:
    """Append-only ledger of opportunity transitions."""

    def append(
        self,
        session: Session,
        *,
        opportunity_id: uuid.UUID,
        action: str,
        changed_by: str,
        from_stage_id: uuid.UUID | None = None,
        to_stage_id: uuid.UUID | None = None,
        notes: str | None = None,
        occurred_at: datetime | None = None,
    ) -> CRMOpportunityHistory:
        created_at = ensure_utc(occurred_at or utcnow())
        latest = self.latest_timestamp(session, opportunity_id)
        if latest is not None and created_at <= latest:
            created_at = latest + timedelta(microseconds=1)

        entry = CRMOpportunityHistory(
            opportunity_id=opportunity_id,
            action=action,
            from_stage_id=from_stage_id,
            to_stage_id=to_stage_id,
            changed_by=changed_by,
            notes=notes,
            created_at=created_at,
        )
        session.add(entry)
        session.flush()
        return entry

    def latest_timestamp(self, session: Session, opportunity_id: uuid.UUID) -> datetime | None:
        value = session.scalar(
            select(CRMOpportunityHistory.created_at)
            .where(CRMOpportunityHistory.opportunity_id == opportunity_id)
            .order_by(CRMOpportunityHistory.created_at.desc())
            .limit(1)
        )
        return ensure_utc(value) if value is not None else None

    def list_for_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> list[CRMOpportunityHistory]:
        return list(
            session.scalars(
                select(CRMOpportunityHistory)
                .where(CRMOpportunityHistory.opportunity_id == opportunity_id)
                .order_by(CRMOpportunityHistory.created_at.asc(), CRMOpportunityHistory.id.asc())
            ).all()
        )
