from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.metrics import observe_transition
from app.crm.errors import (
    InvalidTransition,
    MissingLostReason,
    MissingRequiredValue,
    NotFoundError,
    RegistryConflictError,
    StageInUseError,
)
from app.crm.models import (
    OPPORTUNITY_STATUS_ACTIVE,
    OPPORTUNITY_STATUS_LOST,
    OPPORTUNITY_STATUS_WON,
    CRMContact,
    CRMFunnel,
    CRMFunnelStage,
    CRMLostReason,
    CRMOpportunity,
    ensure_utc,
    utcnow,
)
from app.crm.repositories import FunnelRepository, OpportunityHistoryRepository, ordered
from app.crm.schemas import (
    FunnelCreate,
    FunnelRead,
    FunnelStageCreate,
    FunnelStageRead,
    FunnelStageUpdate,
    LostReasonCreate,
    LostReasonRead,
    OpportunityCreate,
    OpportunityHistoryRead,
    OpportunityRead,
    OpportunityTransitionRequest,
)


logger = logging.getLogger("app.crm.pipeline")


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    is_super_admin: bool = False
    correlation_id: str | None = None


def _publish(event_type: str, actor_user: ActorUser, payload: dict[str, Any]) -> None:
    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "occurred_at": utcnow().isoformat(),
            "actor_user_id": actor_user.user_id,
            "version": 1,
            "payload": payload,
        }
    )


class FunnelService:
    entity_type = "crm.funnel"

    def __init__(self) -> None:
        self.repository = FunnelRepository()

    def create_funnel(self, session: Session, actor_user: ActorUser, dto: FunnelCreate) -> FunnelRead:
        taken = session.scalar(select(CRMFunnel.id).where(CRMFunnel.position == dto.position).limit(1))
        if taken is not None:
            raise RegistryConflictError("funnel position already in use", details={"position": dto.position})

        funnel = CRMFunnel(
            name=dto.name.strip(),
            position=dto.position,
            is_active=dto.is_active,
            generates_contract=dto.generates_contract,
            contract_prompt_text=dto.contract_prompt_text,
        )
        session.add(funnel)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(funnel.id),
            action="create",
            before=None,
            after={"name": funnel.name, "position": funnel.position, "is_active": funnel.is_active},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self.get_funnel(session, funnel.id)

    def list_funnels(self, session: Session, include_inactive: bool = False) -> list[FunnelRead]:
        return [self._to_funnel_read(funnel) for funnel in self.repository.list_funnels(session, include_inactive)]

    def get_funnel(self, session: Session, funnel_id: uuid.UUID) -> FunnelRead:
        funnel = self.repository.get_funnel(session, funnel_id)
        if funnel is None:
            raise NotFoundError("funnel not found")
        return self._to_funnel_read(funnel)

    def list_stages(self, session: Session, funnel_id: uuid.UUID) -> list[FunnelStageRead]:
        if self.repository.get_funnel(session, funnel_id) is None:
            raise NotFoundError("funnel not found")
        return [FunnelStageRead.model_validate(stage) for stage in self.repository.list_stages(session, funnel_id)]

    def add_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: uuid.UUID,
        dto: FunnelStageCreate,
    ) -> FunnelStageRead:
        if self.repository.get_funnel(session, funnel_id) is None:
            raise NotFoundError("funnel not found")
        if self.repository.position_taken(session, funnel_id, dto.position):
            raise RegistryConflictError("stage position already in use", details={"position": dto.position})

        stage = CRMFunnelStage(
            funnel_id=funnel_id,
            name=dto.name.strip(),
            position=dto.position,
            sla_hours=dto.sla_hours,
            color=dto.color,
            requires_proposal_value=dto.requires_proposal_value,
        )
        session.add(stage)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"{self.entity_type}.stage",
            entity_id=str(stage.id),
            action="create",
            before=None,
            after={
                "funnel_id": str(stage.funnel_id),
                "name": stage.name,
                "position": stage.position,
                "sla_hours": stage.sla_hours,
            },
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return FunnelStageRead.model_validate(stage)

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: uuid.UUID,
        stage_id: uuid.UUID,
        dto: FunnelStageUpdate,
    ) -> FunnelStageRead:
        stage = self._get_funnel_stage(session, funnel_id, stage_id)
        before = FunnelStageRead.model_validate(stage).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)

        position = changes.get("position")
        if position is not None and self.repository.position_taken(session, funnel_id, position, exclude_stage_id=stage.id):
            raise RegistryConflictError("stage position already in use", details={"position": position})

        for field_name, value in changes.items():
            if field_name == "name" and value is not None:
                value = value.strip()
            if field_name in {"name", "position", "color", "requires_proposal_value"} and value is None:
                continue
            setattr(stage, field_name, value)
        stage.updated_at = utcnow()
        session.add(stage)
        session.flush()

        after = FunnelStageRead.model_validate(stage).model_dump(mode="json")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"{self.entity_type}.stage",
            entity_id=str(stage.id),
            action="update",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return FunnelStageRead.model_validate(stage)

    def delete_stage(self, session: Session, actor_user: ActorUser, funnel_id: uuid.UUID, stage_id: uuid.UUID) -> None:
        stage = self._get_funnel_stage(session, funnel_id, stage_id)
        in_use = session.scalar(
            select(func.count()).select_from(CRMOpportunity).where(CRMOpportunity.current_stage_id == stage.id)
        )
        if int(in_use or 0) > 0:
            raise StageInUseError(
                "stage is referenced by opportunities and cannot be deleted",
                details={"opportunities": int(in_use or 0)},
            )

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"{self.entity_type}.stage",
            entity_id=str(stage.id),
            action="delete",
            before={"funnel_id": str(stage.funnel_id), "name": stage.name, "position": stage.position},
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.delete(stage)
        session.commit()

    def _get_funnel_stage(self, session: Session, funnel_id: uuid.UUID, stage_id: uuid.UUID) -> CRMFunnelStage:
        stage = self.repository.get_stage(session, stage_id)
        if stage is None or stage.funnel_id != funnel_id:
            raise NotFoundError("stage not found")
        return stage

    def _to_funnel_read(self, funnel: CRMFunnel) -> FunnelRead:
        return FunnelRead.model_validate(
            {
                "id": funnel.id,
                "name": funnel.name,
                "position": funnel.position,
                "is_active": funnel.is_active,
                "generates_contract": funnel.generates_contract,
                "contract_prompt_text": funnel.contract_prompt_text,
                "created_at": funnel.created_at,
                "updated_at": funnel.updated_at,
                "stages": [FunnelStageRead.model_validate(stage) for stage in ordered(funnel.stages)],
            }
        )


class LostReasonService:
    def create_reason(self, session: Session, actor_user: ActorUser, dto: LostReasonCreate) -> LostReasonRead:
        reason = CRMLostReason(name=dto.name.strip(), is_active=dto.is_active)
        session.add(reason)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.lost_reason",
            entity_id=str(reason.id),
            action="create",
            before=None,
            after={"name": reason.name, "is_active": reason.is_active},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return LostReasonRead.model_validate(reason)

    def list_reasons(self, session: Session, include_inactive: bool = False) -> list[LostReasonRead]:
        query = select(CRMLostReason)
        if not include_inactive:
            query = query.where(CRMLostReason.is_active.is_(True))
        rows = session.scalars(query.order_by(CRMLostReason.name.asc())).all()
        return [LostReasonRead.model_validate(row) for row in rows]


class OpportunityService:
    """Stage transition service: the only interactive writer of opportunity position and status."""

    entity_type = "crm.opportunity"

    def __init__(self) -> None:
        self.funnels = FunnelRepository()
        self.history = OpportunityHistoryRepository()

    def create_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: OpportunityCreate,
        *,
        now: datetime | None = None,
    ) -> OpportunityRead:
        moment = ensure_utc(now or utcnow())
        contact = session.scalar(select(CRMContact).where(CRMContact.id == dto.contact_id))
        if contact is None:
            raise NotFoundError("contact not found")
        funnel = self.funnels.get_funnel(session, dto.funnel_id)
        if funnel is None:
            raise NotFoundError("funnel not found")
        if not funnel.is_active:
            raise InvalidTransition("funnel is not active")

        if dto.stage_id is not None:
            stage = self.funnels.get_stage(session, dto.stage_id)
            if stage is None:
                raise NotFoundError("stage not found")
            if stage.funnel_id != funnel.id:
                raise InvalidTransition("stage does not belong to funnel")
        else:
            stage = self.funnels.first_stage(session, funnel.id)
            if stage is None:
                raise InvalidTransition("funnel has no stages")

        if stage.requires_proposal_value and dto.proposal_value is None:
            raise MissingRequiredValue("proposal_value", f"stage '{stage.name}' requires a proposal value")

        opportunity = CRMOpportunity(
            contact_id=contact.id,
            current_funnel_id=funnel.id,
            current_stage_id=stage.id,
            status=OPPORTUNITY_STATUS_ACTIVE,
            stage_entered_at=moment,
            proposal_value=dto.proposal_value,
            created_by=actor_user.user_id,
            created_at=moment,
            updated_at=moment,
        )
        session.add(opportunity)
        session.flush()

        self.history.append(
            session,
            opportunity_id=opportunity.id,
            action="created",
            changed_by=actor_user.user_id,
            to_stage_id=stage.id,
            notes=dto.note or "Opportunity created",
            occurred_at=moment,
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="create",
            before=None,
            after={"funnel_id": str(funnel.id), "stage_id": str(stage.id), "contact_id": str(contact.id)},
            correlation_id=actor_user.correlation_id,
        )
        _publish(
            "crm.opportunity.created",
            actor_user,
            {"opportunity_id": str(opportunity.id), "funnel_id": str(funnel.id), "stage_id": str(stage.id)},
        )
        session.commit()
        return self.get_opportunity(session, opportunity.id)

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        return OpportunityRead.model_validate(self._get_opportunity(session, opportunity_id))

    def list_opportunities(
        self,
        session: Session,
        *,
        funnel_id: uuid.UUID | None = None,
        stage_id: uuid.UUID | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[OpportunityRead]:
        query = select(CRMOpportunity)
        if funnel_id is not None:
            query = query.where(CRMOpportunity.current_funnel_id == funnel_id)
        if stage_id is not None:
            query = query.where(CRMOpportunity.current_stage_id == stage_id)
        if status is not None:
            query = query.where(CRMOpportunity.status == status)
        rows = session.scalars(
            query.order_by(CRMOpportunity.stage_entered_at.desc(), CRMOpportunity.id.asc()).limit(limit)
        ).all()
        return [OpportunityRead.model_validate(row) for row in rows]

    def list_history(self, session: Session, opportunity_id: uuid.UUID) -> list[OpportunityHistoryRead]:
        self._get_opportunity(session, opportunity_id)
        return [
            OpportunityHistoryRead.model_validate(entry)
            for entry in self.history.list_for_opportunity(session, opportunity_id)
        ]

    def transition(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityTransitionRequest,
        *,
        now: datetime | None = None,
    ) -> OpportunityRead:
        moment = ensure_utc(now or utcnow())
        opportunity = self._get_opportunity(session, opportunity_id)
        if opportunity.status != OPPORTUNITY_STATUS_ACTIVE:
            raise InvalidTransition(
                f"opportunity is {opportunity.status}; no further transitions are permitted",
                details={"status": opportunity.status},
            )

        if dto.stage_id is not None:
            return self._move_to_stage(session, actor_user, opportunity, dto.stage_id, dto, moment)
        if dto.status == OPPORTUNITY_STATUS_WON:
            return self._mark_won(session, actor_user, opportunity, dto, moment)
        return self._mark_lost(session, actor_user, opportunity, dto, moment)

    def advance_to_next_funnel(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        note: str | None = None,
        *,
        now: datetime | None = None,
    ) -> OpportunityRead:
        moment = ensure_utc(now or utcnow())
        opportunity = self._get_opportunity(session, opportunity_id)
        if opportunity.status != OPPORTUNITY_STATUS_ACTIVE:
            raise InvalidTransition(f"opportunity is {opportunity.status}; no further transitions are permitted")

        target = self.funnels.next_funnel_first_stage(session, opportunity.current_funnel_id)
        if target is None:
            raise InvalidTransition("no next funnel with stages is configured")
        next_funnel, first_stage = target
        if first_stage.requires_proposal_value and opportunity.proposal_value is None:
            raise MissingRequiredValue("proposal_value", f"stage '{first_stage.name}' requires a proposal value")

        from_stage_id = opportunity.current_stage_id
        self._guarded_update(
            session,
            opportunity,
            current_funnel_id=next_funnel.id,
            current_stage_id=first_stage.id,
            stage_entered_at=moment,
        )
        self.history.append(
            session,
            opportunity_id=opportunity.id,
            action="funnel_advance",
            changed_by=actor_user.user_id,
            from_stage_id=from_stage_id,
            to_stage_id=first_stage.id,
            notes=note or f"Advanced to funnel '{next_funnel.name}'",
            occurred_at=moment,
        )
        self._record(
            session,
            actor_user,
            opportunity,
            action="advance_funnel",
            event_type="crm.opportunity.funnel_advanced",
            payload={
                "opportunity_id": str(opportunity.id),
                "funnel_id": str(next_funnel.id),
                "stage_id": str(first_stage.id),
            },
        )
        return self.get_opportunity(session, opportunity.id)

    def transfer_owner(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        new_owner_user_id: str,
        note: str | None = None,
    ) -> OpportunityRead:
        opportunity = self._get_opportunity(session, opportunity_id)
        contact = session.scalar(select(CRMContact).where(CRMContact.id == opportunity.contact_id))
        if contact is None:
            raise NotFoundError("contact not found")

        previous_owner = contact.owner_user_id
        contact.owner_user_id = new_owner_user_id
        session.add(contact)
        session.flush()

        self.history.append(
            session,
            opportunity_id=opportunity.id,
            action="owner_transfer",
            changed_by=actor_user.user_id,
            from_stage_id=opportunity.current_stage_id,
            to_stage_id=opportunity.current_stage_id,
            notes=note or f"Owner transferred from {previous_owner or 'nobody'} to {new_owner_user_id}",
        )
        self._record(
            session,
            actor_user,
            opportunity,
            action="transfer_owner",
            event_type="crm.opportunity.owner_transferred",
            payload={
                "opportunity_id": str(opportunity.id),
                "from_owner_user_id": previous_owner,
                "to_owner_user_id": new_owner_user_id,
            },
        )
        return self.get_opportunity(session, opportunity.id)

    def _move_to_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity: CRMOpportunity,
        stage_id: uuid.UUID,
        dto: OpportunityTransitionRequest,
        moment: datetime,
    ) -> OpportunityRead:
        stage = self.funnels.get_stage(session, stage_id)
        if stage is None:
            raise NotFoundError("stage not found")
        if stage.funnel_id != opportunity.current_funnel_id:
            raise InvalidTransition(
                "stage must belong to the opportunity's current funnel; use advance-funnel to change funnels",
                details={"stage_id": str(stage.id), "funnel_id": str(opportunity.current_funnel_id)},
            )
        if stage.id == opportunity.current_stage_id:
            raise InvalidTransition("opportunity is already in this stage")
        if stage.requires_proposal_value and dto.proposal_value is None:
            raise MissingRequiredValue("proposal_value", f"stage '{stage.name}' requires a proposal value")

        from_stage_id = opportunity.current_stage_id
        values: dict[str, Any] = {"current_stage_id": stage.id, "stage_entered_at": moment}
        if dto.proposal_value is not None:
            values["proposal_value"] = dto.proposal_value
        self._guarded_update(session, opportunity, **values)

        self.history.append(
            session,
            opportunity_id=opportunity.id,
            action="stage_change",
            changed_by=actor_user.user_id,
            from_stage_id=from_stage_id,
            to_stage_id=stage.id,
            notes=dto.note,
            occurred_at=moment,
        )
        self._record(
            session,
            actor_user,
            opportunity,
            action="change_stage",
            event_type="crm.opportunity.stage_changed",
            payload={
                "opportunity_id": str(opportunity.id),
                "from_stage_id": str(from_stage_id) if from_stage_id else None,
                "stage_id": str(stage.id),
            },
        )
        return self.get_opportunity(session, opportunity.id)

    def _mark_won(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity: CRMOpportunity,
        dto: OpportunityTransitionRequest,
        moment: datetime,
    ) -> OpportunityRead:
        from_stage_id = opportunity.current_stage_id
        values: dict[str, Any] = {"status": OPPORTUNITY_STATUS_WON, "converted_at": moment}
        if dto.proposal_value is not None:
            values["proposal_value"] = dto.proposal_value
        self._guarded_update(session, opportunity, **values)

        self.history.append(
            session,
            opportunity_id=opportunity.id,
            action="won",
            changed_by=actor_user.user_id,
            from_stage_id=from_stage_id,
            notes=dto.note or "Opportunity won",
            occurred_at=moment,
        )
        self._record(
            session,
            actor_user,
            opportunity,
            action="won",
            event_type="crm.opportunity.won",
            payload={"opportunity_id": str(opportunity.id), "stage_id": str(from_stage_id) if from_stage_id else None},
        )
        return self.get_opportunity(session, opportunity.id)

    def _mark_lost(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity: CRMOpportunity,
        dto: OpportunityTransitionRequest,
        moment: datetime,
    ) -> OpportunityRead:
        if dto.lost_reason_id is None:
            raise MissingLostReason("lost_reason_id is required to mark an opportunity as lost")
        reason = session.scalar(
            select(CRMLostReason).where(and_(CRMLostReason.id == dto.lost_reason_id, CRMLostReason.is_active.is_(True)))
        )
        if reason is None:
            raise MissingLostReason("lost reason not found or inactive", details={"lost_reason_id": str(dto.lost_reason_id)})

        from_stage_id = opportunity.current_stage_id
        self._guarded_update(
            session,
            opportunity,
            status=OPPORTUNITY_STATUS_LOST,
            lost_at=moment,
            lost_from_stage_id=from_stage_id,
            lost_reason_id=reason.id,
        )
        self.history.append(
            session,
            opportunity_id=opportunity.id,
            action="lost",
            changed_by=actor_user.user_id,
            from_stage_id=from_stage_id,
            notes=dto.note or f"Lost: {reason.name}",
            occurred_at=moment,
        )
        self._record(
            session,
            actor_user,
            opportunity,
            action="lost",
            event_type="crm.opportunity.lost",
            payload={"opportunity_id": str(opportunity.id), "lost_reason_id": str(reason.id)},
        )
        return self.get_opportunity(session, opportunity.id)

    def _guarded_update(self, session: Session, opportunity: CRMOpportunity, **values: Any) -> None:
        result = session.execute(
            update(CRMOpportunity)
            .where(and_(CRMOpportunity.id == opportunity.id, CRMOpportunity.status == OPPORTUNITY_STATUS_ACTIVE))
            .values(updated_at=utcnow(), row_version=CRMOpportunity.row_version + 1, **values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            session.rollback()
            raise InvalidTransition("opportunity is no longer active")

    def _record(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity: CRMOpportunity,
        *,
        action: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action=action,
            before=None,
            after=payload,
            correlation_id=actor_user.correlation_id,
        )
        _publish(event_type, actor_user, payload)
        session.commit()
        observe_transition(action)
        logger.info(
            "opportunity.transition",
            extra={"opportunity_id": str(opportunity.id), "action": action, "user_id": actor_user.user_id},
        )

    def _get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = session.scalar(select(CRMOpportunity).where(CRMOpportunity.id == opportunity_id))
        if opportunity is None:
            raise NotFoundError("opportunity not found")
        return opportunity
