from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


OpportunityStatus = Literal["active", "won", "lost"]
BulkItemStatus = Literal["ok", "error", "skipped"]


class FunnelCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=1)
    is_active: bool = True
    generates_contract: bool = False
    contract_prompt_text: str | None = None


class FunnelStageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=1)
    sla_hours: int | None = Field(default=None, ge=0)
    color: str = "#6366f1"
    requires_proposal_value: bool = False


class FunnelStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    position: int | None = Field(default=None, ge=1)
    sla_hours: int | None = Field(default=None, ge=0)
    color: str | None = None
    requires_proposal_value: bool | None = None


class FunnelStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    funnel_id: UUID
    name: str
    position: int
    sla_hours: int | None
    color: str
    requires_proposal_value: bool
    created_at: datetime
    updated_at: datetime


class FunnelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    position: int
    is_active: bool
    generates_contract: bool
    contract_prompt_text: str | None
    created_at: datetime
    updated_at: datetime
    stages: list[FunnelStageRead] = Field(default_factory=list)


class LostReasonCreate(BaseModel):
    name: str = Field(min_length=1)
    is_active: bool = True


class LostReasonRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    is_active: bool


class OpportunityCreate(BaseModel):
    contact_id: UUID
    funnel_id: UUID
    stage_id: UUID | None = None
    proposal_value: Decimal | None = Field(default=None, ge=0)
    note: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    current_funnel_id: UUID
    current_stage_id: UUID | None
    status: OpportunityStatus
    stage_entered_at: datetime
    proposal_value: Decimal | None
    converted_at: datetime | None
    lost_at: datetime | None
    lost_from_stage_id: UUID | None
    lost_reason_id: UUID | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    row_version: int


class OpportunityTransitionRequest(BaseModel):
    stage_id: UUID | None = None
    status: Literal["won", "lost"] | None = None
    lost_reason_id: UUID | None = None
    proposal_value: Decimal | None = Field(default=None, ge=0)
    note: str | None = None

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "OpportunityTransitionRequest":
        if (self.stage_id is None) == (self.status is None):
            raise ValueError("exactly one of stage_id or status must be provided")
        return self


class OpportunityAdvanceFunnelRequest(BaseModel):
    note: str | None = None


class OpportunityTransferOwnerRequest(BaseModel):
    new_owner_user_id: str = Field(min_length=1)
    note: str | None = None


class OpportunityHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    opportunity_id: UUID
    action: str
    from_stage_id: UUID | None
    to_stage_id: UUID | None
    changed_by: str
    notes: str | None
    created_at: datetime


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    type: str
    title: str
    message: str
    link: str | None
    is_read: bool
    created_at: datetime


class BulkMarkWonRequest(BaseModel):
    funnel_id: UUID | None = None
    stage_id: UUID | None = None


class BulkMarkWonItem(BaseModel):
    id: UUID
    contact_id: UUID
    value: float | None
    status: BulkItemStatus
    error: str | None = None


class BulkMarkWonResult(BaseModel):
    total: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    results: list[BulkMarkWonItem] = Field(default_factory=list)


class SlaCheckResult(BaseModel):
    stages_checked: int = 0
    checked: int = 0
    breached: int = 0
    notified: int = 0
    already_notified: int = 0
    errors: int = 0


class JobRead(BaseModel):
    id: UUID
    job_type: str
    status: str
    requested_by_user_id: str
    correlation_id: str | None
    params: dict[str, Any]
    result: dict[str, Any] | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
