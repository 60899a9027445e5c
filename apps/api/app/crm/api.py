from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.errors import JobAlreadyRunningError, PipelineError
from app.crm.jobs import PipelineJobRunner, run_bulk_mark_won, run_sla_breach_check
from app.crm.notifications import NotificationService
from app.crm.schemas import (
    FunnelCreate,
    FunnelRead,
    FunnelStageCreate,
    FunnelStageRead,
    FunnelStageUpdate,
    JobRead,
    LostReasonCreate,
    LostReasonRead,
    NotificationRead,
    OpportunityAdvanceFunnelRequest,
    OpportunityCreate,
    OpportunityHistoryRead,
    OpportunityRead,
    OpportunityStatus,
    OpportunityTransferOwnerRequest,
    OpportunityTransitionRequest,
)
from app.crm.service import ActorUser, FunnelService, LostReasonService, OpportunityService


logger = logging.getLogger("app.crm.api")

funnels_router = APIRouter(prefix="/api/crm", tags=["crm.funnels"])
lost_reasons_router = APIRouter(prefix="/api/crm", tags=["crm.lost_reasons"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
notifications_router = APIRouter(prefix="/api/crm", tags=["crm.notifications"])
jobs_router = APIRouter(prefix="/api/crm", tags=["crm.jobs"])
funnel_service = FunnelService()
lost_reason_service = LostReasonService()
opportunity_service = OpportunityService()
notification_service = NotificationService()
job_runner = PipelineJobRunner()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _handle(request: Request, exc: Exception, fallback_code: str) -> JSONResponse:
    if isinstance(exc, PipelineError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=fallback_code,
            message=str(exc.detail),
            details=exc.detail,
        )
    raise exc


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    is_super_admin = "admin" in normalized_roles or "system.admin" in normalized_roles
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        is_super_admin=is_super_admin,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if user.is_super_admin:
        return
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@funnels_router.post("/funnels", response_model=FunnelRead, status_code=status.HTTP_201_CREATED)
def create_funnel(
    request: Request,
    dto: FunnelCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "crm.pipeline.manage")
        return funnel_service.create_funnel(db, user, dto)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_funnel_create_failed")


@funnels_router.get("/funnels", response_model=list[FunnelRead])
def list_funnels(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return funnel_service.list_funnels(db, include_inactive=include_inactive)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_funnel_list_failed")


@funnels_router.get("/funnels/{funnel_id}", response_model=FunnelRead)
def get_funnel(
    request: Request,
    funnel_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return funnel_service.get_funnel(db, funnel_id)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_funnel_get_failed")


@funnels_router.post(
    "/funnels/{funnel_id}/stages",
    response_model=FunnelStageRead,
    status_code=status.HTTP_201_CREATED,
)
def create_stage(
    request: Request,
    funnel_id: uuid.UUID,
    dto: FunnelStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipeline.manage")
        return funnel_service.add_stage(db, user, funnel_id, dto)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_stage_create_failed")


@funnels_router.get("/funnels/{funnel_id}/stages", response_model=list[FunnelStageRead])
def list_stages(
    request: Request,
    funnel_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return funnel_service.list_stages(db, funnel_id)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_stage_list_failed")


@funnels_router.patch("/funnels/{funnel_id}/stages/{stage_id}", response_model=FunnelStageRead)
def update_stage(
    request: Request,
    funnel_id: uuid.UUID,
    stage_id: uuid.UUID,
    dto: FunnelStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipeline.manage")
        return funnel_service.update_stage(db, user, funnel_id, stage_id, dto)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_stage_update_failed")


@funnels_router.delete("/funnels/{funnel_id}/stages/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_stage(
    request: Request,
    funnel_id: uuid.UUID,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.pipeline.manage")
        funnel_service.delete_stage(db, user, funnel_id, stage_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_stage_delete_failed")


@lost_reasons_router.post("/lost-reasons", response_model=LostReasonRead, status_code=status.HTTP_201_CREATED)
def create_lost_reason(
    request: Request,
    dto: LostReasonCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LostReasonRead | JSONResponse:
    try:
        require_permission(user, "crm.pipeline.manage")
        return lost_reason_service.create_reason(db, user, dto)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_lost_reason_create_failed")


@lost_reasons_router.get("/lost-reasons", response_model=list[LostReasonRead])
def list_lost_reasons(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LostReasonRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return lost_reason_service.list_reasons(db, include_inactive=include_inactive)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_lost_reason_list_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.create")
        return opportunity_service.create_opportunity(db, user, dto)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    funnel_id: uuid.UUID | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    status_filter: OpportunityStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_opportunities(
            db,
            funnel_id=funnel_id,
            stage_id=stage_id,
            status=status_filter,
            limit=limit,
        )
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_opportunity_list_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(db, opportunity_id)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_opportunity_get_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/history", response_model=list[OpportunityHistoryRead])
def list_opportunity_history(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityHistoryRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_history(db, opportunity_id)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_opportunity_history_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/transition", response_model=OpportunityRead)
def transition_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityTransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.transition")
        return opportunity_service.transition(db, user, opportunity_id, dto)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_opportunity_transition_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/advance-funnel", response_model=OpportunityRead)
def advance_opportunity_funnel(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityAdvanceFunnelRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.transition")
        note = dto.note if dto is not None else None
        return opportunity_service.advance_to_next_funnel(db, user, opportunity_id, note)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_opportunity_advance_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/transfer-owner", response_model=OpportunityRead)
def transfer_opportunity_owner(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityTransferOwnerRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.transition")
        return opportunity_service.transfer_owner(db, user, opportunity_id, dto.new_owner_user_id, dto.note)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_opportunity_transfer_failed")


@notifications_router.get("/notifications", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    rows = notification_service.list_for_user(db, user.user_id, unread_only=unread_only)
    return [NotificationRead.model_validate(row) for row in rows]


@notifications_router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    try:
        notification = notification_service.mark_read(db, user.user_id, notification_id)
        return NotificationRead.model_validate(notification)
    except PipelineError as exc:
        return _handle(request, exc, "crm_notification_read_failed")


def _parse_id(payload: dict[str, Any], key: str) -> uuid.UUID | None:
    raw = payload.get(key)
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


def _infrastructure_failure(exc: SQLAlchemyError, job_type: str) -> JSONResponse:
    logger.exception("job.infrastructure_failed", extra={"job_type": job_type, "error": str(exc)})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": str(exc)},
    )


@jobs_router.post("/jobs/check-sla-breaches")
def check_sla_breaches(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> JSONResponse:
    try:
        require_permission(user, "crm.jobs.run")
    except HTTPException as exc:
        return _handle(request, exc, "crm_job_forbidden")

    try:
        job = run_sla_breach_check(db, user, runner=job_runner)
    except JobAlreadyRunningError as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, "job_id": exc.details["job_id"]},
        )
    except SQLAlchemyError as exc:
        return _infrastructure_failure(exc, "SLA_BREACH_CHECK")
    if job.status != "Succeeded":
        error = (job.result or {}).get("error", "SLA breach check failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": error, "job_id": str(job.id)},
        )
    return JSONResponse(content={"success": True, **(job.result or {}), "job_id": str(job.id)})


@jobs_router.post("/jobs/bulk-mark-won")
def bulk_mark_won(
    request: Request,
    payload: dict[str, Any] = Body(default_factory=dict),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> JSONResponse:
    try:
        require_permission(user, "crm.jobs.run")
    except HTTPException as exc:
        return _handle(request, exc, "crm_job_forbidden")

    funnel_id = _parse_id(payload, "funnel_id")
    stage_id = _parse_id(payload, "stage_id")
    if funnel_id is None or stage_id is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "funnel_id and stage_id required"},
        )

    try:
        job = run_bulk_mark_won(db, user, funnel_id, stage_id, runner=job_runner)
    except SQLAlchemyError as exc:
        return _infrastructure_failure(exc, "BULK_MARK_WON")
    if job.status != "Succeeded":
        error = (job.result or {}).get("error", "bulk mark won failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": error, "job_id": str(job.id)},
        )
    return JSONResponse(content={"success": True, **(job.result or {}), "job_id": str(job.id)})


@jobs_router.get("/jobs/{job_id}", response_model=JobRead)
def get_job(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> JobRead | JSONResponse:
    try:
        require_permission(user, "crm.jobs.run")
        return job_runner.get_job(db, job_id)
    except (PipelineError, HTTPException) as exc:
        return _handle(request, exc, "crm_job_get_failed")
