from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.context import reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.crm.bulk_conversion import BulkConversionProcessor
from app.crm.errors import JobAlreadyRunningError, NotFoundError
from app.crm.models import CRMJob, utcnow
from app.crm.schemas import JobRead
from app.crm.service import ActorUser
from app.crm.sla_monitor import SlaBreachMonitor
from app.metrics import observe_job


logger = logging.getLogger("app.crm.jobs")
tracer = trace.get_tracer("app.crm.jobs")

JOB_TYPE_SLA_BREACH_CHECK = "SLA_BREACH_CHECK"
JOB_TYPE_BULK_MARK_WON = "BULK_MARK_WON"

JobWork = Callable[[Session, ActorUser, dict[str, Any]], BaseModel]


def _actor_with_correlation_id(actor_user: ActorUser, correlation_id: str | None) -> ActorUser:
    return ActorUser(
        user_id=actor_user.user_id,
        permissions=actor_user.permissions,
        is_super_admin=actor_user.is_super_admin,
        correlation_id=correlation_id,
    )


def job_to_read(job: CRMJob) -> JobRead:
    return JobRead(
        id=job.id,
        job_type=job.job_type,
        status=job.status,
        requested_by_user_id=job.requested_by_user_id,
        correlation_id=job.correlation_id,
        params=json.loads(job.params_json or "{}"),
        result=json.loads(job.result_json) if job.result_json else None,
        started_at=job.started_at,
        finished_at=job.finished_at,
        created_at=job.created_at,
    )


class PipelineJobRunner:
    """Records every batch invocation as a crm_job row and runs it under one span."""

    def create_job(
        self,
        session: Session,
        actor_user: ActorUser,
        job_type: str,
        params: dict[str, Any],
    ) -> CRMJob:
        job = CRMJob(
            job_type=job_type,
            status="Queued",
            requested_by_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
            params_json=json.dumps(params),
        )
        session.add(job)
        session.commit()
        return job

    def get_job(self, session: Session, job_id: uuid.UUID) -> JobRead:
        job = session.scalar(select(CRMJob).where(CRMJob.id == job_id))
        if job is None:
            raise NotFoundError("job not found")
        return job_to_read(job)

    def running_job(self, session: Session, job_type: str, stale_after: timedelta) -> CRMJob | None:
        """Latest job of this type still marked Running; rows older than stale_after count as abandoned."""
        return session.scalar(
            select(CRMJob)
            .where(
                CRMJob.job_type == job_type,
                CRMJob.status == "Running",
                CRMJob.started_at >= utcnow() - stale_after,
            )
            .order_by(CRMJob.started_at.desc())
            .limit(1)
        )

    def run(self, session: Session, actor_user: ActorUser, job_id: uuid.UUID, work: JobWork) -> JobRead:
        job = session.scalar(select(CRMJob).where(CRMJob.id == job_id))
        if job is None:
            raise NotFoundError("job not found")
        if job.status == "Succeeded":
            return job_to_read(job)

        job_type = job.job_type
        params = json.loads(job.params_json or "{}")
        correlation_id = str(job.correlation_id or actor_user.correlation_id or "") or None
        runtime_actor = _actor_with_correlation_id(actor_user, correlation_id)
        token = set_correlation_id(correlation_id)
        started = time.perf_counter()
        final_status = "Failed"

        with tracer.start_as_current_span("crm.job.run") as job_span:
            job_span.set_attribute("job_id", str(job_id))
            job_span.set_attribute("job_type", job_type)
            job_span.set_attribute("correlation_id", correlation_id or "")

            logger.info(
                "job.started",
                extra={
                    "job_id": str(job_id),
                    "job_type": job_type,
                    "status": "Running",
                    "duration_ms": 0.0,
                    "user_id": runtime_actor.user_id,
                },
            )

            job.status = "Running"
            job.started_at = utcnow()
            session.add(job)
            session.commit()

            try:
                payload = work(session, runtime_actor, params)

                job = session.scalar(select(CRMJob).where(CRMJob.id == job_id))
                if job is None:
                    raise NotFoundError("job not found")
                job.status = "Succeeded"
                job.result_json = json.dumps(payload.model_dump(mode="json"))
                job.finished_at = utcnow()
                session.add(job)

                audit.record(
                    actor_user_id=runtime_actor.user_id,
                    entity_type="crm.job",
                    entity_id=str(job_id),
                    action=job_type.lower(),
                    before={"status": "Running"},
                    after={"status": "Succeeded"},
                    correlation_id=runtime_actor.correlation_id,
                )
                session.commit()
                logger.info(
                    "job.finished",
                    extra={
                        "job_id": str(job_id),
                        "job_type": job_type,
                        "status": "Succeeded",
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        "user_id": runtime_actor.user_id,
                    },
                )
                final_status = "Succeeded"
            except Exception as exc:
                try:
                    session.rollback()
                    job = session.scalar(select(CRMJob).where(CRMJob.id == job_id))
                    if job is None:
                        raise

                    job.status = "Failed"
                    job.result_json = json.dumps({"error": str(exc)[:2000]})
                    job.finished_at = utcnow()
                    session.add(job)
                    session.commit()
                except SQLAlchemyError:
                    session.rollback()
                    logger.exception(
                        "job.failure_not_recorded",
                        extra={"job_id": str(job_id), "job_type": job_type, "error": str(exc)[:500]},
                    )
                    job_span.record_exception(exc)
                    job_span.set_status(Status(StatusCode.ERROR, str(exc)))
                    raise exc

                audit.record(
                    actor_user_id=runtime_actor.user_id,
                    entity_type="crm.job",
                    entity_id=str(job_id),
                    action=job_type.lower(),
                    before={"status": "Running"},
                    after={"status": "Failed", "error": str(exc)[:2000]},
                    correlation_id=runtime_actor.correlation_id,
                )
                job_span.record_exception(exc)
                job_span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.info(
                    "job.finished",
                    extra={
                        "job_id": str(job_id),
                        "job_type": job_type,
                        "status": "Failed",
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        "error": str(exc)[:500],
                        "user_id": runtime_actor.user_id,
                    },
                )
                final_status = "Failed"
            finally:
                duration = time.perf_counter() - started
                observe_job(job_type=job_type, status=final_status, duration=duration)
                reset_correlation_id(token)

        final_job = session.scalar(select(CRMJob).where(CRMJob.id == job_id))
        if final_job is None:
            raise NotFoundError("job not found")
        return job_to_read(final_job)


def run_sla_breach_check(
    session: Session,
    actor_user: ActorUser,
    monitor: SlaBreachMonitor | None = None,
    runner: PipelineJobRunner | None = None,
) -> JobRead:
    runner = runner or PipelineJobRunner()
    monitor = monitor or SlaBreachMonitor()
    stale_after = timedelta(minutes=get_settings().sla_check_interval_minutes)
    running = runner.running_job(session, JOB_TYPE_SLA_BREACH_CHECK, stale_after)
    if running is not None:
        # notification dedup is check-then-insert, so overlapping scans could notify twice
        raise JobAlreadyRunningError("an SLA breach check is already running", details={"job_id": str(running.id)})
    job = runner.create_job(session, actor_user, JOB_TYPE_SLA_BREACH_CHECK, {})
    return runner.run(session, actor_user, job.id, lambda db, _actor, _params: monitor.run(db))


def run_bulk_mark_won(
    session: Session,
    actor_user: ActorUser,
    funnel_id: uuid.UUID,
    stage_id: uuid.UUID,
    processor: BulkConversionProcessor | None = None,
    runner: PipelineJobRunner | None = None,
) -> JobRead:
    runner = runner or PipelineJobRunner()
    processor = processor or BulkConversionProcessor()
    job = runner.create_job(
        session,
        actor_user,
        JOB_TYPE_BULK_MARK_WON,
        {"funnel_id": str(funnel_id), "stage_id": str(stage_id)},
    )
    return runner.run(
        session,
        actor_user,
        job.id,
        lambda db, _actor, params: processor.mark_won(
            db, uuid.UUID(params["funnel_id"]), uuid.UUID(params["stage_id"])
        ),
    )
