from __future__ import annotations

import logging
import uuid
from typing import Any

from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.crm.errors import JobAlreadyRunningError
from app.crm.jobs import run_bulk_mark_won, run_sla_breach_check
from app.crm.service import ActorUser


logger = logging.getLogger("app.crm.tasks")

SYSTEM_ACTOR_ID = "system:scheduler"


def _system_actor() -> ActorUser:
    return ActorUser(user_id=SYSTEM_ACTOR_ID, permissions={"crm.jobs.run"}, is_super_admin=True)


@celery_app.task(name="app.crm.tasks.check_sla_breaches")
def check_sla_breaches() -> dict[str, Any]:
    with SessionLocal() as session:
        try:
            job = run_sla_breach_check(session, _system_actor())
        except JobAlreadyRunningError as exc:
            logger.info("job.skipped", extra={"job_id": exc.details["job_id"], "job_type": "SLA_BREACH_CHECK"})
            return {"status": "Skipped", "job_id": exc.details["job_id"]}
    return job.model_dump(mode="json")


@celery_app.task(name="app.crm.tasks.bulk_mark_won")
def bulk_mark_won(funnel_id: str, stage_id: str, requested_by_user_id: str | None = None) -> dict[str, Any]:
    actor = _system_actor()
    if requested_by_user_id:
        actor = ActorUser(user_id=requested_by_user_id, permissions={"crm.jobs.run"})
    with SessionLocal() as session:
        job = run_bulk_mark_won(session, actor, uuid.UUID(funnel_id), uuid.UUID(stage_id))
    return job.model_dump(mode="json")
