from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.crm.contracts import ContractWriter, DbContractWriter
from app.crm.models import OPPORTUNITY_STATUS_ACTIVE, OPPORTUNITY_STATUS_WON, CRMOpportunity, ensure_utc, utcnow
from app.crm.repositories import OpportunityHistoryRepository
from app.crm.schemas import BulkMarkWonItem, BulkMarkWonResult
from app.metrics import observe_bulk_item


logger = logging.getLogger("app.crm.bulk")
tracer = trace.get_tracer("app.crm.bulk")

BULK_WON_NOTE = "Marked as won in bulk (bulk-mark-won)"


class BulkConversionProcessor:
    """Marks every active opportunity of one funnel stage as won and writes its contract.

    Each opportunity is converted in its own transaction: the status change,
    the contract and the history entry commit together or not at all.
    """

    def __init__(
        self,
        contract_writer_factory: Callable[[Session], ContractWriter] = DbContractWriter,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.contract_writer_factory = contract_writer_factory
        self.settings = settings or get_settings()
        self.clock = clock
        self.history = OpportunityHistoryRepository()

    def mark_won(self, session: Session, funnel_id: uuid.UUID, stage_id: uuid.UUID) -> BulkMarkWonResult:
        product_id = uuid.UUID(self.settings.bulk_won_product_id)
        divisor = Decimal(self.settings.contract_pbs_divisor)
        result = BulkMarkWonResult()

        candidates = session.execute(
            select(
                CRMOpportunity.id,
                CRMOpportunity.contact_id,
                CRMOpportunity.proposal_value,
                CRMOpportunity.created_by,
            )
            .where(
                and_(
                    CRMOpportunity.current_funnel_id == funnel_id,
                    CRMOpportunity.current_stage_id == stage_id,
                    CRMOpportunity.status == OPPORTUNITY_STATUS_ACTIVE,
                )
            )
            .order_by(CRMOpportunity.created_at.asc(), CRMOpportunity.id.asc())
        ).all()
        result.total = len(candidates)
        writer = self.contract_writer_factory(session)

        for row in candidates:
            value = Decimal(row.proposal_value or 0)
            item = BulkMarkWonItem(id=row.id, contact_id=row.contact_id, value=float(value), status="ok")
            with tracer.start_as_current_span("crm.bulk.mark_won_item") as span:
                span.set_attribute("opportunity_id", str(row.id))
                try:
                    moment = ensure_utc(self.clock())
                    updated = session.execute(
                        update(CRMOpportunity)
                        .where(
                            and_(
                                CRMOpportunity.id == row.id,
                                CRMOpportunity.status == OPPORTUNITY_STATUS_ACTIVE,
                                CRMOpportunity.current_funnel_id == funnel_id,
                                CRMOpportunity.current_stage_id == stage_id,
                            )
                        )
                        .values(
                            status=OPPORTUNITY_STATUS_WON,
                            converted_at=moment,
                            updated_at=moment,
                            row_version=CRMOpportunity.row_version + 1,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if updated.rowcount == 0:
                        session.rollback()
                        item.status = "skipped"
                        item.error = "opportunity is no longer active in this stage"
                    else:
                        opportunity = session.scalar(
                            select(CRMOpportunity)
                            .where(CRMOpportunity.id == row.id)
                            .execution_options(populate_existing=True)
                        )
                        writer.create_contract(
                            opportunity,
                            product_id=product_id,
                            contract_value=value,
                            calculated_pbs=value / divisor,
                            payment_type=self.settings.contract_payment_type,
                        )
                        self.history.append(
                            session,
                            opportunity_id=row.id,
                            action="won",
                            changed_by=row.created_by,
                            from_stage_id=stage_id,
                            to_stage_id=stage_id,
                            notes=BULK_WON_NOTE,
                            occurred_at=moment,
                        )
                        session.commit()
                except Exception as exc:
                    session.rollback()
                    item.status = "error"
                    item.error = str(exc)
                    span.record_exception(exc)
                    logger.exception(
                        "bulk.item_failed",
                        extra={"opportunity_id": str(row.id), "stage_id": str(stage_id), "error": str(exc)},
                    )

            observe_bulk_item(item.status)
            result.results.append(item)

        result.processed = sum(1 for item in result.results if item.status == "ok")
        result.errors = sum(1 for item in result.results if item.status == "error")
        result.skipped = sum(1 for item in result.results if item.status == "skipped")
        logger.info(
            "bulk.mark_won_finished",
            extra={
                "funnel_id": str(funnel_id),
                "stage_id": str(stage_id),
                "total": result.total,
                "processed": result.processed,
                "errors": result.errors,
                "skipped": result.skipped,
            },
        )
        return result
