from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Protocol

from opentelemetry import trace
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.crm.models import CRMContract, CRMOpportunity


tracer = trace.get_tracer("app.crm.contracts")


class ContractWriter(Protocol):
    def create_contract(
        self,
        opportunity: CRMOpportunity,
        *,
        product_id: uuid.UUID,
        contract_value: Decimal,
        calculated_pbs: Decimal,
        payment_type: str | None,
    ) -> CRMContract: ...


class DbContractWriter:
    """Writes contracts in the caller's session so they commit or roll back with the opportunity."""

    def __init__(self, session: Session):
        self.session = session

    def create_contract(
        self,
        opportunity: CRMOpportunity,
        *,
        product_id: uuid.UUID,
        contract_value: Decimal,
        calculated_pbs: Decimal,
        payment_type: str | None,
    ) -> CRMContract:
        with tracer.start_as_current_span("crm.contract.create") as span:
            span.set_attribute("opportunity_id", str(opportunity.id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            contract = CRMContract(
                contact_id=opportunity.contact_id,
                opportunity_id=opportunity.id,
                product_id=product_id,
                owner_id=opportunity.created_by,
                contract_value=contract_value,
                calculated_pbs=calculated_pbs,
                payment_type=payment_type,
                status="active",
                custom_data={},
            )
            self.session.add(contract)
            self.session.flush()
            span.set_attribute("contract_id", str(contract.id))
            return contract
