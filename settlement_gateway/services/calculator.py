"""Payout calculation: period derivation plus per-machine revenue aggregation"""

import logging
from datetime import date
from typing import Optional

from settlement_gateway.domain.models import PayoutComputation
from settlement_gateway.domain.payouts import (
    aggregate_payout,
    calculate_line,
    derive_period_start,
    empty_computation,
    machine_window,
    transfer_key,
)
from settlement_gateway.infrastructure.clients.terminals import RevenueSource
from settlement_gateway.infrastructure.database.models import Payout
from settlement_gateway.infrastructure.database.repositories import (
    AssignmentRepository,
    BeneficiaryRepository,
    PayoutRepository,
)

logger = logging.getLogger(__name__)


class PayoutCalculator:
    """
    Computes what a beneficiary is owed for the next uncovered period.

    calculate() reads state and fetches revenue but never writes; commit() is
    the separate step that turns a computation into a pending payout.
    """

    def __init__(
        self,
        assignments: AssignmentRepository,
        payouts: PayoutRepository,
        beneficiaries: BeneficiaryRepository,
        revenue: RevenueSource,
    ):
        self.assignments = assignments
        self.payouts = payouts
        self.beneficiaries = beneficiaries
        self.revenue = revenue

    def period_start_for(self, beneficiary_id: str) -> Optional[date]:
        """Day after the last completed payout, else onboarding date, else first assignment"""
        beneficiary = self.beneficiaries.get(beneficiary_id)
        onboarded_on = beneficiary.onboarded_at if beneficiary and beneficiary.onboarded_at else None
        if onboarded_on is None:
            onboarded_on = self.assignments.earliest_assigned_on(beneficiary_id)
        return derive_period_start(self.payouts.last_completed_end(beneficiary_id), onboarded_on)

    async def calculate(self, beneficiary_id: str, period_end: date) -> PayoutComputation:
        """
        Aggregate revenue over [period_start, period_end] of every assignment
        that covered part of it, each at its own frozen rate.

        Raises:
            TerminalDataError: Revenue for a machine could not be fetched
        """
        period_start = self.period_start_for(beneficiary_id)
        if period_start is None or period_start > period_end:
            # Nothing assigned, or already settled through period_end
            return empty_computation(beneficiary_id, period_start or period_end, period_end)

        lines = []
        for assignment in self.assignments.list_for_period(beneficiary_id, period_start):
            window = machine_window(period_start, period_end, assignment.assigned_at, assignment.unassigned_at)
            if window is None:
                continue
            window_start, window_end = window
            sales = await self.revenue.get_machine_revenue(assignment.machine_id, window_start, window_end)
            lines.append(calculate_line(assignment.machine_id, sales, assignment.commission_percent))

        computation = aggregate_payout(beneficiary_id, period_start, period_end, lines)
        logger.debug(
            "Payout calculated",
            extra={
                "beneficiary_id": beneficiary_id,
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "payout_amount": str(computation.payout_amount),
            },
        )
        return computation

    def commit(self, computation: PayoutComputation, created_by: Optional[str] = None) -> Payout:
        """Persist a computation as a pending payout"""
        key = transfer_key(computation.beneficiary_id, computation.period_start, computation.period_end)
        return self.payouts.create_pending(computation, idempotency_key=key, created_by=created_by)
