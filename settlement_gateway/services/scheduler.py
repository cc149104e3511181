"""Payout execution: single-beneficiary settlement and scheduled batch runs"""

import asyncio
import logging
import time
from contextlib import AbstractContextManager
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from settlement_gateway.config import settings
from settlement_gateway.domain.exceptions import (
    BatchAlreadyRunningError,
    DuplicateSubmissionError,
    GatewayError,
    GatewayTimeoutError,
    TerminalDataError,
    TransferNotFoundError,
    ValidationError,
)
from settlement_gateway.domain.models import (
    BatchSummary,
    CallOptions,
    Layer,
    OutcomeKind,
    PayoutComputation,
    PayoutOutcome,
    PayoutStatus,
)
from settlement_gateway.domain.schedule import is_due, is_valid_cron, next_run_after
from settlement_gateway.infrastructure.clients.terminals import RevenueSource
from settlement_gateway.infrastructure.database.models import Payout, PayoutSchedule
from settlement_gateway.infrastructure.database.repositories import (
    AssignmentRepository,
    AuditRepository,
    BeneficiaryRepository,
    PayoutRepository,
    ScheduleRepository,
)
from settlement_gateway.infrastructure.gateway import Gateway
from settlement_gateway.infrastructure.observability.logging import log_batch_run, log_payout_outcome
from settlement_gateway.infrastructure.observability.metrics import (
    payout_counter,
    record_batch,
    terminal_fetch_failures_counter,
)
from settlement_gateway.services.calculator import PayoutCalculator
from settlement_gateway.utils.date_utils import as_utc, today as utc_today, utcnow

logger = logging.getLogger(__name__)

TRANSFER_METHOD = "transfer_between_virtual_accounts_v2"
TRANSFER_STATUS_METHOD = "get_virtual_accounts_transfer"

TRANSFER_SUCCESS_STATES = {"SUCCESS", "EXECUTED", "COMPLETED"}
TRANSFER_FAILED_STATES = {"FAILED", "REJECTED", "CANCELED", "CANCELLED"}


class RunGuard:
    """
    Process-wide bookkeeping of in-flight work.

    At most one settlement per beneficiary and one batch run at a time.
    Only touched from the event loop thread, between awaits.
    """

    def __init__(self):
        self._in_flight: Set[str] = set()
        self._batch_running = False

    def acquire(self, beneficiary_id: str) -> bool:
        if beneficiary_id in self._in_flight:
            return False
        self._in_flight.add(beneficiary_id)
        return True

    def release(self, beneficiary_id: str) -> None:
        self._in_flight.discard(beneficiary_id)

    def start_batch(self) -> bool:
        if self._batch_running:
            return False
        self._batch_running = True
        return True

    def end_batch(self) -> None:
        self._batch_running = False


def extract_reference(result: Any) -> Optional[str]:
    """Platform transfer id from a transfer or status result"""
    if isinstance(result, dict):
        for key in ("transfer_id", "deal_id", "id"):
            if result.get(key):
                return str(result[key])
    return None


class PayoutScheduler:
    """Settles beneficiaries one at a time or as a scheduled batch"""

    def __init__(
        self,
        db: Session,
        gateway: Gateway,
        revenue: RevenueSource,
        guard: RunGuard,
        layer: Layer | str | None = None,
        source_virtual_account: str | None = None,
        max_concurrency: int | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.guard = guard
        self.layer = Layer(layer or settings.payout_layer)
        self.source_virtual_account = (
            source_virtual_account if source_virtual_account is not None else settings.payout_source_virtual_account
        )
        self.max_concurrency = max(1, max_concurrency or settings.payout_max_concurrency)

        self.assignments = AssignmentRepository(db)
        self.payouts = PayoutRepository(db)
        self.beneficiaries = BeneficiaryRepository(db)
        self.schedules = ScheduleRepository(db)
        self.audit = AuditRepository(db)
        self.calculator = PayoutCalculator(self.assignments, self.payouts, self.beneficiaries, revenue)

    async def calculate(self, beneficiary_id: str, period_end: date) -> PayoutComputation:
        """Preview without side effects"""
        return await self.calculator.calculate(beneficiary_id, period_end)

    async def run_one(
        self,
        beneficiary_id: str,
        period_end: date,
        *,
        virtual_account: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> PayoutOutcome:
        """
        Calculate, persist, and transfer one beneficiary's payout.

        Never raises for per-beneficiary failures; the returned outcome says
        what happened and the payout row carries the error message.
        """
        if not self.guard.acquire(beneficiary_id):
            outcome = PayoutOutcome(
                beneficiary_id=beneficiary_id,
                kind=OutcomeKind.REJECTED,
                error="A payout for this beneficiary is already in flight",
            )
            return self._finish(outcome)
        try:
            return self._finish(await self._settle(beneficiary_id, period_end, virtual_account, user_id))
        finally:
            self.guard.release(beneficiary_id)

    async def run_scheduled(self, *, today: Optional[date] = None, user_id: Optional[str] = None) -> BatchSummary:
        """
        Settle every beneficiary with an active assignment.

        Raises:
            BatchAlreadyRunningError: Another batch is in progress (last_run_at untouched)
        """
        if not self.guard.start_batch():
            raise BatchAlreadyRunningError("A scheduled payout run is already in progress")

        start_time = time.time()
        try:
            beneficiary_ids = self.assignments.beneficiaries_with_active()
            period_end = today or utc_today()
            outcomes = await self._run_all(beneficiary_ids, period_end, user_id)

            created = sum(1 for o in outcomes if o.kind == OutcomeKind.COMPLETED)
            summary = BatchSummary(created=created, total=len(beneficiary_ids), outcomes=outcomes)

            schedule = self.schedules.get_or_create(settings.default_cron_expression)
            self.schedules.mark_run(schedule, utcnow())
            self.audit.log(
                "scheduled_payouts",
                "payout_schedule",
                str(schedule.id),
                {"total": summary.total, "created": summary.created, "skipped": summary.skipped},
                user_id,
            )
            self.db.commit()
        finally:
            self.guard.end_batch()

        record_batch(summary.created, summary.total)
        log_batch_run(summary.created, summary.total, (time.time() - start_time) * 1000)
        return summary

    async def run_due(self, now: Optional[datetime] = None) -> Optional[BatchSummary]:
        """Run the batch when the cron schedule says it is due"""
        now = now or utcnow()
        schedule = self.schedules.get_or_create(settings.default_cron_expression)
        self.db.commit()
        if not is_due(
            schedule.cron_expression,
            schedule.is_enabled,
            as_utc(schedule.last_run_at),
            as_utc(schedule.updated_at),
            now,
        ):
            return None
        return await self.run_scheduled(today=now.date(), user_id="scheduler")

    def get_schedule(self) -> PayoutSchedule:
        schedule = self.schedules.get_or_create(settings.default_cron_expression)
        self.db.commit()
        return schedule

    def update_schedule(
        self,
        cron_expression: Optional[str] = None,
        is_enabled: Optional[bool] = None,
        user_id: Optional[str] = None,
    ) -> PayoutSchedule:
        """
        Raises:
            ValidationError: Cron expression does not parse
        """
        if cron_expression is not None and not is_valid_cron(cron_expression):
            raise ValidationError(f'Invalid cron expression "{cron_expression}"')
        schedule = self.schedules.get_or_create(settings.default_cron_expression)
        self.schedules.update(schedule, cron_expression, is_enabled, updated_by=user_id)
        self.audit.log(
            "update_schedule",
            "payout_schedule",
            str(schedule.id),
            {"cron_expression": schedule.cron_expression, "is_enabled": schedule.is_enabled},
            user_id,
        )
        self.db.commit()
        return schedule

    def next_run_at(self, schedule: PayoutSchedule) -> Optional[datetime]:
        if not schedule.is_enabled or not is_valid_cron(schedule.cron_expression):
            return None
        return next_run_after(schedule.cron_expression, as_utc(schedule.last_run_at or schedule.updated_at))

    async def reconcile(self, payout_id: int) -> PayoutOutcome:
        """
        Resolve a processing payout by asking the platform about its transfer.

        A transfer the platform never received fails the payout, which lets
        the next run settle the same window again under the same ext_key.

        Raises:
            PayoutNotFoundError: Unknown payout id
            GatewayError: The status lookup itself failed
        """
        payout = self.payouts.get(payout_id)
        if payout.status != PayoutStatus.PROCESSING.value:
            return self._outcome_from_row(payout)

        try:
            result = await self.gateway.call(
                self.layer,
                TRANSFER_STATUS_METHOD,
                {"ext_key": payout.idempotency_key},
                CallOptions(force=True),
            )
        except TransferNotFoundError as e:
            # The transfer never reached the platform; the window is free for a fresh run
            self.payouts.transition(
                payout,
                PayoutStatus.FAILED,
                error_message=f"Transfer not found on platform during reconcile: {e.message}",
            )
            self.audit.log("reconcile_payout", "beneficiary_payout", str(payout.id), {"remote_status": "NOT_FOUND"})
            self.db.commit()
            return self._finish(self._outcome_from_row(payout))

        state = ""
        if isinstance(result.result, dict):
            state = str(result.result.get("status", "")).upper()

        if state in TRANSFER_SUCCESS_STATES:
            reference = extract_reference(result.result) or payout.idempotency_key
            self.payouts.transition(payout, PayoutStatus.COMPLETED, external_reference=reference)
        elif state in TRANSFER_FAILED_STATES:
            reason = result.result.get("error") or f"Transfer {state.lower()} by platform"
            self.payouts.transition(payout, PayoutStatus.FAILED, error_message=str(reason))
        self.audit.log("reconcile_payout", "beneficiary_payout", str(payout.id), {"remote_status": state})
        self.db.commit()
        return self._finish(self._outcome_from_row(payout))

    async def _run_all(self, beneficiary_ids: List[str], period_end: date, user_id: Optional[str]) -> List[PayoutOutcome]:
        if self.max_concurrency == 1:
            outcomes = []
            for beneficiary_id in beneficiary_ids:
                outcomes.append(await self.run_one(beneficiary_id, period_end, user_id=user_id))
            return outcomes

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(beneficiary_id: str) -> PayoutOutcome:
            async with semaphore:
                return await self.run_one(beneficiary_id, period_end, user_id=user_id)

        return list(await asyncio.gather(*(bounded(b) for b in beneficiary_ids)))

    async def _settle(
        self,
        beneficiary_id: str,
        period_end: date,
        virtual_account: Optional[str],
        user_id: Optional[str],
    ) -> PayoutOutcome:
        open_payout = self.payouts.find_open(beneficiary_id)
        if open_payout is not None:
            return PayoutOutcome(
                beneficiary_id=beneficiary_id,
                kind=OutcomeKind.REJECTED,
                payout_id=open_payout.id,
                error=f"Payout {open_payout.id} is still {open_payout.status}; reconcile it first",
            )

        try:
            computation = await self.calculator.calculate(beneficiary_id, period_end)
        except TerminalDataError as e:
            terminal_fetch_failures_counter.inc()
            return PayoutOutcome(beneficiary_id=beneficiary_id, kind=OutcomeKind.ERROR, error=str(e))

        if computation.payout_amount <= 0:
            return PayoutOutcome(beneficiary_id=beneficiary_id, kind=OutcomeKind.SKIPPED)

        payout = self.calculator.commit(computation, created_by=user_id)
        self.audit.log(
            "create_payout",
            "beneficiary_payout",
            str(payout.id),
            {
                "period_start": computation.period_start.isoformat(),
                "period_end": computation.period_end.isoformat(),
                "payout_amount": str(computation.payout_amount),
            },
            user_id,
        )
        self.db.commit()

        destination = virtual_account or self._beneficiary_account(beneficiary_id)
        missing = self._missing_accounts(destination)
        if missing:
            self.payouts.transition(payout, PayoutStatus.FAILED, error_message=missing)
            self.db.commit()
            return self._outcome_from_row(payout)

        self.payouts.transition(payout, PayoutStatus.PROCESSING)
        self.db.commit()

        try:
            result = await self.gateway.call(self.layer, TRANSFER_METHOD, self._transfer_params(payout, destination))
        except (DuplicateSubmissionError, GatewayTimeoutError) as e:
            # Remote may have accepted it; stays processing until reconciled
            self.payouts.note_error(payout, f"{e.message} (outcome unknown, reconcile before retrying)")
            self.db.commit()
            return self._outcome_from_row(payout)
        except GatewayError as e:
            self.payouts.transition(payout, PayoutStatus.FAILED, error_message=e.message or e.kind)
            self.audit.log("payout_failed", "beneficiary_payout", str(payout.id), {"error": e.message}, user_id)
            self.db.commit()
            return self._outcome_from_row(payout)

        reference = extract_reference(result.result) or payout.idempotency_key
        self.payouts.transition(payout, PayoutStatus.COMPLETED, external_reference=reference)
        self.audit.log(
            "execute_payout",
            "beneficiary_payout",
            str(payout.id),
            {"virtual_account": destination, "external_reference": reference},
            user_id,
        )
        self.db.commit()
        return self._outcome_from_row(payout)

    def _beneficiary_account(self, beneficiary_id: str) -> Optional[str]:
        beneficiary = self.beneficiaries.get(beneficiary_id)
        return beneficiary.virtual_account if beneficiary else None

    def _missing_accounts(self, destination: Optional[str]) -> Optional[str]:
        if not self.source_virtual_account:
            return "Payout source virtual account is not configured"
        if not destination:
            return "Beneficiary has no virtual account"
        return None

    def _transfer_params(self, payout: Payout, destination: str) -> Dict[str, Any]:
        return {
            "from_virtual_account": self.source_virtual_account,
            "to_virtual_account": destination,
            "amount": float(payout.payout_amount),
            "ext_key": payout.idempotency_key,
        }

    @staticmethod
    def _outcome_from_row(payout: Payout) -> PayoutOutcome:
        kind = {
            PayoutStatus.COMPLETED.value: OutcomeKind.COMPLETED,
            PayoutStatus.FAILED.value: OutcomeKind.FAILED,
        }.get(payout.status, OutcomeKind.UNKNOWN)
        return PayoutOutcome(
            beneficiary_id=payout.beneficiary_id,
            kind=kind,
            payout_id=payout.id,
            payout_amount=payout.payout_amount,
            external_reference=payout.external_reference,
            error=payout.error_message,
        )

    @staticmethod
    def _finish(outcome: PayoutOutcome) -> PayoutOutcome:
        payout_counter.labels(outcome=outcome.kind.value).inc()
        log_payout_outcome(
            outcome.beneficiary_id,
            outcome.kind.value,
            outcome.payout_id,
            str(outcome.payout_amount),
            outcome.error,
        )
        return outcome


async def run_forever(
    session_scope: Callable[[], AbstractContextManager],
    build: Callable[[Session], PayoutScheduler],
    poll_seconds: float,
) -> None:
    """
    Background loop checking the cron schedule.

    A failed tick is logged and the loop keeps polling; the next tick
    retries because last_run_at is only stamped by a completed run.
    """
    while True:
        with session_scope() as db:
            try:
                summary = await build(db).run_due()
                if summary is not None:
                    logger.info("Scheduled run finished", extra={"created": summary.created, "total": summary.total})
            except BatchAlreadyRunningError:
                logger.info("Scheduled run skipped: batch already running")
            except Exception:
                db.rollback()
                logger.exception("Scheduled payout tick failed")
        await asyncio.sleep(poll_seconds)
