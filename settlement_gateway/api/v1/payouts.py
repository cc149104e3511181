"""Payout endpoints: preview, execute, scheduled batch, history, reconcile"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response

from settlement_gateway.api.dependencies import get_request_id, get_scheduler, get_user_id
from settlement_gateway.api.errors import gateway_http_exception
from settlement_gateway.api.v1.schemas import (
    BatchSummaryResponse,
    CalculateRequest,
    CalculationResponse,
    ExecuteRequest,
    ExecuteScheduledRequest,
    HistoryResponse,
    OutcomeSchema,
    PayoutLineSchema,
    PayoutSchema,
    ScheduleResponse,
    ScheduleUpdateRequest,
)
from settlement_gateway.domain.exceptions import (
    BatchAlreadyRunningError,
    GatewayError,
    PayoutNotFoundError,
    TerminalDataError,
)
from settlement_gateway.domain.models import OutcomeKind, PayoutOutcome, PayoutStatus
from settlement_gateway.infrastructure.database.models import PayoutSchedule
from settlement_gateway.infrastructure.observability.metrics import terminal_fetch_failures_counter
from settlement_gateway.services.scheduler import PayoutScheduler
from settlement_gateway.utils.date_utils import today

router = APIRouter()

OUTCOME_STATUS = {
    OutcomeKind.COMPLETED: 200,
    OutcomeKind.SKIPPED: 200,
    OutcomeKind.UNKNOWN: 202,
    OutcomeKind.FAILED: 502,
    OutcomeKind.REJECTED: 409,
    OutcomeKind.ERROR: 503,
}


def _outcome_schema(outcome: PayoutOutcome) -> OutcomeSchema:
    return OutcomeSchema(
        beneficiary_id=outcome.beneficiary_id,
        outcome=outcome.kind.value,
        payout_id=outcome.payout_id,
        payout_amount=outcome.payout_amount,
        external_reference=outcome.external_reference,
        error=outcome.error,
    )


def _schedule_response(scheduler: PayoutScheduler, schedule: PayoutSchedule) -> ScheduleResponse:
    return ScheduleResponse(
        cron_expression=schedule.cron_expression,
        is_enabled=schedule.is_enabled,
        last_run_at=schedule.last_run_at,
        next_run_at=scheduler.next_run_at(schedule),
        updated_at=schedule.updated_at,
        updated_by=schedule.updated_by,
    )


@router.post("/payouts/calculate", response_model=CalculationResponse)
async def calculate_payout(
    request_body: CalculateRequest,
    request: Request,
    scheduler: PayoutScheduler = Depends(get_scheduler),
):
    """Preview the next payout for a beneficiary; writes nothing"""
    try:
        computation = await scheduler.calculate(request_body.beneficiary_id, request_body.period_end or today())
    except TerminalDataError as e:
        terminal_fetch_failures_counter.inc()
        logging.error(f"Terminal data error: {e}", extra={"request_id": get_request_id(request)})
        raise HTTPException(status_code=503, detail="Terminal data service unavailable")

    return CalculationResponse(
        beneficiary_id=computation.beneficiary_id,
        period_start=computation.period_start,
        period_end=computation.period_end,
        total_sales=computation.total_sales,
        total_commission=computation.total_commission,
        payout_amount=computation.payout_amount,
        lines=[PayoutLineSchema.model_validate(line) for line in computation.lines],
    )


@router.post("/payouts/execute", response_model=OutcomeSchema)
async def execute_payout(
    request_body: ExecuteRequest,
    request: Request,
    response: Response,
    scheduler: PayoutScheduler = Depends(get_scheduler),
):
    """
    Settle one beneficiary.

    Status codes follow the outcome: 409 when another payout for the
    beneficiary is still in flight, 202 when the transfer outcome is
    unknown and must be reconciled.
    """
    outcome = await scheduler.run_one(
        request_body.beneficiary_id,
        request_body.period_end or today(),
        virtual_account=request_body.virtual_account,
        user_id=get_user_id(request),
    )
    status_code = OUTCOME_STATUS[outcome.kind]
    if status_code >= 400:
        raise HTTPException(status_code=status_code, detail=_outcome_schema(outcome).model_dump(mode="json"))
    if status_code != 200:
        response.status_code = status_code
    return _outcome_schema(outcome)


@router.post("/payouts/execute-scheduled", response_model=BatchSummaryResponse)
async def execute_scheduled(
    request: Request,
    request_body: Optional[ExecuteScheduledRequest] = Body(None),
    scheduler: PayoutScheduler = Depends(get_scheduler),
):
    """Settle every beneficiary with active assignments now"""
    try:
        summary = await scheduler.run_scheduled(
            today=request_body.today if request_body else None,
            user_id=get_user_id(request),
        )
    except BatchAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return BatchSummaryResponse(
        created=summary.created,
        total=summary.total,
        skipped=summary.skipped,
        failed=summary.failed,
        outcomes=[_outcome_schema(o) for o in summary.outcomes],
    )


@router.get("/payouts/schedule", response_model=ScheduleResponse)
def get_schedule(scheduler: PayoutScheduler = Depends(get_scheduler)):
    return _schedule_response(scheduler, scheduler.get_schedule())


@router.put("/payouts/schedule", response_model=ScheduleResponse)
def update_schedule(
    request_body: ScheduleUpdateRequest,
    request: Request,
    scheduler: PayoutScheduler = Depends(get_scheduler),
):
    try:
        schedule = scheduler.update_schedule(
            cron_expression=request_body.cron_expression,
            is_enabled=request_body.is_enabled,
            user_id=get_user_id(request),
        )
    except GatewayError as e:
        raise gateway_http_exception(e)
    return _schedule_response(scheduler, schedule)


@router.get("/payouts/history", response_model=HistoryResponse)
def get_payout_history(
    status: Optional[PayoutStatus] = Query(None, description="Filter by payout status"),
    beneficiary_id: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    scheduler: PayoutScheduler = Depends(get_scheduler),
):
    """Most recent payouts first"""
    payouts = scheduler.payouts.list_history(
        status=status.value if status else None,
        beneficiary_id=beneficiary_id,
        limit=limit,
    )
    return HistoryResponse(payouts=[PayoutSchema.model_validate(p) for p in payouts])


@router.get("/payouts/{payout_id}", response_model=PayoutSchema)
def get_payout(payout_id: int, scheduler: PayoutScheduler = Depends(get_scheduler)):
    try:
        return PayoutSchema.model_validate(scheduler.payouts.get(payout_id))
    except PayoutNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/payouts/{payout_id}/reconcile", response_model=OutcomeSchema)
async def reconcile_payout(
    payout_id: int,
    request: Request,
    scheduler: PayoutScheduler = Depends(get_scheduler),
):
    """Resolve a payout stuck in processing after a timeout or duplicate signal"""
    try:
        outcome = await scheduler.reconcile(payout_id)
    except PayoutNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GatewayError as e:
        logging.warning(f"Reconcile lookup failed: {e.kind}", extra={"request_id": get_request_id(request)})
        raise gateway_http_exception(e)
    return _outcome_schema(outcome)
