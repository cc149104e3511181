"""Payout arithmetic - core business logic for commission-based settlements"""

import hashlib
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple

from settlement_gateway.domain.models import PayoutComputation, PayoutLine

MINOR_UNIT = Decimal("0.01")
PERCENT_PRECISION = Decimal("0.1")


def round_money(amount: Decimal | int | float | str) -> Decimal:
    """Round to currency minor unit (kopecks/cents), half-up"""
    return Decimal(str(amount)).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def normalize_percent(percent: Decimal | int | float | str) -> Decimal:
    """
    Validate and normalize a commission percent.

    Commission is stored with one decimal place and must be within 0-100.
    """
    value = Decimal(str(percent)).quantize(PERCENT_PRECISION, rounding=ROUND_HALF_UP)
    if value < 0 or value > 100:
        raise ValueError(f"commission_percent must be between 0 and 100, got {percent}")
    return value


def derive_period_start(
    last_completed_end: Optional[date],
    onboarded_on: Optional[date],
) -> Optional[date]:
    """
    Start of the next uncovered period for a beneficiary.

    Periods are gapless and non-overlapping: the day after the last completed
    payout, or the onboarding date when nothing was ever paid.
    """
    if last_completed_end is not None:
        return last_completed_end + timedelta(days=1)
    return onboarded_on


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def machine_window(
    period_start: date,
    period_end: date,
    assigned_at: date | datetime,
    unassigned_at: Optional[date | datetime] = None,
) -> Optional[Tuple[date, date]]:
    """
    Days of the period an assignment covered, or None if it covered none.

    An assignment runs from its assigned day through the day before it was
    unassigned; the replacing assignment owns the change day.
    """
    covered_from = _as_date(assigned_at)
    covered_to = period_end if unassigned_at is None else _as_date(unassigned_at) - timedelta(days=1)
    if covered_from > covered_to or not periods_overlap((period_start, period_end), (covered_from, covered_to)):
        return None
    return max(period_start, covered_from), min(period_end, covered_to)


def calculate_line(machine_id: str, sales_amount: Decimal, commission_percent: Decimal) -> PayoutLine:
    """
    Split one machine's sales into commission and net.

    commission = round(sales * percent / 100, 2)
    net        = sales - commission
    """
    sales = round_money(sales_amount)
    percent = Decimal(str(commission_percent))
    commission = round_money(sales * percent / Decimal(100))
    return PayoutLine(
        machine_id=machine_id,
        sales_amount=sales,
        commission_percent=percent,
        commission_amount=commission,
        net_amount=sales - commission,
    )


def aggregate_payout(
    beneficiary_id: str,
    period_start: date,
    period_end: date,
    lines: Iterable[PayoutLine],
) -> PayoutComputation:
    """
    Aggregate per-machine lines into a payout.

    Every operand is already rounded to the minor unit, so Decimal sums are
    exact and payout_amount == total_sales - total_commission holds without drift.
    """
    lines = list(lines)
    total_sales = sum((line.sales_amount for line in lines), Decimal("0.00"))
    total_commission = sum((line.commission_amount for line in lines), Decimal("0.00"))
    payout_amount = sum((line.net_amount for line in lines), Decimal("0.00"))

    return PayoutComputation(
        beneficiary_id=beneficiary_id,
        period_start=period_start,
        period_end=period_end,
        lines=lines,
        total_sales=round_money(total_sales),
        total_commission=round_money(total_commission),
        payout_amount=round_money(payout_amount),
    )


def empty_computation(beneficiary_id: str, period_start: date, period_end: date) -> PayoutComputation:
    return PayoutComputation(beneficiary_id=beneficiary_id, period_start=period_start, period_end=period_end)


def transfer_key(beneficiary_id: str, period_start: date, period_end: date) -> str:
    """
    Deterministic idempotency key for a period's transfer.

    Retrying the same uncovered window reuses the key, so the platform's
    duplicate-submission protection catches a second transfer.
    """
    raw = f"payout:{beneficiary_id}:{period_start.isoformat()}:{period_end.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def periods_overlap(first: Tuple[date, date], second: Tuple[date, date]) -> bool:
    return first[0] <= second[1] and second[0] <= first[1]
