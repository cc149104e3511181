"""Payout status lifecycle"""

from typing import Optional

from settlement_gateway.domain.exceptions import InvalidTransition
from settlement_gateway.domain.models import PayoutStatus

ALLOWED = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.FAILED: set(),
}

TERMINAL = {PayoutStatus.COMPLETED, PayoutStatus.FAILED}


def assert_transition(old: PayoutStatus, new: PayoutStatus) -> None:
    if new not in ALLOWED.get(PayoutStatus(old), set()):
        raise InvalidTransition(f"Illegal payout transition: {old.value} -> {new.value}")


def assert_terminal_invariant(
    new_status: PayoutStatus,
    external_reference: Optional[str],
    error_message: Optional[str],
) -> None:
    """
    completed requires the platform's reference, failed requires a reason.
    """
    if new_status == PayoutStatus.COMPLETED and not external_reference:
        raise InvalidTransition("Invariant violation: status=completed requires external_reference")
    if new_status == PayoutStatus.FAILED and not error_message:
        raise InvalidTransition("Invariant violation: status=failed requires error_message")
