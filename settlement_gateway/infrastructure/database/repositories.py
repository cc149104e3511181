"""Data access layer for assignments, payouts, schedule, and audit trail"""

from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from settlement_gateway.domain.exceptions import AssignmentConflictError, PayoutNotFoundError
from settlement_gateway.domain.models import MachineAssignment, PayoutComputation, PayoutStatus
from settlement_gateway.domain.payouts import normalize_percent
from settlement_gateway.domain.state_machine import assert_terminal_invariant, assert_transition
from settlement_gateway.infrastructure.database import models
from settlement_gateway.utils.date_utils import as_utc, utcnow


class BeneficiaryRepository:
    """Repository for payees and their destination sub-ledgers"""

    def __init__(self, db: Session):
        self.db = db

    def upsert(
        self,
        beneficiary_id: str,
        name: Optional[str] = None,
        virtual_account: Optional[str] = None,
        onboarded_at: Optional[date] = None,
    ) -> models.Beneficiary:
        row = self.db.get(models.Beneficiary, beneficiary_id)
        if row is None:
            row = models.Beneficiary(beneficiary_id=beneficiary_id)
            self.db.add(row)
        if name is not None:
            row.name = name
        if virtual_account is not None:
            row.virtual_account = virtual_account
        if onboarded_at is not None:
            row.onboarded_at = onboarded_at
        self.db.flush()
        return row

    def get(self, beneficiary_id: str) -> Optional[models.Beneficiary]:
        return self.db.get(models.Beneficiary, beneficiary_id)


class AssignmentRepository:
    """Repository for machine assignments"""

    def __init__(self, db: Session):
        self.db = db

    def assign(
        self,
        machine_id: str,
        beneficiary_id: str,
        commission_percent: Decimal,
        created_by: Optional[str] = None,
        replace: bool = False,
    ) -> models.MachineAssignment:
        """
        Link a machine to a beneficiary.

        With replace=True an existing active assignment is closed and a new
        row inserted; the old row is never edited otherwise.
        """
        percent = normalize_percent(commission_percent)
        active = self._active_for_machine(machine_id)
        if active is not None:
            if not replace:
                raise AssignmentConflictError(f"Machine {machine_id} is already assigned to a beneficiary")
            active.unassigned_at = utcnow()

        row = models.MachineAssignment(
            machine_id=machine_id,
            beneficiary_id=beneficiary_id,
            commission_percent=percent,
            assigned_at=utcnow(),
            created_by=created_by,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def unassign(self, assignment_id: int) -> Optional[models.MachineAssignment]:
        row = self.db.get(models.MachineAssignment, assignment_id)
        if row is None or row.unassigned_at is not None:
            return None
        row.unassigned_at = utcnow()
        self.db.flush()
        return row

    def list_for_period(self, beneficiary_id: str, period_start: date) -> List[MachineAssignment]:
        """Active assignments plus those superseded on or after period_start"""
        since = datetime.combine(period_start, time.min, tzinfo=timezone.utc)
        rows = (
            self.db.query(models.MachineAssignment)
            .filter(
                models.MachineAssignment.beneficiary_id == beneficiary_id,
                or_(
                    models.MachineAssignment.unassigned_at.is_(None),
                    models.MachineAssignment.unassigned_at >= since,
                ),
            )
            .order_by(models.MachineAssignment.machine_id, models.MachineAssignment.assigned_at)
            .all()
        )
        return [
            MachineAssignment(
                id=row.id,
                machine_id=row.machine_id,
                beneficiary_id=row.beneficiary_id,
                commission_percent=Decimal(str(row.commission_percent)),
                assigned_at=as_utc(row.assigned_at),
                unassigned_at=as_utc(row.unassigned_at),
            )
            for row in rows
        ]

    def list_rows(self, beneficiary_id: Optional[str] = None, active_only: bool = True) -> List[models.MachineAssignment]:
        query = self.db.query(models.MachineAssignment)
        if beneficiary_id:
            query = query.filter(models.MachineAssignment.beneficiary_id == beneficiary_id)
        if active_only:
            query = query.filter(models.MachineAssignment.unassigned_at.is_(None))
        return query.order_by(models.MachineAssignment.assigned_at.desc()).all()

    def beneficiaries_with_active(self) -> List[str]:
        rows = (
            self.db.query(models.MachineAssignment.beneficiary_id)
            .filter(models.MachineAssignment.unassigned_at.is_(None))
            .distinct()
            .order_by(models.MachineAssignment.beneficiary_id)
            .all()
        )
        return [row[0] for row in rows]

    def earliest_assigned_on(self, beneficiary_id: str) -> Optional[date]:
        value = (
            self.db.query(func.min(models.MachineAssignment.assigned_at))
            .filter(models.MachineAssignment.beneficiary_id == beneficiary_id)
            .scalar()
        )
        if value is None:
            return None
        return value.date() if isinstance(value, datetime) else value

    def _active_for_machine(self, machine_id: str) -> Optional[models.MachineAssignment]:
        return (
            self.db.query(models.MachineAssignment)
            .filter(
                models.MachineAssignment.machine_id == machine_id,
                models.MachineAssignment.unassigned_at.is_(None),
            )
            .first()
        )


class PayoutRepository:
    """Repository for the append-only payout ledger"""

    def __init__(self, db: Session):
        self.db = db

    def create_pending(
        self,
        computation: PayoutComputation,
        idempotency_key: str,
        created_by: Optional[str] = None,
    ) -> models.Payout:
        """Persist a pending payout with its per-machine lines"""
        payout = models.Payout(
            beneficiary_id=computation.beneficiary_id,
            period_start=computation.period_start,
            period_end=computation.period_end,
            total_sales=computation.total_sales,
            commission_amount=computation.total_commission,
            payout_amount=computation.payout_amount,
            status=PayoutStatus.PENDING.value,
            idempotency_key=idempotency_key,
            created_by=created_by,
            created_at=utcnow(),
        )
        self.db.add(payout)
        self.db.flush()  # Get ID without committing

        for line in computation.lines:
            self.db.add(
                models.PayoutLine(
                    payout_id=payout.id,
                    machine_id=line.machine_id,
                    sales_amount=line.sales_amount,
                    commission_percent=line.commission_percent,
                    commission_amount=line.commission_amount,
                    net_amount=line.net_amount,
                )
            )
        self.db.flush()
        return payout

    def get(self, payout_id: int) -> models.Payout:
        payout = self.db.get(models.Payout, payout_id)
        if payout is None:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return payout

    def transition(
        self,
        payout: models.Payout,
        new_status: PayoutStatus,
        external_reference: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> models.Payout:
        """Move a payout along pending -> processing -> completed | failed"""
        assert_transition(PayoutStatus(payout.status), new_status)
        assert_terminal_invariant(new_status, external_reference or payout.external_reference, error_message)

        payout.status = new_status.value
        if external_reference:
            payout.external_reference = external_reference
        if error_message:
            payout.error_message = error_message
        if new_status == PayoutStatus.COMPLETED:
            payout.executed_at = utcnow()
        self.db.flush()
        return payout

    def note_error(self, payout: models.Payout, error_message: str) -> models.Payout:
        """Record an error on a payout whose remote outcome is still unknown"""
        payout.error_message = error_message
        self.db.flush()
        return payout

    def last_completed_end(self, beneficiary_id: str) -> Optional[date]:
        return (
            self.db.query(func.max(models.Payout.period_end))
            .filter(
                models.Payout.beneficiary_id == beneficiary_id,
                models.Payout.status == PayoutStatus.COMPLETED.value,
            )
            .scalar()
        )

    def find_open(self, beneficiary_id: str) -> Optional[models.Payout]:
        """Pending or processing payout for a beneficiary, if any"""
        return (
            self.db.query(models.Payout)
            .filter(
                models.Payout.beneficiary_id == beneficiary_id,
                models.Payout.status.in_([PayoutStatus.PENDING.value, PayoutStatus.PROCESSING.value]),
            )
            .order_by(models.Payout.id.desc())
            .first()
        )

    def list_history(
        self,
        status: Optional[str] = None,
        beneficiary_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 200,
    ) -> List[models.Payout]:
        query = self.db.query(models.Payout)
        if status:
            query = query.filter(models.Payout.status == status)
        if beneficiary_id:
            query = query.filter(models.Payout.beneficiary_id == beneficiary_id)
        if date_from:
            query = query.filter(models.Payout.period_start >= date_from)
        if date_to:
            query = query.filter(models.Payout.period_end <= date_to)
        return query.order_by(models.Payout.id.desc()).limit(limit).all()


class ScheduleRepository:
    """Repository for the singleton payout schedule"""

    def __init__(self, db: Session):
        self.db = db

    def get_or_create(self, default_cron: str) -> models.PayoutSchedule:
        schedule = self.db.query(models.PayoutSchedule).order_by(models.PayoutSchedule.id).first()
        if schedule is None:
            schedule = models.PayoutSchedule(cron_expression=default_cron, is_enabled=False, updated_at=utcnow())
            self.db.add(schedule)
            self.db.flush()
        return schedule

    def update(
        self,
        schedule: models.PayoutSchedule,
        cron_expression: Optional[str] = None,
        is_enabled: Optional[bool] = None,
        updated_by: Optional[str] = None,
    ) -> models.PayoutSchedule:
        if cron_expression is not None:
            schedule.cron_expression = cron_expression
        if is_enabled is not None:
            schedule.is_enabled = is_enabled
        schedule.updated_at = utcnow()
        schedule.updated_by = updated_by
        self.db.flush()
        return schedule

    def mark_run(self, schedule: models.PayoutSchedule, at: datetime) -> models.PayoutSchedule:
        schedule.last_run_at = at
        self.db.flush()
        return schedule


class AuditRepository:
    """Append-only audit trail"""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> models.AuditEvent:
        event = models.AuditEvent(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
            user_id=user_id,
            created_at=utcnow(),
        )
        self.db.add(event)
        self.db.flush()
        return event
