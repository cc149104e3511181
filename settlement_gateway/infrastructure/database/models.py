"""SQLAlchemy ORM models for assignments, payouts, schedule, and audit trail"""

from sqlalchemy import Column, String, Boolean, DateTime, Date, Integer, ForeignKey, Text, Numeric, JSON, Index
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

Money = Numeric(14, 2, asdecimal=True)


class Beneficiary(Base):
    """Payee with its destination sub-ledger"""

    __tablename__ = "beneficiary"

    beneficiary_id = Column(Text, primary_key=True)
    name = Column(Text, nullable=True)
    virtual_account = Column(Text, nullable=True)
    onboarded_at = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MachineAssignment(Base):
    """Machine-to-beneficiary link; superseded rows keep unassigned_at"""

    __tablename__ = "machine_assignment"
    __table_args__ = (Index("ix_machine_assignment_active", "machine_id", "unassigned_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(Text, nullable=False, index=True)
    beneficiary_id = Column(Text, nullable=False, index=True)
    commission_percent = Column(Numeric(4, 1, asdecimal=True), nullable=False)
    assigned_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    unassigned_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(Text, nullable=True)


class Payout(Base):
    """Append-only payout ledger row"""

    __tablename__ = "beneficiary_payout"

    id = Column(Integer, primary_key=True, autoincrement=True)
    beneficiary_id = Column(Text, nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    total_sales = Column(Money, nullable=False)
    commission_amount = Column(Money, nullable=False)
    payout_amount = Column(Money, nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    idempotency_key = Column(Text, nullable=False)
    external_reference = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    executed_at = Column(DateTime(timezone=True), nullable=True)

    lines = relationship("PayoutLine", back_populates="payout", cascade="all, delete-orphan")


class PayoutLine(Base):
    """Per-machine breakdown with the commission rate frozen at calculation time"""

    __tablename__ = "payout_line"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payout_id = Column(Integer, ForeignKey("beneficiary_payout.id", ondelete="CASCADE"), nullable=False)
    machine_id = Column(Text, nullable=False)
    sales_amount = Column(Money, nullable=False)
    commission_percent = Column(Numeric(4, 1, asdecimal=True), nullable=False)
    commission_amount = Column(Money, nullable=False)
    net_amount = Column(Money, nullable=False)

    payout = relationship("Payout", back_populates="lines")


class PayoutSchedule(Base):
    """Singleton cron schedule for automatic payouts"""

    __tablename__ = "payout_schedule"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cron_expression = Column(Text, nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=False)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_by = Column(Text, nullable=True)


class AuditEvent(Base):
    """Operator and engine actions"""

    __tablename__ = "audit_event"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(Text, nullable=False)
    entity_type = Column(Text, nullable=False)
    entity_id = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    user_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
