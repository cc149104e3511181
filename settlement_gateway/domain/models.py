"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class Layer(str, Enum):
    """Deployment layer with its own signing credential and data"""

    SANDBOX = "sandbox"
    LIVE = "live"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Credential:
    """Signing credential for one layer. Never mutated, only replaced."""

    layer: Layer
    private_key: str  # PEM
    signer_id: str
    key_fingerprint: str


@dataclass(frozen=True)
class Signature:
    """Signed request body plus the headers the platform uses to verify it"""

    body: bytes
    signature: str
    signer_id: str
    key_fingerprint: str
    timestamp: str
    request_id: str

    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "sign-data": self.signature,
            "sign-thumbprint": self.key_fingerprint,
            "sign-system": self.signer_id,
        }


@dataclass(frozen=True)
class CacheEntry:
    """Cached result of a read call"""

    cache_key: str
    payload: Any
    cached_at: datetime
    ttl: float
    next_allowed_at: Optional[datetime] = None

    @property
    def expires_at(self) -> datetime:
        return self.cached_at + timedelta(seconds=self.ttl)


@dataclass
class CallOptions:
    """Per-call gateway options"""

    force: bool = False


@dataclass
class GatewayResult:
    """Successful gateway call with cache metadata"""

    result: Any
    cached: bool
    next_allowed_at: Optional[datetime] = None
    cache_age_seconds: Optional[int] = None

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "error": None,
            "_cache": {
                "cached": self.cached,
                "next_allowed_at": self.next_allowed_at.isoformat() if self.next_allowed_at else None,
                "cache_age_seconds": self.cache_age_seconds,
            },
        }


@dataclass
class MachineAssignment:
    """Link between a vending machine and a beneficiary; unassigned_at is set once superseded"""

    id: int
    machine_id: str
    beneficiary_id: str
    commission_percent: Decimal
    assigned_at: datetime
    unassigned_at: Optional[datetime] = None


@dataclass
class PayoutLine:
    """Per-machine contribution to a payout"""

    machine_id: str
    sales_amount: Decimal
    commission_percent: Decimal
    commission_amount: Decimal
    net_amount: Decimal


@dataclass
class PayoutComputation:
    """Output of payout calculation - not persisted until committed"""

    beneficiary_id: str
    period_start: date
    period_end: date
    lines: List[PayoutLine] = field(default_factory=list)
    total_sales: Decimal = Decimal("0.00")
    total_commission: Decimal = Decimal("0.00")
    payout_amount: Decimal = Decimal("0.00")


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"  # processing, remote effect must be reconciled
    SKIPPED = "skipped"  # nothing to pay
    REJECTED = "rejected"  # another run for this beneficiary is in flight
    ERROR = "error"  # could not calculate (terminal data unavailable)


@dataclass
class PayoutOutcome:
    """Result of settling one beneficiary"""

    beneficiary_id: str
    kind: OutcomeKind
    payout_id: Optional[int] = None
    payout_amount: Decimal = Decimal("0.00")
    external_reference: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchSummary:
    """Result of a scheduled run across all beneficiaries"""

    created: int
    total: int
    outcomes: List[PayoutOutcome] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.kind == OutcomeKind.SKIPPED)

    @property
    def failed(self) -> int:
        return sum(
            1 for o in self.outcomes
            if o.kind in (OutcomeKind.FAILED, OutcomeKind.UNKNOWN, OutcomeKind.ERROR, OutcomeKind.REJECTED)
        )
