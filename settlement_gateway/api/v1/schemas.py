"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class GatewayCallRequest(BaseModel):
    """Request body for POST /v1/gateway/call"""

    layer: str = Field(..., description="Credential layer: sandbox or live")
    method: str = Field(..., min_length=1, description="Platform JSON-RPC method")
    params: Any = None
    force: bool = Field(False, description="Bypass a live cache entry")


class MethodInfo(BaseModel):
    method: str
    method_class: str
    ttl_seconds: float
    min_interval_seconds: float


class MethodsResponse(BaseModel):
    methods: List[MethodInfo]


class CacheStatsResponse(BaseModel):
    hits: int
    misses: int
    size: int
    hit_rate: float


class CalculateRequest(BaseModel):
    """Request body for POST /v1/payouts/calculate"""

    beneficiary_id: str = Field(..., min_length=1)
    period_end: Optional[date] = Field(None, description="Inclusive end of the period; defaults to today (UTC)")


class ExecuteRequest(CalculateRequest):
    """Request body for POST /v1/payouts/execute"""

    virtual_account: Optional[str] = Field(None, description="Overrides the beneficiary's virtual account")


class ExecuteScheduledRequest(BaseModel):
    today: Optional[date] = None


class PayoutLineSchema(BaseModel):
    """Per-machine breakdown"""

    model_config = ConfigDict(from_attributes=True)

    machine_id: str
    sales_amount: Decimal
    commission_percent: Decimal
    commission_amount: Decimal
    net_amount: Decimal


class CalculationResponse(BaseModel):
    """Preview of a payout; nothing persisted"""

    beneficiary_id: str
    period_start: date
    period_end: date
    total_sales: Decimal
    total_commission: Decimal
    payout_amount: Decimal
    lines: List[PayoutLineSchema]


class OutcomeSchema(BaseModel):
    beneficiary_id: str
    outcome: str
    payout_id: Optional[int] = None
    payout_amount: Decimal
    external_reference: Optional[str] = None
    error: Optional[str] = None


class BatchSummaryResponse(BaseModel):
    """Response for POST /v1/payouts/execute-scheduled"""

    created: int
    total: int
    skipped: int
    failed: int
    outcomes: List[OutcomeSchema]


class PayoutSchema(BaseModel):
    """Persisted payout with its lines"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    beneficiary_id: str
    period_start: date
    period_end: date
    total_sales: Decimal
    commission_amount: Decimal
    payout_amount: Decimal
    status: str
    idempotency_key: str
    external_reference: Optional[str] = None
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    executed_at: Optional[datetime] = None
    lines: List[PayoutLineSchema] = []


class HistoryResponse(BaseModel):
    """Response for GET /v1/payouts/history"""

    payouts: List[PayoutSchema]


class ScheduleResponse(BaseModel):
    cron_expression: str
    is_enabled: bool
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


class ScheduleUpdateRequest(BaseModel):
    cron_expression: Optional[str] = None
    is_enabled: Optional[bool] = None


class AssignmentRequest(BaseModel):
    """Request body for POST /v1/assignments"""

    machine_id: str = Field(..., min_length=1)
    beneficiary_id: str = Field(..., min_length=1)
    commission_percent: Decimal = Field(..., ge=0, le=100)
    replace: bool = Field(False, description="Close an existing active assignment of the machine")


class AssignmentSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    machine_id: str
    beneficiary_id: str
    commission_percent: Decimal
    assigned_at: datetime
    unassigned_at: Optional[datetime] = None
    created_by: Optional[str] = None


class AssignmentListResponse(BaseModel):
    assignments: List[AssignmentSchema]


class BeneficiaryRequest(BaseModel):
    name: Optional[str] = None
    virtual_account: Optional[str] = None
    onboarded_at: Optional[date] = None


class BeneficiarySchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    beneficiary_id: str
    name: Optional[str] = None
    virtual_account: Optional[str] = None
    onboarded_at: Optional[date] = None


class KeyUploadRequest(BaseModel):
    """Request body for PUT /v1/keys/{layer}"""

    private_key: str = Field(..., min_length=1, description="PEM encoded RSA private key")
    signer_id: str = Field(..., min_length=1, description="Signer system identifier (sign-system)")
    key_fingerprint: Optional[str] = Field(None, description="Institution-issued thumbprint (sign-thumbprint)")


class KeyStatus(BaseModel):
    configured: bool
    signer_id: Optional[str] = None
    key_fingerprint: Optional[str] = None


class KeysResponse(BaseModel):
    layers: Dict[str, KeyStatus]
