"""Mapping of domain errors to HTTP status codes"""

import math
from datetime import datetime
from typing import Dict, Optional, Type

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from settlement_gateway.domain.exceptions import (
    DuplicateSubmissionError,
    GatewayError,
    GatewayTimeoutError,
    RateLimitDeferred,
    RemoteError,
    SigningError,
    TransferNotFoundError,
    ValidationError,
)
from settlement_gateway.infrastructure.gateway import envelope_for_error
from settlement_gateway.utils.date_utils import utcnow

GATEWAY_STATUS: Dict[Type[GatewayError], int] = {
    ValidationError: 400,
    DuplicateSubmissionError: 409,
    RateLimitDeferred: 429,
    RemoteError: 502,
    TransferNotFoundError: 502,
    SigningError: 503,
    GatewayTimeoutError: 504,
}


def status_for(error: GatewayError) -> int:
    return GATEWAY_STATUS.get(type(error), 502)


def retry_after_seconds(next_allowed_at: datetime, now: Optional[datetime] = None) -> int:
    """Delta-seconds value for a Retry-After header, rounded up"""
    remaining = (next_allowed_at - (now or utcnow())).total_seconds()
    return max(0, math.ceil(remaining))


def gateway_error_response(error: GatewayError) -> JSONResponse:
    """Classified gateway error rendered as the standard envelope"""
    headers = {}
    if isinstance(error, RateLimitDeferred):
        headers["Retry-After"] = str(retry_after_seconds(error.next_allowed_at))
    return JSONResponse(status_code=status_for(error), content=envelope_for_error(error), headers=headers)


def gateway_http_exception(error: GatewayError) -> HTTPException:
    return HTTPException(status_code=status_for(error), detail={"kind": error.kind, "message": error.message})
