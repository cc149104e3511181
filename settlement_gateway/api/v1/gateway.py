"""POST /v1/gateway/call - signed, rate-limit-aware platform calls"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from settlement_gateway.api.dependencies import get_cache, get_gateway, get_request_id
from settlement_gateway.api.errors import gateway_error_response
from settlement_gateway.api.v1.schemas import CacheStatsResponse, GatewayCallRequest, MethodInfo, MethodsResponse
from settlement_gateway.domain.exceptions import GatewayError
from settlement_gateway.domain.models import CallOptions
from settlement_gateway.infrastructure.cache import ResponseCache
from settlement_gateway.infrastructure.gateway import METHOD_TABLE, Gateway

router = APIRouter()


@router.post("/gateway/call")
async def call_platform(
    request_body: GatewayCallRequest,
    request: Request,
    gateway: Gateway = Depends(get_gateway),
):
    """
    Forward one call to the financial platform.

    Success and failure share the envelope {result, error, _cache}; the
    HTTP status reflects the error kind.
    """
    request_id = get_request_id(request)
    try:
        result = await gateway.call(
            request_body.layer,
            request_body.method,
            request_body.params,
            CallOptions(force=request_body.force),
        )
    except GatewayError as e:
        logging.warning(
            f"Gateway call failed: {e.kind}",
            extra={"request_id": request_id, "method": request_body.method, "error_code": e.code},
        )
        return gateway_error_response(e)

    return JSONResponse(content=result.to_envelope())


@router.get("/gateway/methods", response_model=MethodsResponse)
def list_methods(gateway: Gateway = Depends(get_gateway)):
    """Allow-listed methods with their cache policy"""
    methods = []
    for method, method_class in sorted(METHOD_TABLE.items()):
        policy = gateway.policies[method_class]
        methods.append(
            MethodInfo(
                method=method,
                method_class=method_class.value,
                ttl_seconds=policy.ttl,
                min_interval_seconds=policy.min_interval,
            )
        )
    return MethodsResponse(methods=methods)


@router.get("/gateway/cache/stats", response_model=CacheStatsResponse)
def cache_stats(cache: ResponseCache = Depends(get_cache)):
    return CacheStatsResponse(**cache.stats())
