"""Single entry point for every financial platform call"""

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from settlement_gateway.config import settings
from settlement_gateway.domain.exceptions import GatewayError, RateLimitDeferred, ValidationError
from settlement_gateway.domain.models import CallOptions, GatewayResult, Layer
from settlement_gateway.infrastructure.cache import ResponseCache, make_cache_key
from settlement_gateway.infrastructure.clients.platform import PlatformTransport, classify_response
from settlement_gateway.infrastructure.observability.logging import log_gateway_call
from settlement_gateway.infrastructure.observability.metrics import (
    cache_hit_counter,
    gateway_call_counter,
    gateway_latency_histogram,
)
from settlement_gateway.infrastructure.signing import RequestSigner
from settlement_gateway.utils.date_utils import seconds_between


class MethodClass(str, Enum):
    READ_LIMITED = "read_limited"  # list/read endpoints, remote allows one identical call per interval
    READ_LOOKUP = "read_lookup"  # lookup-by-id, never cached
    MUTATING = "mutating"


METHOD_TABLE: Dict[str, MethodClass] = {
    # Beneficiaries
    "list_beneficiary": MethodClass.READ_LIMITED,
    "get_beneficiary": MethodClass.READ_LIMITED,
    "create_beneficiary_ul": MethodClass.MUTATING,
    "create_beneficiary_ip": MethodClass.MUTATING,
    "create_beneficiary_fl": MethodClass.MUTATING,
    "activate_beneficiary": MethodClass.MUTATING,
    "deactivate_beneficiary": MethodClass.MUTATING,
    # Virtual accounts (sub-ledgers)
    "list_virtual_account": MethodClass.READ_LIMITED,
    "get_virtual_account": MethodClass.READ_LIMITED,
    "list_virtual_transaction": MethodClass.READ_LIMITED,
    "get_virtual_accounts_transfer": MethodClass.READ_LOOKUP,
    "create_virtual_account": MethodClass.MUTATING,
    "refund_virtual_account": MethodClass.MUTATING,
    "transfer_between_virtual_accounts": MethodClass.MUTATING,
    "transfer_between_virtual_accounts_v2": MethodClass.MUTATING,
    # Deals
    "get_deal": MethodClass.READ_LOOKUP,
    "list_deals": MethodClass.READ_LOOKUP,
    "create_deal": MethodClass.MUTATING,
    "update_deal": MethodClass.MUTATING,
    "execute_deal": MethodClass.MUTATING,
    "rejected_deal": MethodClass.MUTATING,
    "cancel_deal_with_executed_recipients": MethodClass.MUTATING,
    # Payments
    "list_payments_v2": MethodClass.READ_LIMITED,
    "get_payment": MethodClass.READ_LIMITED,
    "identification_payment": MethodClass.MUTATING,
    "refund_payment": MethodClass.MUTATING,
    # SBP and utilities
    "list_bank_sbp": MethodClass.READ_LOOKUP,
    "generate_sbp_qrcode": MethodClass.MUTATING,
    "echo": MethodClass.READ_LOOKUP,
}

# Read methods whose cached payloads a successful mutation makes stale
INVALIDATES: Dict[str, List[str]] = {
    "create_virtual_account": ["list_virtual_account"],
    "refund_virtual_account": ["get_virtual_account", "list_virtual_transaction"],
    "transfer_between_virtual_accounts": ["get_virtual_account", "list_virtual_transaction"],
    "transfer_between_virtual_accounts_v2": ["get_virtual_account", "list_virtual_transaction"],
    "create_beneficiary_ul": ["list_beneficiary"],
    "create_beneficiary_ip": ["list_beneficiary"],
    "create_beneficiary_fl": ["list_beneficiary"],
    "activate_beneficiary": ["list_beneficiary", "get_beneficiary"],
    "deactivate_beneficiary": ["list_beneficiary", "get_beneficiary"],
    "identification_payment": ["list_payments_v2", "get_payment"],
    "refund_payment": ["list_payments_v2", "get_payment"],
}


@dataclass(frozen=True)
class MethodPolicy:
    ttl: float
    min_interval: float


def classify_method(method: str) -> MethodClass:
    """
    Fixed lookup; never inferred from params.

    Raises:
        ValidationError: Method is not in the allow-list
    """
    try:
        return METHOD_TABLE[method]
    except KeyError:
        raise ValidationError(f'Method "{method}" is not allowed') from None


class Gateway:
    """
    Composes signer, cache, and transport.

    Flow:
    1. Classify method (read or mutating)
    2. Serve live cached reads unless forced
    3. Refuse reads whose admission window is still closed
    4. Sign, dispatch, classify the outcome
    5. Record the next allowed call time for the key, success or failure
    """

    def __init__(
        self,
        signer: RequestSigner,
        transport: PlatformTransport,
        cache: ResponseCache,
        policies: Dict[MethodClass, MethodPolicy] | None = None,
    ):
        self.signer = signer
        self.transport = transport
        self.cache = cache
        self.policies = policies or {
            MethodClass.READ_LIMITED: MethodPolicy(
                ttl=settings.read_cache_ttl_seconds,
                min_interval=settings.read_min_interval_seconds,
            ),
            MethodClass.READ_LOOKUP: MethodPolicy(ttl=0.0, min_interval=0.0),
            MethodClass.MUTATING: MethodPolicy(ttl=0.0, min_interval=0.0),
        }

    async def call(
        self,
        layer: Layer,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        options: Optional[CallOptions] = None,
    ) -> GatewayResult:
        """
        Perform one platform call.

        Raises:
            ValidationError: Unknown layer or method, or params not an object
            RateLimitDeferred: Read admission window not open yet
            SigningError: No usable credential for the layer
            DuplicateSubmissionError: Remote already has this mutating request
            GatewayTimeoutError: Abandoned locally; remote effect unknown
            RemoteError: Any other upstream failure (message verbatim)
        """
        options = options or CallOptions()
        params = {} if params is None else params
        if not isinstance(params, dict):
            raise ValidationError("params must be a JSON object")
        try:
            layer = Layer(layer)
        except ValueError:
            raise ValidationError(f'Invalid layer "{layer}"') from None

        method_class = classify_method(method)
        policy = self.policies[method_class]
        is_read = method_class != MethodClass.MUTATING
        cache_key = make_cache_key(layer, method, params)
        request_id = str(uuid.uuid4())

        if is_read:
            admission = self.cache.admission(cache_key)
            if admission.entry is not None and not options.force:
                cache_hit_counter.inc()
                gateway_call_counter.labels(method=method, outcome="cached").inc()
                log_gateway_call(request_id, layer.value, method, "cached", 0.0)
                return GatewayResult(
                    result=admission.entry.payload,
                    cached=True,
                    next_allowed_at=admission.next_allowed_at,
                    cache_age_seconds=seconds_between(admission.entry.cached_at, self.cache.now()),
                )
            if not admission.allowed:
                stale = self.cache.peek(cache_key)
                gateway_call_counter.labels(method=method, outcome="deferred").inc()
                raise RateLimitDeferred(
                    f"{method} may not be called again before {admission.next_allowed_at.isoformat()}",
                    next_allowed_at=admission.next_allowed_at,
                    stale_payload=stale.payload if stale else None,
                )

        start_time = time.time()
        try:
            signed = self.signer.sign(layer, method, params, request_id=request_id)
            with gateway_latency_histogram.labels(method=method).time():
                response = await self.transport.send(layer, signed)
            result = classify_response(response)
        except GatewayError as e:
            e.next_allowed_at = self.cache.mark_called(cache_key, policy.min_interval)
            duration_ms = (time.time() - start_time) * 1000
            gateway_call_counter.labels(method=method, outcome=e.kind).inc()
            log_gateway_call(request_id, layer.value, method, e.kind, duration_ms, error_code=e.code)
            raise

        next_allowed_at = self.cache.mark_called(cache_key, policy.min_interval)
        duration_ms = (time.time() - start_time) * 1000
        gateway_call_counter.labels(method=method, outcome="ok").inc()
        log_gateway_call(request_id, layer.value, method, "ok", duration_ms)

        if is_read:
            self.cache.put(cache_key, result, policy.ttl)
        else:
            for stale_method in INVALIDATES.get(method, []):
                self.cache.invalidate_method(layer, stale_method)

        return GatewayResult(
            result=result,
            cached=False,
            next_allowed_at=next_allowed_at if policy.min_interval > 0 else None,
            cache_age_seconds=0 if is_read and policy.ttl > 0 else None,
        )


def envelope_for_error(error: GatewayError) -> Dict[str, Any]:
    """Render a classified error in the same envelope successful calls use"""
    stale = getattr(error, "stale_payload", None)
    return {
        "result": stale,
        "error": {
            "kind": error.kind,
            "code": error.code,
            "message": error.message,
        },
        "_cache": {
            "cached": stale is not None,
            "next_allowed_at": error.next_allowed_at.isoformat() if error.next_allowed_at else None,
            "cache_age_seconds": None,
        },
    }
