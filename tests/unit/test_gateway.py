"""Unit tests for the gateway: caching, admission, error classification"""

import httpx
import pytest

from settlement_gateway.domain.exceptions import (
    DuplicateSubmissionError,
    GatewayTimeoutError,
    RateLimitDeferred,
    RemoteError,
    SigningError,
    TransferNotFoundError,
    ValidationError,
)
from settlement_gateway.domain.models import CallOptions, Layer
from settlement_gateway.infrastructure.clients.platform import PlatformTransport
from settlement_gateway.infrastructure.gateway import (
    METHOD_TABLE,
    Gateway,
    MethodClass,
    MethodPolicy,
    classify_method,
    envelope_for_error,
)
from settlement_gateway.infrastructure.signing import RequestSigner


async def test_second_read_is_served_from_cache(gateway: Gateway, platform):
    """Identical read within the TTL issues no second request"""
    platform.results["list_virtual_account"] = {"virtual_accounts": ["va-1"]}

    first = await gateway.call(Layer.SANDBOX, "list_virtual_account", {"page": 1})
    second = await gateway.call(Layer.SANDBOX, "list_virtual_account", {"page": 1})

    assert first.cached is False
    assert second.cached is True
    assert second.result == {"virtual_accounts": ["va-1"]}
    assert second.next_allowed_at == first.next_allowed_at
    assert platform.count("list_virtual_account") == 1


async def test_cache_age_grows_with_clock(gateway: Gateway, clock):
    await gateway.call(Layer.SANDBOX, "list_beneficiary", {})
    clock.advance(42)

    result = await gateway.call(Layer.SANDBOX, "list_beneficiary", {})
    assert result.cache_age_seconds == 42


async def test_forced_read_inside_window_is_deferred(gateway: Gateway, platform):
    """force skips the cache but not the remote rate limit"""
    await gateway.call(Layer.SANDBOX, "list_virtual_account", {})

    with pytest.raises(RateLimitDeferred) as exc_info:
        await gateway.call(Layer.SANDBOX, "list_virtual_account", {}, CallOptions(force=True))

    assert exc_info.value.next_allowed_at is not None
    assert exc_info.value.stale_payload == {"method": "list_virtual_account", "params": {}}
    assert platform.count() == 1


async def test_forced_read_after_window_hits_remote(gateway: Gateway, platform, clock):
    await gateway.call(Layer.SANDBOX, "list_virtual_account", {})
    clock.advance(300)

    result = await gateway.call(Layer.SANDBOX, "list_virtual_account", {}, CallOptions(force=True))
    assert result.cached is False
    assert platform.count() == 2


async def test_expired_entry_with_closed_window_is_deferred(credentials, platform, cache, clock):
    """Shorter TTL than interval: payload expired, admission still closed"""
    gateway = Gateway(
        RequestSigner(credentials),
        PlatformTransport(endpoints={Layer.SANDBOX: "http://p/jsonrpc"}, transport=httpx.MockTransport(platform)),
        cache,
        policies={
            MethodClass.READ_LIMITED: MethodPolicy(ttl=60, min_interval=300),
            MethodClass.READ_LOOKUP: MethodPolicy(ttl=0, min_interval=0),
            MethodClass.MUTATING: MethodPolicy(ttl=0, min_interval=0),
        },
    )
    await gateway.call(Layer.SANDBOX, "get_payment", {"id": "p1"})
    clock.advance(120)

    with pytest.raises(RateLimitDeferred):
        await gateway.call(Layer.SANDBOX, "get_payment", {"id": "p1"})
    assert platform.count() == 1


async def test_lookup_reads_are_never_cached(gateway: Gateway, platform):
    await gateway.call(Layer.SANDBOX, "get_deal", {"deal_id": "d1"})
    result = await gateway.call(Layer.SANDBOX, "get_deal", {"deal_id": "d1"})

    assert result.cached is False
    assert platform.count("get_deal") == 2


async def test_mutating_calls_always_dispatch(gateway: Gateway, platform):
    params = {"from_virtual_account": "a", "to_virtual_account": "b", "amount": 1.0, "ext_key": "k1"}
    platform.results["refund_virtual_account"] = {"ok": True}

    await gateway.call(Layer.SANDBOX, "refund_virtual_account", params)
    result = await gateway.call(Layer.SANDBOX, "refund_virtual_account", params)

    assert result.cached is False
    assert platform.count("refund_virtual_account") == 2


async def test_mutation_invalidates_dependent_reads(gateway: Gateway, platform, cache):
    await gateway.call(Layer.SANDBOX, "get_virtual_account", {"virtual_account": "va-1"})
    await gateway.call(Layer.SANDBOX, "list_beneficiary", {})

    await gateway.call(
        Layer.SANDBOX,
        "transfer_between_virtual_accounts_v2",
        {"from_virtual_account": "va-1", "to_virtual_account": "va-2", "amount": 5.0, "ext_key": "k"},
    )

    # Balance entry dropped, unrelated list kept
    assert cache.stats()["size"] == 1


async def test_duplicate_signal_is_classified_by_type(gateway: Gateway, platform):
    """Any message text: the type is what callers branch on"""
    platform.errors["execute_deal"] = (4909, "Запрос уже обрабатывается")

    with pytest.raises(DuplicateSubmissionError) as exc_info:
        await gateway.call(Layer.SANDBOX, "execute_deal", {"deal_id": "d1"})

    assert exc_info.value.code == 4909
    assert exc_info.value.message == "Запрос уже обрабатывается"


async def test_remote_error_message_passes_through(gateway: Gateway, platform):
    platform.errors["create_deal"] = (4002, "Deal amount mismatch")

    with pytest.raises(RemoteError) as exc_info:
        await gateway.call(Layer.SANDBOX, "create_deal", {"amount": 10})

    assert exc_info.value.message == "Deal amount mismatch"
    assert exc_info.value.code == 4002
    assert not isinstance(exc_info.value, DuplicateSubmissionError)


async def test_missing_transfer_is_typed_not_found(gateway: Gateway, platform):
    with pytest.raises(TransferNotFoundError) as exc_info:
        await gateway.call(Layer.SANDBOX, "get_virtual_accounts_transfer", {"ext_key": "never-sent"})

    assert isinstance(exc_info.value, RemoteError)
    assert exc_info.value.code == 4404
    assert exc_info.value.message == "Transfer not found"


async def test_non_2xx_status_is_remote_error(gateway: Gateway, platform):
    platform.http_errors["echo"] = (500, "upstream exploded")

    with pytest.raises(RemoteError) as exc_info:
        await gateway.call(Layer.SANDBOX, "echo", {})

    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "upstream exploded"


async def test_timeout_is_classified(gateway: Gateway, platform):
    platform.timeouts.add("create_virtual_account")

    with pytest.raises(GatewayTimeoutError):
        await gateway.call(Layer.SANDBOX, "create_virtual_account", {"beneficiary_id": "b1"})


async def test_errors_carry_next_allowed_at(gateway: Gateway, platform):
    platform.errors["list_payments_v2"] = (5000, "Temporary failure")

    with pytest.raises(RemoteError) as exc_info:
        await gateway.call(Layer.SANDBOX, "list_payments_v2", {})

    assert exc_info.value.next_allowed_at is not None
    # A failed read still consumes the remote window
    with pytest.raises(RateLimitDeferred):
        await gateway.call(Layer.SANDBOX, "list_payments_v2", {})
    assert platform.count() == 1


async def test_unknown_method_rejected_before_dispatch(gateway: Gateway, platform):
    with pytest.raises(ValidationError):
        await gateway.call(Layer.SANDBOX, "drop_all_accounts", {})
    assert platform.count() == 0


async def test_invalid_params_and_layer_rejected(gateway: Gateway, platform):
    with pytest.raises(ValidationError):
        await gateway.call(Layer.SANDBOX, "echo", ["not", "an", "object"])
    with pytest.raises(ValidationError):
        await gateway.call("staging", "echo", {})
    assert platform.count() == 0


async def test_missing_credential_is_signing_error(gateway: Gateway, platform):
    with pytest.raises(SigningError):
        await gateway.call(Layer.LIVE, "echo", {})
    assert platform.count() == 0


async def test_requests_are_signed_and_sent_to_layer_endpoint(gateway: Gateway, platform):
    await gateway.call(Layer.SANDBOX, "echo", {"value": 1})

    request = platform.requests[0]
    assert str(request.url) == "http://platform.test/sandbox/jsonrpc"
    assert request.headers["sign-system"] == "test-signer"
    assert request.headers["sign-data"]


def test_classify_method_is_a_fixed_lookup():
    assert classify_method("list_virtual_account") == MethodClass.READ_LIMITED
    assert classify_method("get_virtual_accounts_transfer") == MethodClass.READ_LOOKUP
    assert classify_method("transfer_between_virtual_accounts_v2") == MethodClass.MUTATING
    assert set(METHOD_TABLE.values()) == set(MethodClass)


async def test_result_and_error_envelopes_share_shape(gateway: Gateway, platform):
    ok = (await gateway.call(Layer.SANDBOX, "echo", {})).to_envelope()
    platform.errors["get_deal"] = (4404, "Deal not found")
    with pytest.raises(RemoteError) as exc_info:
        await gateway.call(Layer.SANDBOX, "get_deal", {"deal_id": "x"})
    failed = envelope_for_error(exc_info.value)

    assert set(ok) == set(failed) == {"result", "error", "_cache"}
    assert set(ok["_cache"]) == set(failed["_cache"])
    assert ok["error"] is None
    assert failed["error"] == {"kind": "remote_error", "code": 4404, "message": "Deal not found"}
