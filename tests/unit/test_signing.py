"""Unit tests for request signing"""

import base64
import json

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from settlement_gateway.domain.exceptions import SigningError
from settlement_gateway.domain.models import Layer
from settlement_gateway.infrastructure.credentials import CredentialStore
from settlement_gateway.infrastructure.signing import RequestSigner, canonical_json_bytes


def test_canonical_json_sorts_keys_and_is_compact():
    """Key order of the input never changes the bytes"""
    first = canonical_json_bytes({"b": 1, "a": {"y": 2, "x": "é"}})
    second = canonical_json_bytes({"a": {"x": "é", "y": 2}, "b": 1})

    assert first == second
    assert first == '{"a":{"x":"é","y":2},"b":1}'.encode("utf-8")


def test_sign_is_deterministic(credentials: CredentialStore):
    """Same inputs, timestamp and request id give identical body and signature"""
    signer = RequestSigner(credentials)
    kwargs = {"timestamp": "2026-01-15T12:00:00+00:00", "request_id": "req-1"}

    first = signer.sign(Layer.SANDBOX, "list_virtual_account", {"page": 1}, **kwargs)
    second = signer.sign(Layer.SANDBOX, "list_virtual_account", {"page": 1}, **kwargs)

    assert first.body == second.body
    assert first.signature == second.signature


def test_signature_verifies_against_public_key(credentials: CredentialStore, rsa_private_pem: str):
    signed = RequestSigner(credentials).sign(Layer.SANDBOX, "echo", {"value": "ping"})

    key = serialization.load_pem_private_key(rsa_private_pem.encode("utf-8"), password=None)
    # Raises InvalidSignature on mismatch
    key.public_key().verify(base64.b64decode(signed.signature), signed.body, padding.PKCS1v15(), hashes.SHA256())
    assert "\n" not in signed.signature


def test_body_is_jsonrpc_request_with_timestamp(credentials: CredentialStore):
    signed = RequestSigner(credentials).sign(
        Layer.SANDBOX, "echo", {"value": 1}, timestamp="2026-01-15T12:00:00+00:00", request_id="req-9"
    )
    body = json.loads(signed.body)

    assert body == {
        "id": "req-9",
        "jsonrpc": "2.0",
        "method": "echo",
        "params": {"value": 1},
        "timestamp": "2026-01-15T12:00:00+00:00",
    }
    assert signed.request_id == "req-9"


def test_headers_carry_signature_and_signer(credentials: CredentialStore):
    signed = RequestSigner(credentials).sign(Layer.SANDBOX, "echo", {})
    headers = signed.headers()

    assert headers["sign-data"] == signed.signature
    assert headers["sign-thumbprint"] == "thumb-sandbox"
    assert headers["sign-system"] == "test-signer"
    assert headers["Content-Type"] == "application/json"


def test_missing_credential_raises_signing_error(credentials: CredentialStore):
    """Only sandbox is configured in the fixture"""
    with pytest.raises(SigningError):
        RequestSigner(credentials).sign(Layer.LIVE, "echo", {})


def test_credential_replacement_applies_to_next_sign(credentials: CredentialStore, rsa_private_pem: str):
    signer = RequestSigner(credentials)
    before = signer.sign(Layer.SANDBOX, "echo", {})

    credentials.save(Layer.SANDBOX, rsa_private_pem, "rotated-signer", key_fingerprint="thumb-2")
    after = signer.sign(Layer.SANDBOX, "echo", {})

    assert before.signer_id == "test-signer"
    assert after.signer_id == "rotated-signer"
    assert after.key_fingerprint == "thumb-2"
