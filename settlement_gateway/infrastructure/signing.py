"""Request signing for the financial platform (RSA-SHA256 over the request body)"""

import base64
import json
import uuid
from typing import Any, Dict

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from settlement_gateway.domain.exceptions import CredentialError, SigningError
from settlement_gateway.domain.models import Layer, Signature
from settlement_gateway.infrastructure.credentials import CredentialStore, load_rsa_private_key
from settlement_gateway.utils.date_utils import utcnow


def canonical_json_bytes(payload: Any) -> bytes:
    return json.dumps(
        payload,
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def build_request(method: str, params: Dict[str, Any], timestamp: str, request_id: str) -> Dict[str, Any]:
    return {
        "id": request_id,
        "jsonrpc": "2.0",
        "method": method,
        "params": params,
        "timestamp": timestamp,
    }


class RequestSigner:
    """Signs outbound calls with the active credential of a layer"""

    def __init__(self, credentials: CredentialStore):
        self.credentials = credentials

    def sign(
        self,
        layer: Layer,
        method: str,
        params: Dict[str, Any],
        *,
        timestamp: str | None = None,
        request_id: str | None = None,
    ) -> Signature:
        """
        Build the canonical body and sign it.

        The body is the exact byte string sent on the wire, so the platform
        verifies the same bytes that were signed. PKCS#1 v1.5 is deterministic:
        identical inputs give an identical signature.

        Raises:
            SigningError: No credential for the layer, or the key cannot be loaded
        """
        # One snapshot for the whole call; a concurrent save() cannot leak in
        credential = self.credentials.get(layer)
        if credential is None:
            raise SigningError(f"No signing credential configured for layer {Layer(layer).value}")

        try:
            key = load_rsa_private_key(credential.private_key)
        except CredentialError as e:
            raise SigningError(f"Stored key for layer {Layer(layer).value} is invalid: {e}") from e

        timestamp = timestamp or utcnow().isoformat()
        request_id = request_id or str(uuid.uuid4())
        body = canonical_json_bytes(build_request(method, params, timestamp, request_id))

        raw = key.sign(body, padding.PKCS1v15(), hashes.SHA256())
        signature = base64.b64encode(raw).decode("ascii")

        return Signature(
            body=body,
            signature=signature,
            signer_id=credential.signer_id,
            key_fingerprint=credential.key_fingerprint,
            timestamp=timestamp,
            request_id=request_id,
        )
