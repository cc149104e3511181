"""Financial platform JSON-RPC transport and response classification"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from settlement_gateway.config import settings
from settlement_gateway.domain.exceptions import (
    DuplicateSubmissionError,
    GatewayTimeoutError,
    RemoteError,
    TransferNotFoundError,
)
from settlement_gateway.domain.models import Layer, Signature

# JSON-RPC error code: a request with the same ext_key is already accepted or in process
IDEMPOTENT_REQUEST_IN_PROCESS = 4909
# JSON-RPC error code: no transfer exists under the ext_key
TRANSFER_NOT_FOUND = 4404


@dataclass
class TransportResponse:
    status_code: int
    payload: Optional[Dict[str, Any]]
    text: str


class PlatformTransport:
    """Sends signed bodies to the platform endpoint of a layer"""

    def __init__(
        self,
        endpoints: Dict[Layer, str] | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoints = endpoints or {
            Layer.SANDBOX: settings.platform_sandbox_url,
            Layer.LIVE: settings.platform_live_url,
        }
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    async def send(self, layer: Layer, signed: Signature) -> TransportResponse:
        """
        POST the signed body.

        Raises:
            GatewayTimeoutError: No answer within the fixed timeout
            RemoteError: Connection-level failure
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    self.endpoints[Layer(layer)],
                    content=signed.body,
                    headers=signed.headers(),
                )
            except httpx.TimeoutException as e:
                raise GatewayTimeoutError(
                    f"Platform call abandoned after {self.timeout}s; remote effect unknown"
                ) from e
            except httpx.RequestError as e:
                raise RemoteError(f"Platform unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = None
        return TransportResponse(status_code=response.status_code, payload=payload, text=response.text)


def classify_response(response: TransportResponse) -> Any:
    """
    Turn a raw platform answer into a result or a typed error.

    This is the only place that looks at error codes; callers match on
    exception types.

    Raises:
        DuplicateSubmissionError: JSON-RPC error 4909
        TransferNotFoundError: JSON-RPC error 4404
        RemoteError: Any other JSON-RPC error, non-2xx status, or malformed body
    """
    if not 200 <= response.status_code < 300:
        message = response.text or f"HTTP {response.status_code}"
        if response.payload and isinstance(response.payload.get("error"), dict):
            message = response.payload["error"].get("message") or message
        raise RemoteError(message, status_code=response.status_code)

    if response.payload is None:
        raise RemoteError(f"Invalid response from platform: {response.text[:200]}", status_code=response.status_code)

    error = response.payload.get("error")
    if error:
        code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message", "") if isinstance(error, dict) else str(error)
        data = error.get("data") if isinstance(error, dict) else None
        if code == IDEMPOTENT_REQUEST_IN_PROCESS:
            raise DuplicateSubmissionError(message, code=code, status_code=response.status_code, data=data)
        if code == TRANSFER_NOT_FOUND:
            raise TransferNotFoundError(message, code=code, status_code=response.status_code, data=data)
        raise RemoteError(message, code=code, status_code=response.status_code, data=data)

    return response.payload.get("result")
