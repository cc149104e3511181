"""Domain-specific exceptions"""

from datetime import datetime
from typing import Any, Optional


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class GatewayError(DomainException):
    """
    Classified failure of a platform call.

    The gateway stamps next_allowed_at on every error so callers can render
    "refresh available at" without another round trip.
    """

    kind = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.data = data
        self.next_allowed_at: Optional[datetime] = None


class SigningError(GatewayError):
    """No credential for the layer, or the stored key cannot sign"""

    kind = "signing_error"


class DuplicateSubmissionError(GatewayError):
    """Remote detected an identical mutating request already accepted or in flight"""

    kind = "duplicate_submission"


class RateLimitDeferred(GatewayError):
    """Admission window for this read call is not open yet"""

    kind = "rate_limit_deferred"

    def __init__(self, message: str, *, next_allowed_at: datetime, stale_payload: Any = None):
        super().__init__(message)
        self.next_allowed_at = next_allowed_at
        self.stale_payload = stale_payload


class GatewayTimeoutError(GatewayError):
    """Call abandoned locally after the fixed timeout; remote effect is unknown"""

    kind = "timeout"


class RemoteError(GatewayError):
    """Opaque upstream failure, message passed through verbatim"""

    kind = "remote_error"


class TransferNotFoundError(RemoteError):
    """Platform has no transfer under the requested ext_key"""

    kind = "transfer_not_found"


class ValidationError(GatewayError):
    """Malformed input caught before any remote call"""

    kind = "validation_error"


class CredentialError(DomainException):
    """Credential material rejected at save time"""

    pass


class TerminalDataError(DomainException):
    """Terminal data service returned an error or is unavailable"""

    pass


class PayoutNotFoundError(DomainException):
    """Payout record does not exist"""

    pass


class AssignmentConflictError(DomainException):
    """Machine already has an active assignment"""

    pass


class BatchAlreadyRunningError(DomainException):
    """A scheduled batch run is already in progress"""

    pass


class InvalidTransition(DomainException):
    """Illegal payout status change"""

    pass
