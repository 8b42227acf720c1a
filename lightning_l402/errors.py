"""
Error taxonomy for lightning-l402.

Every failure the issuer or the agent can report has its own type with a
stable ``code`` string, so callers can branch on the class (or the code,
over the wire) instead of matching message text.

Verification failures (PaymentNotVerified, ResourceMismatch, Expired,
SignatureInvalid, MalformedToken) are normally *returned* inside a
VerifyResult and turned into a fresh 402 challenge. The rest are raised.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class L402Error(Exception):
    """Base class for all lightning-l402 errors."""

    code = "l402_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigError(L402Error):
    """Raised when the supplied configuration is invalid."""

    code = "config_error"


# ── Verification ─────────────────────────────────────────


class VerificationError(L402Error):
    """A presented token was not accepted."""

    code = "verification_failed"


class MalformedToken(VerificationError):
    """The token could not be parsed into macaroon + preimage."""

    code = "malformed_token"


class PaymentNotVerified(VerificationError):
    """SHA256(preimage) does not match the macaroon identifier."""

    code = "payment_not_verified"

    def __init__(self, message: str = "Invalid preimage — payment not verified"):
        super().__init__(message)


class ResourceMismatch(VerificationError):
    """The token is scoped to a different resource."""

    code = "resource_mismatch"

    def __init__(self, token_resource_id: str, requested_resource_id: str):
        super().__init__(
            f"Token for resource '{token_resource_id}', "
            f"but requested '{requested_resource_id}'"
        )
        self.token_resource_id = token_resource_id
        self.requested_resource_id = requested_resource_id


class Expired(VerificationError):
    """The token's expires_at caveat is in the past."""

    code = "expired"

    def __init__(self, expires_at: Optional[int] = None):
        super().__init__("Token expired")
        self.expires_at = expires_at


class SignatureInvalid(VerificationError):
    """HMAC chain mismatch: not issued by this server, or tampered with."""

    code = "signature_invalid"

    def __init__(self, message: str = "Invalid macaroon signature"):
        super().__init__(message)


# ── Payment gateway ──────────────────────────────────────


class GatewayError(L402Error):
    """Base class for payment gateway failures."""

    code = "gateway_error"


class GatewayUnavailable(GatewayError):
    """Network error, timeout or non-2xx response from the payment node."""

    code = "gateway_unavailable"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PaymentFailed(GatewayError):
    """The node reached a verdict: the payment itself failed."""

    code = "payment_failed"


# ── Agent side ───────────────────────────────────────────


class BudgetExceeded(L402Error):
    """Paying the invoice would push total spend past the ceiling."""

    code = "budget_exceeded"

    def __init__(self, amount_sats: int, remaining_sats: int, budget_sats: int):
        super().__init__(
            f"Budget exceeded. Invoice: {amount_sats} sats. "
            f"Remaining budget: {remaining_sats} sats (limit: {budget_sats})."
        )
        self.amount_sats = amount_sats
        self.remaining_sats = remaining_sats
        self.budget_sats = budget_sats


class UnpayableInvoice(L402Error):
    """The invoice carries no amount (or a zero amount)."""

    code = "unpayable_invoice"


class LedgerError(L402Error):
    """The spend ledger could not be read, or is inconsistent."""

    code = "ledger_error"


class LedgerWriteError(LedgerError):
    """
    A completed payment could not be persisted.

    This is fatal for the agent: the money is gone but the budget no
    longer knows about it.
    """

    code = "ledger_write_failed"
