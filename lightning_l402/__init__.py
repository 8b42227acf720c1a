"""
⚡ lightning-l402 — stateless L402 credentials and a budget-enforced payer.

Issuer side: mint macaroons bound to Lightning invoices and verify
``L402 <macaroon>:<preimage>`` tokens with no session storage.
Payer side: a BudgetAgent that settles invoices only within a fixed
ceiling and keeps a persistent spend ledger.

Usage:
    from fastapi import Depends
    from lightning_l402 import LndConfig, LndRestGateway, create_toll

    toll = create_toll(wallet=LndRestGateway(LndConfig.from_env()), secret="...")

    @app.get("/api/protected/{item_id}")
    async def item(item_id: str, payment=Depends(toll(sats=10))):
        return {"item": item_id, "paid": payment["paid"]}
"""

from .agent import BudgetAgent, BudgetStatus, SettleReceipt
from .challenge import Authorized, Challenge, ChallengeHandler
from .config import AgentConfig, IssuerConfig, LndConfig
from .errors import (
    BudgetExceeded,
    ConfigError,
    Expired,
    GatewayUnavailable,
    L402Error,
    LedgerError,
    LedgerWriteError,
    MalformedToken,
    PaymentFailed,
    PaymentNotVerified,
    ResourceMismatch,
    SignatureInvalid,
    UnpayableInvoice,
    VerificationError,
)
from .gateway import (
    ChannelBalance,
    DecodedInvoice,
    InvoiceResult,
    PaymentGateway,
    PaymentResult,
    SettlementStatus,
)
from .l402 import (
    L402Token,
    format_authorization,
    format_challenge,
    format_challenge_body,
    parse_authorization,
    parse_challenge,
    parse_token,
)
from .ledger import LedgerState, PaymentRecord, SpendLedger
from .lnd import LndRestGateway
from .macaroon import (
    Caveat,
    Macaroon,
    VerifyResult,
    attenuate,
    decode_macaroon,
    mint,
    verify,
    verify_preimage,
)
from .nwc import NwcGateway
from .toll import Toll, create_toll

__version__ = "0.2.0"

__all__ = [
    # Issuer
    "create_toll",
    "Toll",
    "ChallengeHandler",
    "Authorized",
    "Challenge",
    # Macaroon
    "mint",
    "verify",
    "attenuate",
    "decode_macaroon",
    "verify_preimage",
    "Macaroon",
    "Caveat",
    "VerifyResult",
    # L402 wire format
    "L402Token",
    "format_authorization",
    "format_challenge",
    "format_challenge_body",
    "parse_authorization",
    "parse_challenge",
    "parse_token",
    # Agent
    "BudgetAgent",
    "BudgetStatus",
    "SettleReceipt",
    "SpendLedger",
    "LedgerState",
    "PaymentRecord",
    # Gateways
    "PaymentGateway",
    "LndRestGateway",
    "NwcGateway",
    "InvoiceResult",
    "PaymentResult",
    "DecodedInvoice",
    "SettlementStatus",
    "ChannelBalance",
    # Config
    "IssuerConfig",
    "LndConfig",
    "AgentConfig",
    # Errors
    "L402Error",
    "ConfigError",
    "VerificationError",
    "MalformedToken",
    "PaymentNotVerified",
    "ResourceMismatch",
    "Expired",
    "SignatureInvalid",
    "GatewayUnavailable",
    "PaymentFailed",
    "BudgetExceeded",
    "UnpayableInvoice",
    "LedgerError",
    "LedgerWriteError",
]
