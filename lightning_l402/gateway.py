"""
Payment gateway boundary.

The issuer and the agent only ever talk to a Lightning node through this
interface. Two implementations ship with the package: LndRestGateway
(lnd.py) and NwcGateway (nwc.py). Tests use AsyncMock fakes.

Every method may raise GatewayUnavailable. pay_invoice may also raise
PaymentFailed when the node reached a verdict and the payment did not go
through.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class InvoiceResult:
    """Result from create_invoice."""
    payment_request: str
    payment_hash: str


@dataclass(frozen=True)
class PaymentResult:
    """Result from pay_invoice."""
    preimage: str          # hex
    fee_msat: int = 0
    payment_hash: Optional[str] = None

    @property
    def fee_sats(self) -> int:
        """Routing fee rounded up to whole sats."""
        return math.ceil(self.fee_msat / 1000)


@dataclass(frozen=True)
class DecodedInvoice:
    """Result from decode_invoice."""
    amount_sats: int
    memo: str
    destination: str
    payment_hash: str
    expiry: int            # seconds
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class SettlementStatus:
    """Result from lookup_invoice."""
    settled: bool
    amount_received: Optional[int] = None
    amount_requested: Optional[int] = None
    state: Optional[str] = None
    memo: Optional[str] = None
    settled_at: Optional[int] = None


@dataclass(frozen=True)
class ChannelBalance:
    """Result from channel_balance (all in sats)."""
    local: int
    remote: int
    pending_open: int = 0
    unsettled: int = 0


class PaymentGateway(Protocol):
    async def create_invoice(
        self, amount_sats: int, memo: str = "", expiry: int = 3600
    ) -> InvoiceResult: ...

    async def pay_invoice(self, payment_request: str) -> PaymentResult: ...

    async def decode_invoice(self, payment_request: str) -> DecodedInvoice: ...

    async def lookup_invoice(self, payment_hash: str) -> SettlementStatus: ...

    async def channel_balance(self) -> ChannelBalance: ...
