"""
Budget-enforced Lightning agent.

Gives an automated client (an LLM tool loop, a crawler, ...) a wallet it
cannot overspend. Every payment is checked against a fixed ceiling and
recorded in a persistent SpendLedger; routing fees count against the
budget too.

Usage:
    agent = BudgetAgent(gateway, SpendLedger("spending-log.json"), budget_sats=1000)
    decoded = await agent.inspect(invoice)
    receipt = await agent.settle(invoice)      # raises BudgetExceeded if too pricey
    token = f"{macaroon}:{receipt.preimage}"
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .config import AgentConfig
from .errors import BudgetExceeded, LedgerWriteError, UnpayableInvoice
from .gateway import (
    ChannelBalance,
    DecodedInvoice,
    InvoiceResult,
    PaymentGateway,
    SettlementStatus,
)
from .ledger import SECRET_PREFIX_LENGTH, LedgerState, PaymentRecord, SpendLedger, make_record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettleReceipt:
    """A successful, recorded payment."""
    preimage: str            # hex, the settlement secret
    amount_sats: int
    fee_sats: int
    fee_msat: int
    total_cost_sats: int
    remaining_sats: int
    payment_hash: Optional[str] = None


@dataclass(frozen=True)
class BudgetStatus:
    """Snapshot of the spending budget."""
    ceiling: int
    spent: int
    remaining: int
    history: List[PaymentRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ceiling": self.ceiling,
            "spent": self.spent,
            "remaining": self.remaining,
            "history": [p.to_dict() for p in self.history],
        }


class BudgetAgent:
    """
    Consumer-side wallet with a hard spending ceiling.

    The ledger check, the payment and the ledger write happen under the
    ledger's lock, so two concurrent settle() calls can never both pass the
    ceiling against the same stale total.
    """

    def __init__(self, gateway: PaymentGateway, ledger: SpendLedger, budget_sats: int):
        if budget_sats < 0:
            raise ValueError("budget_sats must not be negative")
        self.gateway = gateway
        self.ledger = ledger
        self.budget_sats = budget_sats
        self._inflight: Set["asyncio.Task[SettleReceipt]"] = set()
        # Paid but not yet persisted; counted against the ceiling until a save succeeds
        self._unrecorded: List[PaymentRecord] = []

    @classmethod
    def from_config(cls, gateway: PaymentGateway, config: AgentConfig) -> "BudgetAgent":
        return cls(gateway, SpendLedger(config.ledger_path), config.budget_sats)

    async def inspect(self, payment_request: str) -> DecodedInvoice:
        """Decode an invoice without paying it."""
        return await self.gateway.decode_invoice(payment_request)

    async def settle(self, payment_request: str) -> SettleReceipt:
        """
        Pay an invoice if it fits in the remaining budget.

        The payment runs in a shielded task: if the caller is cancelled
        while the node is still routing, the spend is recorded anyway once
        the node reports success.

        Raises:
            UnpayableInvoice: the invoice has no amount.
            BudgetExceeded: amount > ceiling - total spent. Nothing was paid.
            PaymentFailed / GatewayUnavailable: nothing was recorded.
            LedgerWriteError: paid, but the ledger could not be written. The
                payment still counts against this agent's budget and is
                written out with the next successful save.
        """
        decoded = await self.gateway.decode_invoice(payment_request)
        if decoded.amount_sats <= 0:
            raise UnpayableInvoice("Invoice has no amount or zero amount.")

        task = asyncio.ensure_future(self._pay_and_record(payment_request, decoded))
        self._inflight.add(task)
        task.add_done_callback(self._settle_done)
        return await asyncio.shield(task)

    def _settle_done(self, task: "asyncio.Task[SettleReceipt]") -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, LedgerWriteError):
            return  # already logged loudly
        if exc is not None:
            logger.debug("Settlement attempt ended with %s: %s", type(exc).__name__, exc)

    async def _pay_and_record(self, payment_request: str, decoded: DecodedInvoice) -> SettleReceipt:
        amount = decoded.amount_sats

        async with self.ledger.locked():
            state = self._current_state()
            remaining = self.budget_sats - state.total_spent
            if amount > remaining:
                logger.warning(
                    "Refusing to pay %s sats: %s of %s sats remaining",
                    amount, remaining, self.budget_sats,
                )
                raise BudgetExceeded(amount, remaining, self.budget_sats)

            logger.info("Paying %s sats...", amount)
            payment = await self.gateway.pay_invoice(payment_request)

            record = make_record(amount, payment.fee_sats, payment.preimage, decoded.memo)
            try:
                self.ledger.record(state, record)
            except LedgerWriteError:
                self._unrecorded.append(record)
                logger.critical(
                    "PAYMENT NOT RECORDED: paid %s sats + %s sat fee (preimage %s..., hash %s) "
                    "but the spend ledger %s could not be written",
                    amount, payment.fee_sats, payment.preimage[:SECRET_PREFIX_LENGTH],
                    decoded.payment_hash, self.ledger.path,
                )
                raise
            if self._unrecorded:
                logger.warning(
                    "Recovered %s previously unrecorded payment(s) into %s",
                    len(self._unrecorded), self.ledger.path,
                )
                self._unrecorded.clear()

        logger.info(
            "Paid %s sats + %s msat fee = %s total sats. Budget: %s/%s",
            amount, payment.fee_msat, record.total_cost, state.total_spent, self.budget_sats,
        )
        return SettleReceipt(
            preimage=payment.preimage,
            amount_sats=amount,
            fee_sats=payment.fee_sats,
            fee_msat=payment.fee_msat,
            total_cost_sats=record.total_cost,
            remaining_sats=self.budget_sats - state.total_spent,
            payment_hash=payment.payment_hash or decoded.payment_hash,
        )

    async def create_receivable(
        self,
        amount_sats: int,
        memo: str = "",
        expiry_seconds: int = 3600,
    ) -> InvoiceResult:
        """Create an invoice to receive a payment. Receiving is not spending."""
        if amount_sats <= 0:
            raise ValueError("amount_sats must be greater than zero")
        result = await self.gateway.create_invoice(amount_sats, memo, expiry_seconds)
        logger.info(
            "Created invoice: %s sats, r_hash=%s...", amount_sats, result.payment_hash[:16]
        )
        return result

    async def check_settlement(self, payment_hash: str) -> SettlementStatus:
        """Has an invoice we created been paid? Safe to poll."""
        return await self.gateway.lookup_invoice(payment_hash)

    async def channel_balance(self) -> ChannelBalance:
        return await self.gateway.channel_balance()

    def _current_state(self) -> LedgerState:
        state = self.ledger.load()
        for record in self._unrecorded:
            state.append(record)
        return state

    def budget_status(self) -> BudgetStatus:
        state = self._current_state()
        return BudgetStatus(
            ceiling=self.budget_sats,
            spent=state.total_spent,
            remaining=self.budget_sats - state.total_spent,
            history=list(state.payments),
        )
