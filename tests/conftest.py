"""Shared fixtures: an in-memory Lightning node that behaves like a gateway."""

import hashlib
import os
from typing import Dict, Tuple

import pytest

from lightning_l402.errors import PaymentFailed
from lightning_l402.gateway import (
    ChannelBalance,
    DecodedInvoice,
    InvoiceResult,
    PaymentResult,
    SettlementStatus,
)

SECRET = "test-secret-for-l402-challenge-handler"


class FakeNode:
    """
    Both sides of a Lightning payment in one object.

    create_invoice hides a random preimage behind its hash; pay_invoice
    reveals it, exactly like a real settlement.
    """

    def __init__(self, fee_msat: int = 0):
        self.fee_msat = fee_msat
        self.fail_payments = False
        self._invoices: Dict[str, Tuple[int, str, bytes]] = {}  # request -> (amount, memo, preimage)
        self._settled: Dict[str, int] = {}  # payment hash -> amount
        self.created = 0
        self.paid = 0

    async def create_invoice(self, amount_sats, memo="", expiry=3600):
        preimage = os.urandom(32)
        payment_hash = hashlib.sha256(preimage).hexdigest()
        request = f"lnbcrt{amount_sats}n1{payment_hash}"
        self._invoices[request] = (amount_sats, memo, preimage)
        self.created += 1
        return InvoiceResult(payment_request=request, payment_hash=payment_hash)

    async def decode_invoice(self, payment_request):
        amount, memo, preimage = self._invoices[payment_request]
        return DecodedInvoice(
            amount_sats=amount,
            memo=memo,
            destination="02" + "ab" * 32,
            payment_hash=hashlib.sha256(preimage).hexdigest(),
            expiry=3600,
        )

    async def pay_invoice(self, payment_request):
        if self.fail_payments:
            raise PaymentFailed("Payment failed: no route")
        amount, _, preimage = self._invoices[payment_request]
        payment_hash = hashlib.sha256(preimage).hexdigest()
        self._settled[payment_hash] = amount
        self.paid += 1
        return PaymentResult(preimage=preimage.hex(), fee_msat=self.fee_msat, payment_hash=payment_hash)

    async def lookup_invoice(self, payment_hash):
        if payment_hash in self._settled:
            amount = self._settled[payment_hash]
            return SettlementStatus(settled=True, amount_received=amount, state="SETTLED")
        return SettlementStatus(settled=False, state="OPEN")

    async def channel_balance(self):
        return ChannelBalance(local=50_000, remote=20_000)


@pytest.fixture
def node():
    return FakeNode()


@pytest.fixture
def ledger_path(tmp_path):
    return str(tmp_path / "spending-log.json")
