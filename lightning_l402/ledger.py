"""
Persistent spend ledger for the budget-enforced agent.

A single JSON file:

    {"totalSpent": 21, "payments": [{"amount": 10, "fee": 1, "totalCost": 11,
      "secretPrefix": "deadbeefdeadbeef", "memo": "...", "timestamp": "..."}]}

A missing file is the zero-spend state. Writes go to a temp file that is
atomically renamed over the ledger. The read-check-write sequence is
serialized by ``locked()``: an asyncio.Lock for coroutines sharing this
handle, plus an exclusive flock on ``<path>.lock`` for other handles and
other processes sharing the file.
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List

from .errors import LedgerError, LedgerWriteError

logger = logging.getLogger(__name__)

SECRET_PREFIX_LENGTH = 16


@dataclass(frozen=True)
class PaymentRecord:
    """One settled payment."""
    amount: int
    fee: int
    total_cost: int
    secret_prefix: str
    memo: str
    timestamp: str  # ISO 8601, UTC

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "fee": self.fee,
            "totalCost": self.total_cost,
            "secretPrefix": self.secret_prefix,
            "memo": self.memo,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            amount=int(data["amount"]),
            fee=int(data["fee"]),
            total_cost=int(data["totalCost"]),
            secret_prefix=str(data.get("secretPrefix", "")),
            memo=str(data.get("memo", "")),
            timestamp=str(data["timestamp"]),
        )


@dataclass
class LedgerState:
    """Cumulative spend and payment history."""
    total_spent: int = 0
    payments: List[PaymentRecord] = field(default_factory=list)

    def append(self, record: PaymentRecord) -> None:
        self.payments.append(record)
        self.total_spent += record.total_cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalSpent": self.total_spent,
            "payments": [p.to_dict() for p in self.payments],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerState":
        payments = [PaymentRecord.from_dict(p) for p in data.get("payments", [])]
        state = cls(total_spent=int(data.get("totalSpent", 0)), payments=payments)
        recorded = sum(p.total_cost for p in payments)
        if state.total_spent != recorded:
            raise LedgerError(
                f"Ledger is inconsistent: totalSpent={state.total_spent} "
                f"but payments sum to {recorded}"
            )
        return state


def make_record(amount: int, fee: int, preimage_hex: str, memo: str = "") -> PaymentRecord:
    """Build a record for a settled payment, keeping only a prefix of the preimage."""
    return PaymentRecord(
        amount=amount,
        fee=fee,
        total_cost=amount + fee,
        secret_prefix=preimage_hex[:SECRET_PREFIX_LENGTH],
        memo=memo,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


class SpendLedger:
    """File-backed ledger handle. Pass one into BudgetAgent."""

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self.lock_path = self.path + ".lock"
        self._lock = asyncio.Lock()

    def load(self) -> LedgerState:
        """
        Read the ledger from disk.

        Raises:
            LedgerError: the file exists but is unreadable or inconsistent.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            logger.debug("No spend ledger at %s, starting from zero", self.path)
            return LedgerState()
        except (OSError, ValueError) as exc:
            raise LedgerError(f"Cannot read spend ledger {self.path}: {exc}") from exc

        if not isinstance(data, dict):
            raise LedgerError(f"Spend ledger {self.path} is not a JSON object")
        try:
            return LedgerState.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerError(f"Spend ledger {self.path} is malformed: {exc}") from exc

    def save(self, state: LedgerState) -> None:
        """
        Atomically replace the ledger file.

        Raises:
            LedgerWriteError: the state could not be persisted.
        """
        directory = os.path.dirname(self.path)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".ledger-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(state.to_dict(), fh, indent=2)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as exc:
            raise LedgerWriteError(f"Cannot write spend ledger {self.path}: {exc}") from exc

    def record(self, state: LedgerState, entry: PaymentRecord) -> PaymentRecord:
        """
        Append a settled payment to ``state`` and persist it. Call under locked().

        ``state`` keeps the entry even when the write fails.

        Raises:
            LedgerWriteError: the state could not be persisted.
        """
        state.append(entry)
        self.save(state)
        return entry

    def _acquire_file_lock(self) -> int:
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError:
            os.close(fd)
            raise
        return fd

    @staticmethod
    def _release_file_lock(fd: int) -> None:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @asynccontextmanager
    async def locked(self) -> AsyncIterator[None]:
        """Hold the ledger exclusively (in-process and cross-process)."""
        async with self._lock:
            try:
                fd = await asyncio.to_thread(self._acquire_file_lock)
            except OSError as exc:
                raise LedgerError(f"Cannot lock spend ledger {self.lock_path}: {exc}") from exc
            try:
                yield
            finally:
                self._release_file_lock(fd)
