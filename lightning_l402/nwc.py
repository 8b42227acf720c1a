"""
Nostr Wallet Connect (NIP-47) payment gateway.

An alternative to LND REST for wallets reachable only through a Nostr relay
(Alby, Mutiny, LNbits NWC, ...).

NWC Flow:
1. Parse the NWC URL to get: relay URL, wallet pubkey, secret key
2. Connect to the relay via WebSocket
3. Send NIP-47 encrypted requests (kind 23194)
4. Receive encrypted responses (kind 23195)
5. Encryption uses NIP-04 (shared secret from ECDH)

NIP-47 has no decode call and no channel view, so decode_invoice goes
through lookup_invoice(invoice=...) and channel_balance reports the
wallet's single balance as local.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

import websockets
from websockets.exceptions import WebSocketException

from .crypto import Nip04Cipher, sign_event, xonly_public_key
from .errors import GatewayUnavailable, PaymentFailed
from .gateway import (
    ChannelBalance,
    DecodedInvoice,
    InvoiceResult,
    PaymentResult,
    SettlementStatus,
)

logger = logging.getLogger(__name__)

REQUEST_KIND = 23194
RESPONSE_KIND = 23195


@dataclass(frozen=True)
class NwcConfig:
    """Parsed NWC URL configuration."""
    relay_url: str
    wallet_pubkey: str
    secret_key: str
    client_pubkey: str  # derived from secret_key


class NwcError(GatewayUnavailable):
    """The wallet service answered a request with an error payload."""

    def __init__(self, method: str, code: str, message: str):
        super().__init__(f"NWC {method} error: {message} (code: {code})")
        self.method = method
        self.nwc_code = code


def parse_nwc_url(nwc_url: str) -> NwcConfig:
    """
    Parse an NWC (Nostr Wallet Connect) URL.

    Format: nostr+walletconnect://<wallet_pubkey>?relay=<relay_url>&secret=<secret_key>
    """
    parsed = urlparse(nwc_url)

    if parsed.scheme != "nostr+walletconnect":
        raise ValueError(f"Invalid NWC URL scheme: {parsed.scheme} (expected nostr+walletconnect)")

    wallet_pubkey = parsed.netloc or parsed.hostname or ""
    if not wallet_pubkey:
        raise ValueError("NWC URL missing wallet pubkey")

    params = parse_qs(parsed.query)
    relay_url = params.get("relay", [None])[0]
    secret_key = params.get("secret", [None])[0]

    if not relay_url:
        raise ValueError("NWC URL missing relay parameter")
    if not secret_key:
        raise ValueError("NWC URL missing secret parameter")

    return NwcConfig(
        relay_url=relay_url,
        wallet_pubkey=wallet_pubkey,
        secret_key=secret_key,
        client_pubkey=xonly_public_key(secret_key),
    )


class NwcGateway:
    """
    Payment gateway backed by a Nostr Wallet Connect wallet.

    Usage:
        gateway = NwcGateway("nostr+walletconnect://...")
        paid = await gateway.pay_invoice("lnbc...")
    """

    def __init__(self, nwc_url: str, timeout_seconds: float = 30.0):
        self.config = parse_nwc_url(nwc_url)
        self.timeout_seconds = timeout_seconds
        self._cipher = Nip04Cipher(self.config.secret_key, self.config.wallet_pubkey)
        self._ws: Optional[Any] = None
        self._lock = asyncio.Lock()

    async def _ensure_connected(self) -> Any:
        if self._ws is not None:
            try:
                pong = await self._ws.ping()
                await asyncio.wait_for(pong, timeout=self.timeout_seconds)
                return self._ws
            except (WebSocketException, OSError, asyncio.TimeoutError):
                logger.debug("NWC relay connection went stale, reconnecting")
                self._ws = None

        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(self.config.relay_url), timeout=self.timeout_seconds
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            raise GatewayUnavailable(f"Cannot reach NWC relay {self.config.relay_url}: {exc}") from exc
        return self._ws

    def _build_request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        event = {
            "kind": REQUEST_KIND,
            "pubkey": self.config.client_pubkey,
            "created_at": int(time.time()),
            "tags": [["p", self.config.wallet_pubkey]],
            "content": self._cipher.encrypt(json.dumps({"method": method, "params": params})),
        }
        return sign_event(event, self.config.secret_key)

    async def _call(
        self,
        method: str,
        params: Dict[str, Any],
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send a NIP-47 request and wait for the matching response.

        Raises:
            GatewayUnavailable: relay unreachable, timeout, or NWC error payload.
        """
        async with self._lock:
            reply = await self._exchange(method, params, timeout_seconds)

        error = reply.get("error")
        if error:
            raise NwcError(method, error.get("code", "N/A"), error.get("message", "Unknown error"))
        return reply.get("result") or {}

    async def _exchange(
        self,
        method: str,
        params: Dict[str, Any],
        timeout_seconds: Optional[float],
    ) -> Dict[str, Any]:
        # One request in flight per connection: websockets allows a single recv() at a time
        ws = await self._ensure_connected()
        request = self._build_request(method, params)
        timeout = timeout_seconds or self.timeout_seconds

        sub_id = secrets.token_hex(16)
        sub_filter = {
            "kinds": [RESPONSE_KIND],
            "authors": [self.config.wallet_pubkey],
            "#p": [self.config.client_pubkey],
            "#e": [request["id"]],
        }

        try:
            # Subscribe before publishing so the response can't be missed
            await ws.send(json.dumps(["REQ", sub_id, sub_filter]))
            await ws.send(json.dumps(["EVENT", request]))
            reply = await asyncio.wait_for(self._await_response(ws, sub_id), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise GatewayUnavailable(f"NWC {method} timed out after {timeout}s") from exc
        except (WebSocketException, OSError) as exc:
            self._ws = None
            raise GatewayUnavailable(f"NWC relay error during {method}: {exc}") from exc
        finally:
            await self._close_subscription(ws, sub_id)
        return reply

    async def _await_response(self, ws: Any, sub_id: str) -> Dict[str, Any]:
        while True:
            msg = json.loads(await ws.recv())
            if isinstance(msg, list) and len(msg) >= 3 and msg[0] == "EVENT" and msg[1] == sub_id:
                return json.loads(self._cipher.decrypt(msg[2]["content"]))

    async def _close_subscription(self, ws: Any, sub_id: str) -> None:
        try:
            await ws.send(json.dumps(["CLOSE", sub_id]))
        except (WebSocketException, OSError):
            logger.debug("Could not close NWC subscription %s", sub_id)

    async def create_invoice(
        self,
        amount_sats: int,
        memo: str = "",
        expiry: int = 3600,
    ) -> InvoiceResult:
        result = await self._call("make_invoice", {
            "amount": amount_sats * 1000,  # millisats
            "description": memo,
            "expiry": expiry,
        })

        invoice = result.get("invoice", "")
        payment_hash = result.get("payment_hash", "")
        if not invoice or not payment_hash:
            raise GatewayUnavailable("NWC make_invoice returned no invoice")
        return InvoiceResult(payment_request=invoice, payment_hash=payment_hash)

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        try:
            result = await self._call(
                "pay_invoice",
                {"invoice": payment_request},
                timeout_seconds=max(60.0, self.timeout_seconds),
            )
        except NwcError as exc:
            raise PaymentFailed(exc.message) from exc

        preimage = result.get("preimage", "")
        if not preimage:
            raise PaymentFailed("NWC pay_invoice returned no preimage")
        return PaymentResult(
            preimage=preimage,
            fee_msat=int(result.get("fees_paid") or 0),
            payment_hash=result.get("payment_hash"),
        )

    async def decode_invoice(self, payment_request: str) -> DecodedInvoice:
        result = await self._call("lookup_invoice", {"invoice": payment_request})
        created_at = result.get("created_at")
        expires_at = result.get("expires_at")
        expiry = int(expires_at) - int(created_at) if created_at and expires_at else 0
        return DecodedInvoice(
            amount_sats=int(result.get("amount") or 0) // 1000,
            memo=result.get("description") or "",
            destination="",
            payment_hash=result.get("payment_hash") or "",
            expiry=expiry,
            timestamp=created_at,
        )

    async def lookup_invoice(self, payment_hash: str) -> SettlementStatus:
        result = await self._call("lookup_invoice", {"payment_hash": payment_hash})
        settled_at = result.get("settled_at")
        settled = settled_at is not None or bool(result.get("preimage"))
        amount = int(result.get("amount") or 0) // 1000
        return SettlementStatus(
            settled=settled,
            amount_received=amount if settled else None,
            amount_requested=amount,
            state="SETTLED" if settled else "OPEN",
            memo=result.get("description") or None,
            settled_at=settled_at,
        )

    async def channel_balance(self) -> ChannelBalance:
        result = await self._call("get_balance", {})
        return ChannelBalance(local=int(result.get("balance") or 0) // 1000, remote=0)

    async def close(self) -> None:
        """Close the WebSocket connection."""
        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                await ws.close()
            except (WebSocketException, OSError):
                logger.debug("NWC relay connection already closed")
