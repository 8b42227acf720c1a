"""
LND REST gateway.

Talks to an LND node over its REST API with httpx. Authentication is the
node macaroon, hex-encoded in the Grpc-Metadata-macaroon header. LND uses a
self-signed certificate, so the configured tls.cert is pinned as the only
trusted CA (hostname checks are off, which keeps SSH-tunnel setups working).

Endpoints used:
    POST /v1/invoices                 create_invoice
    GET  /v1/payreq/{payment_request} decode_invoice
    POST /v1/channels/transactions    pay_invoice
    GET  /v2/invoices/lookup          lookup_invoice
    GET  /v1/balance/channels         channel_balance
"""

from __future__ import annotations

import logging
import os
import ssl
from base64 import b64decode, b64encode
from typing import Any, Dict, Optional, Union
from urllib.parse import quote

import httpx

from .config import LndConfig
from .errors import ConfigError, GatewayUnavailable, PaymentFailed
from .gateway import (
    ChannelBalance,
    DecodedInvoice,
    InvoiceResult,
    PaymentResult,
    SettlementStatus,
)

logger = logging.getLogger(__name__)

PAY_TIMEOUT_SECONDS = 60.0


def _b64_to_hex(value: Optional[str]) -> str:
    if not value:
        return ""
    return b64decode(value).hex()


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def read_macaroon_hex(path: str) -> str:
    """Read a binary LND macaroon file and hex-encode it."""
    try:
        with open(path, "rb") as fh:
            return fh.read().hex()
    except OSError as exc:
        raise ConfigError(f"Cannot read LND macaroon at {path}: {exc}") from exc


def build_tls_verify(tls_cert_path: Optional[str]) -> Union[ssl.SSLContext, bool]:
    """Pin LND's self-signed cert, or fall back to an unverified connection."""
    if tls_cert_path and os.path.exists(tls_cert_path):
        context = ssl.create_default_context(cafile=tls_cert_path)
        context.check_hostname = False
        return context
    logger.warning("No TLS cert provided (LND_TLS_CERT_PATH). Connection to LND is NOT verified.")
    return False


class LndRestGateway:
    """
    Payment gateway backed by an LND node's REST API.

    Usage:
        gateway = LndRestGateway(LndConfig.from_env())
        invoice = await gateway.create_invoice(10, "L402 access: abc")
    """

    def __init__(
        self,
        config: LndConfig,
        macaroon_hex: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            config: LND connection settings.
            macaroon_hex: Already hex-encoded macaroon (skips reading the file).
            transport: Custom httpx transport (tests use httpx.MockTransport).
        """
        self.config = config
        macaroon = macaroon_hex or read_macaroon_hex(config.macaroon_path)

        client_kwargs: Dict[str, Any] = {
            "base_url": config.host,
            "headers": {"Grpc-Metadata-macaroon": macaroon},
            "timeout": config.timeout_seconds,
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        else:
            client_kwargs["verify"] = build_tls_verify(config.tls_cert_path)

        self._client = httpx.AsyncClient(**client_kwargs)
        logger.info("LND gateway configured for %s", config.host)

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if body is not None:
            kwargs["json"] = body
        if params is not None:
            kwargs["params"] = params
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayUnavailable(f"LND request timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise GatewayUnavailable(f"LND connection error: {exc}") from exc

        if response.status_code != 200:
            raise GatewayUnavailable(
                f"LND {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise GatewayUnavailable(f"LND response parse error: {exc}") from exc

    async def create_invoice(
        self,
        amount_sats: int,
        memo: str = "",
        expiry: int = 3600,
    ) -> InvoiceResult:
        body: Dict[str, Any] = {"value": str(amount_sats), "expiry": str(expiry)}
        if memo:
            body["memo"] = memo

        result = await self._request("POST", "/v1/invoices", body)

        payment_request = result.get("payment_request")
        payment_hash = _b64_to_hex(result.get("r_hash"))
        if not payment_request or not payment_hash:
            raise GatewayUnavailable("LND returned no payment_request / r_hash")

        logger.debug("Created invoice: %s sats, r_hash=%s...", amount_sats, payment_hash[:16])
        return InvoiceResult(payment_request=payment_request, payment_hash=payment_hash)

    async def decode_invoice(self, payment_request: str) -> DecodedInvoice:
        result = await self._request("GET", f"/v1/payreq/{quote(payment_request, safe='')}")
        return DecodedInvoice(
            amount_sats=_as_int(result.get("num_satoshis")),
            memo=result.get("description") or "",
            destination=result.get("destination") or "",
            payment_hash=result.get("payment_hash") or "",
            expiry=_as_int(result.get("expiry")),
            timestamp=_as_int(result.get("timestamp")) or None,
        )

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        result = await self._request(
            "POST",
            "/v1/channels/transactions",
            {"payment_request": payment_request},
            timeout=max(PAY_TIMEOUT_SECONDS, self.config.timeout_seconds),
        )

        if result.get("payment_error"):
            raise PaymentFailed(f"Payment failed: {result['payment_error']}")

        preimage = _b64_to_hex(result.get("payment_preimage"))
        if not preimage:
            raise PaymentFailed("LND returned no payment preimage")

        route = result.get("payment_route") or {}
        return PaymentResult(
            preimage=preimage,
            fee_msat=_as_int(route.get("total_fees_msat")),
            payment_hash=_b64_to_hex(result.get("payment_hash")) or None,
        )

    async def lookup_invoice(self, payment_hash: str) -> SettlementStatus:
        try:
            raw_hash = bytes.fromhex(payment_hash)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"payment_hash must be hex, got {payment_hash!r}") from exc
        # v2 lookup wants standard (padded) base64 of the raw hash
        r_hash = b64encode(raw_hash).decode("ascii")
        result = await self._request("GET", "/v2/invoices/lookup", params={"payment_hash": r_hash})

        settled = result.get("state") == "SETTLED" or result.get("settled") is True
        settle_date = _as_int(result.get("settle_date"))
        return SettlementStatus(
            settled=settled,
            amount_received=_as_int(result.get("amt_paid_sat")) if settled else None,
            amount_requested=_as_int(result.get("value")),
            state=result.get("state") or ("SETTLED" if settled else "OPEN"),
            memo=result.get("memo") or None,
            settled_at=settle_date if settled and settle_date else None,
        )

    async def channel_balance(self) -> ChannelBalance:
        result = await self._request("GET", "/v1/balance/channels")

        def sat(key: str) -> int:
            return _as_int((result.get(key) or {}).get("sat"))

        return ChannelBalance(
            local=sat("local_balance"),
            remote=sat("remote_balance"),
            pending_open=sat("pending_open_local_balance"),
            unsettled=sat("unsettled_local_balance"),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "LndRestGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
