"""
L402 challenge protocol handler.

Framework-independent core of the paywall: given the Authorization header
and the resource being requested, either admit the request or produce a
fresh priced challenge (invoice + macaroon).

Per request there are two outcomes:
    Authorized  -- the token verified; serve the resource.
    Challenge   -- no token, or a rejected one; reply 402 with this.

A rejected token always costs a new invoice: there is no retry without
repaying. The challenge carries the rejection reason so the client can tell
"never paid" from "expired" from "wrong resource" from "malformed token".
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from .config import IssuerConfig
from .errors import GatewayUnavailable, MalformedToken, VerificationError
from .gateway import PaymentGateway
from .l402 import format_challenge, format_challenge_body, parse_authorization
from .macaroon import VerifyResult, decode_macaroon, mint, verify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Authorized:
    """The presented token is valid for this resource."""
    resource_id: str
    payment_hash: str
    expires_at: Optional[int]


@dataclass(frozen=True)
class Challenge:
    """A 402 Payment Required answer."""
    resource_id: str
    macaroon: str
    invoice: str
    payment_hash: str
    price_sats: int
    expiry_seconds: int
    error: Optional[VerificationError] = None
    hints: Dict[str, Any] = field(default_factory=dict)

    status_code = 402

    @property
    def reason(self) -> Optional[str]:
        return self.error.code if self.error else None

    def header(self) -> str:
        """WWW-Authenticate header value."""
        return format_challenge(self.invoice, self.macaroon)

    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": self.header()}

    def body(self) -> Dict[str, Any]:
        return format_challenge_body(
            invoice=self.invoice,
            macaroon=self.macaroon,
            payment_hash=self.payment_hash,
            price_sats=self.price_sats,
            expiry_seconds=self.expiry_seconds,
            resource_id=self.resource_id,
            error=self.error,
            hints=self.hints,
        )


AuthOutcome = Union[Authorized, Challenge]


class ChallengeHandler:
    """
    Issues and checks L402 credentials for one issuer.

    Holds no per-request state; any number of requests may be handled
    concurrently.
    """

    def __init__(
        self,
        config: IssuerConfig,
        gateway: PaymentGateway,
        now: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self.gateway = gateway
        self._now = now or time.time

    def check(self, authorization: Optional[str], resource_id: str) -> Optional[VerifyResult]:
        """
        Verify the credentials in an Authorization header, without side effects.

        Returns:
            None if no L402 credentials were presented, else a VerifyResult.
        """
        try:
            token = parse_authorization(authorization)
            if token is None:
                return None
            macaroon = decode_macaroon(token.macaroon)
        except MalformedToken as exc:
            return VerifyResult(valid=False, error=exc)

        return verify(
            self.config.secret_bytes,
            macaroon,
            token.preimage,
            resource_id,
            now=self._now,
        )

    async def authorize(
        self,
        authorization: Optional[str],
        resource_id: str,
        price_sats: Optional[int] = None,
        hints: Optional[Dict[str, Any]] = None,
    ) -> AuthOutcome:
        """
        Admit the request or build a 402 challenge.

        Raises:
            GatewayUnavailable: a challenge was needed but no invoice could be created.
        """
        result = self.check(authorization, resource_id)

        if result is None:
            return await self.issue_challenge(resource_id, price_sats, hints=hints)

        if result.valid:
            logger.info("Access granted: %s", resource_id)
            return Authorized(
                resource_id=resource_id,
                payment_hash=result.payment_hash or "",
                expires_at=result.expires_at,
            )

        logger.warning("Access denied for %s: %s", resource_id, result.error)
        return await self.issue_challenge(resource_id, price_sats, error=result.error, hints=hints)

    async def issue_challenge(
        self,
        resource_id: str,
        price_sats: Optional[int] = None,
        error: Optional[VerificationError] = None,
        hints: Optional[Dict[str, Any]] = None,
    ) -> Challenge:
        """Create an invoice for the resource and a macaroon bound to it."""
        if not resource_id:
            raise ValueError("resource_id is required")
        price = price_sats if price_sats is not None else self.config.price_sats
        if price <= 0:
            raise ValueError("price_sats must be greater than zero")

        try:
            invoice = await self.gateway.create_invoice(
                price,
                f"L402 access: {resource_id}",
                self.config.invoice_expiry_seconds,
            )
        except GatewayUnavailable as exc:
            logger.error("Invoice creation failed: %s", exc)
            raise

        try:
            macaroon = mint(
                self.config.secret_bytes,
                invoice.payment_hash,
                resource_id,
                self.config.expiry_seconds,
                location=self.config.location,
                now=self._now,
            )
        except ValueError as exc:
            raise GatewayUnavailable(f"Gateway returned an unusable payment hash: {exc}") from exc

        logger.info("Challenge issued: %s (%s sats)", resource_id, price)
        return Challenge(
            resource_id=resource_id,
            macaroon=macaroon.serialize(),
            invoice=invoice.payment_request,
            payment_hash=invoice.payment_hash,
            price_sats=price,
            expiry_seconds=self.config.expiry_seconds,
            error=error,
            hints=dict(hints or {}),
        )
