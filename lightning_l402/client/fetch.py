"""
Auto-pay HTTP client for L402-paywalled APIs.

When an endpoint returns 402, the client hands the invoice to a
BudgetAgent (which pays only within budget and records the spend), then
retries with ``Authorization: L402 <macaroon>:<preimage>``.

Paid credentials are cached per URL until their validity window closes, so
repeat requests reuse them instead of paying again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..agent import BudgetAgent
from ..errors import BudgetExceeded, L402Error
from ..l402 import format_authorization, parse_challenge

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 300


@dataclass
class CachedCredential:
    """Cached L402 credential for a paid endpoint."""
    macaroon: str
    preimage: str
    expiry: float  # unix timestamp
    amount_sats: int = 0
    payment_hash: Optional[str] = None

    @property
    def authorization(self) -> str:
        return format_authorization(self.macaroon, self.preimage)


@dataclass
class TollResponse:
    """Response from a toll-gated request."""
    status_code: int
    headers: Dict[str, str]
    body: Any
    paid: bool = False
    amount_sats: int = 0
    payment_hash: Optional[str] = None

    def json(self) -> Any:
        """Return body as parsed JSON (already parsed)."""
        return self.body

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _to_toll_response(response: httpx.Response, **payment: Any) -> TollResponse:
    return TollResponse(
        status_code=response.status_code,
        headers=dict(response.headers),
        body=_body(response),
        **payment,
    )


def _extract_challenge(response: httpx.Response) -> Dict[str, Any]:
    """Invoice + macaroon from the JSON body, falling back to WWW-Authenticate."""
    body = _body(response)
    if isinstance(body, dict) and isinstance(body.get("detail"), dict):
        # FastAPI wraps HTTPException payloads as {"detail": {...}}
        body = body["detail"]
    challenge: Dict[str, Any] = dict(body) if isinstance(body, dict) else {}
    if not challenge.get("invoice") or not challenge.get("macaroon"):
        parsed = parse_challenge(response.headers.get("www-authenticate"))
        if parsed is None:
            raise L402Error("402 response carries no L402 challenge")
        challenge.update(parsed)
    return challenge


class TollClient:
    """
    Automated L402 payment client.

    Usage:
        client = TollClient(agent)
        response = await client.fetch("https://api.example.com/api/protected/abc")
        data = response.json()
    """

    def __init__(
        self,
        agent: BudgetAgent,
        max_sats: Optional[int] = None,
        auto_retry: bool = True,
        headers: Optional[Dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            agent: Budget-enforced agent that settles invoices.
            max_sats: Optional per-request price cap (on top of the agent's budget).
            auto_retry: Pay and retry on 402.
            headers: Default headers for all requests.
            http_client: Shared httpx client (one is created if omitted).
        """
        self.agent = agent
        self.max_sats = max_sats
        self.auto_retry = auto_retry
        self.default_headers = headers or {}
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None

        # URL -> CachedCredential
        self._credential_cache: Dict[str, CachedCredential] = {}

        self.request_count = 0
        self.payment_count = 0

    def _cached(self, url: str) -> Optional[CachedCredential]:
        cached = self._credential_cache.get(url)
        if cached is not None and cached.expiry <= time.time():
            del self._credential_cache[url]
            return None
        return cached

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> TollResponse:
        """
        Fetch a URL, paying its L402 challenge if needed.

        Raises:
            BudgetExceeded: the price exceeds max_sats or the agent's budget.
            PaymentFailed / GatewayUnavailable: the payment did not go through.
        """
        self.request_count += 1
        req_headers = {**self.default_headers, **(headers or {})}
        kwargs: Dict[str, Any] = {}
        if body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = body

        cached = self._cached(url)
        if cached is not None:
            response = await self._http.request(
                method, url, headers={**req_headers, "Authorization": cached.authorization}, **kwargs
            )
            if response.status_code != 402:
                return _to_toll_response(response, payment_hash=cached.payment_hash)
            logger.info("Cached credential for %s was rejected", url)
            del self._credential_cache[url]
        else:
            response = await self._http.request(method, url, headers=req_headers, **kwargs)

        if response.status_code != 402 or not self.auto_retry:
            return _to_toll_response(response)

        challenge = _extract_challenge(response)
        invoice, macaroon = challenge["invoice"], challenge["macaroon"]

        if self.max_sats is not None:
            decoded = await self.agent.inspect(invoice)
            if decoded.amount_sats > self.max_sats:
                raise BudgetExceeded(decoded.amount_sats, self.max_sats, self.max_sats)

        receipt = await self.agent.settle(invoice)
        self.payment_count += 1

        credential = CachedCredential(
            macaroon=macaroon,
            preimage=receipt.preimage,
            expiry=time.time() + int(challenge.get("token_expiry_seconds") or DEFAULT_TOKEN_LIFETIME),
            amount_sats=receipt.amount_sats,
            payment_hash=receipt.payment_hash or challenge.get("payment_hash"),
        )
        retry = await self._http.request(
            method, url, headers={**req_headers, "Authorization": credential.authorization}, **kwargs
        )
        if retry.status_code < 400:
            self._credential_cache[url] = credential

        return _to_toll_response(
            retry,
            paid=True,
            amount_sats=receipt.amount_sats,
            payment_hash=credential.payment_hash,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Request counts plus the agent's budget snapshot."""
        status = self.agent.budget_status()
        return {
            "request_count": self.request_count,
            "payment_count": self.payment_count,
            "cached_credentials": len(self._credential_cache),
            "total_spent": status.spent,
            "remaining": status.remaining,
        }

    def clear_cache(self) -> None:
        self._credential_cache.clear()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
