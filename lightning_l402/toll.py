"""
FastAPI integration.

create_toll() wraps a ChallengeHandler so that API endpoints can be put
behind Lightning paywalls with a dependency or a decorator. Outcomes map
to HTTP as:

    Authorized          -> handler runs; dependency returns payment info
    Challenge           -> 402 with WWW-Authenticate and JSON body
    GatewayUnavailable  -> 503 {"error": "Payment system unavailable"}
"""

from __future__ import annotations

import functools
import inspect
from typing import Any, Callable, Dict, Optional, Union

from fastapi import HTTPException, Request

from .challenge import Authorized, ChallengeHandler
from .config import IssuerConfig
from .errors import GatewayUnavailable
from .gateway import PaymentGateway

ResourceResolver = Union[str, Callable[[Request], str]]

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Expose-Headers": "WWW-Authenticate",
}


def default_resource_id(request: Request) -> str:
    """Resource = last path parameter if any, else the request path."""
    params = getattr(request, "path_params", None) or {}
    if params:
        return str(list(params.values())[-1])
    return request.url.path


class TollGate:
    """
    FastAPI dependency for one route configuration.

    Created by Toll.__call__; usable with Depends().
    """

    def __init__(
        self,
        handler: ChallengeHandler,
        resource: Optional[ResourceResolver] = None,
        sats: Optional[int] = None,
        hints: Optional[Dict[str, Any]] = None,
    ):
        self.handler = handler
        self.resource = resource
        self.sats = sats
        self.hints = hints

    def _resolve_resource(self, request: Request) -> str:
        if callable(self.resource):
            return self.resource(request)
        if isinstance(self.resource, str):
            return self.resource
        return default_resource_id(request)

    async def __call__(self, request: Request) -> Dict[str, Any]:
        """
        Raises:
            HTTPException: 402 if payment is required, 503 if the node is down.
        """
        resource_id = self._resolve_resource(request)
        try:
            outcome = await self.handler.authorize(
                request.headers.get("authorization"),
                resource_id,
                price_sats=self.sats,
                hints=self.hints,
            )
        except GatewayUnavailable as exc:
            raise HTTPException(
                status_code=503, detail={"error": "Payment system unavailable"}
            ) from exc

        if isinstance(outcome, Authorized):
            return {
                "paid": True,
                "resource_id": outcome.resource_id,
                "payment_hash": outcome.payment_hash,
                "expires_at": outcome.expires_at,
            }

        raise HTTPException(
            status_code=outcome.status_code,
            detail=outcome.body(),
            headers={**CORS_HEADERS, **outcome.headers()},
        )


class Toll:
    """
    Toll gate instance.

    Usage as dependency:
        toll = create_toll(wallet=gateway, secret="...")
        @app.get("/api/protected/{item_id}")
        async def item(item_id: str, payment=Depends(toll(sats=10))):
            return {"item": item_id}

    Usage as decorator:
        @app.get("/api/data")
        @toll.require(resource="data")
        async def data(request: Request):
            return {"data": "..."}
    """

    def __init__(self, handler: ChallengeHandler):
        self.handler = handler

    @property
    def gateway(self) -> PaymentGateway:
        return self.handler.gateway

    def __call__(
        self,
        resource: Optional[ResourceResolver] = None,
        sats: Optional[int] = None,
        hints: Optional[Dict[str, Any]] = None,
    ) -> TollGate:
        """
        Create a FastAPI dependency for a route.

        Args:
            resource: Fixed resource id, or callable (request) -> resource id.
            sats: Price override for this route.
            hints: Extra fields for the 402 body (e.g. consumption hints).
        """
        return TollGate(self.handler, resource=resource, sats=sats, hints=hints)

    def require(self, **route_opts: Any) -> Callable:
        """
        Decorator that requires payment before executing the handler.

        The route handler must accept ``request: Request``. Payment info is
        injected as ``payment`` if the handler accepts it.
        """

        def decorator(func: Callable) -> Callable:
            gate = self(**route_opts)
            accepts_payment = "payment" in inspect.signature(func).parameters

            @functools.wraps(func)
            async def wrapper(*args: Any, **kwargs: Any) -> Any:
                request = kwargs.get("request")
                if request is None:
                    request = next((a for a in args if isinstance(a, Request)), None)
                if request is None:
                    raise RuntimeError(
                        "toll.require() decorator needs a 'request: Request' parameter "
                        "in the route handler"
                    )

                payment = await gate(request)
                if accepts_payment:
                    kwargs["payment"] = payment
                return await func(*args, **kwargs)

            return wrapper

        return decorator


def create_toll(
    wallet: PaymentGateway,
    secret: str = "",
    location: str = "localhost",
    price_sats: int = 10,
    expiry_seconds: int = 1800,
    invoice_expiry_seconds: int = 3600,
    config: Optional[IssuerConfig] = None,
) -> Toll:
    """
    Create a toll booth for gating API endpoints behind Lightning payments.

    Args:
        wallet: Payment gateway (LndRestGateway, NwcGateway, ...).
        secret: HMAC secret for signing macaroons (>= 32 chars).
        location: Issuer identity, used as the service caveat.
        price_sats: Default price per resource.
        expiry_seconds: Token validity after payment.
        invoice_expiry_seconds: Invoice expiry.
        config: Complete IssuerConfig (overrides the individual arguments).

    Returns:
        Toll instance.
    """
    if not hasattr(wallet, "create_invoice"):
        raise ValueError("lightning-l402: wallet must have a create_invoice() method")

    if config is None:
        config = IssuerConfig(
            secret=secret,
            location=location,
            price_sats=price_sats,
            expiry_seconds=expiry_seconds,
            invoice_expiry_seconds=invoice_expiry_seconds,
        )

    return Toll(ChallengeHandler(config, wallet))
