"""
L402 protocol header parsing and formatting.

Implements the L402 (formerly LSAT) protocol for HTTP 402 Payment Required.

WWW-Authenticate: L402 macaroon="...", invoice="lnbc..."
Authorization: L402 <macaroon>:<preimage>
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import MalformedToken

SCHEMES = ("l402", "lsat")

TOKEN_FORMAT = {
    "header": "Authorization: L402 <macaroon>:<preimage>",
    "note": (
        "macaroon is the base64 string from the WWW-Authenticate header. "
        "preimage is the 64-char hex string your wallet returns after paying "
        "the invoice. Concatenate with a colon, no spaces."
    ),
}

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
_HEX = re.compile(r"(?:[0-9a-fA-F]{2})+")


@dataclass(frozen=True)
class L402Token:
    """Parsed L402 authorization credentials."""
    macaroon: str
    preimage: bytes

    @property
    def preimage_hex(self) -> str:
        return self.preimage.hex()

    def __str__(self) -> str:
        return f"{self.macaroon}:{self.preimage_hex}"


def format_token(macaroon: str, preimage_hex: str) -> str:
    """The presentable token: ``<macaroon>:<hex preimage>``."""
    return f"{macaroon}:{preimage_hex}"


def format_authorization(macaroon: str, preimage_hex: str) -> str:
    """Authorization header value for a paid request."""
    return f"L402 {format_token(macaroon, preimage_hex)}"


def format_challenge(invoice: str, macaroon: str) -> str:
    """
    Format a WWW-Authenticate header value for a 402 response.

    Args:
        invoice: Bolt11 invoice string.
        macaroon: Base64url-encoded macaroon.

    Returns:
        WWW-Authenticate header value.
    """
    return f'L402 macaroon="{macaroon}", invoice="{invoice}"'


def parse_challenge(header: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse a WWW-Authenticate: L402 header into {"macaroon", "invoice"}.

    Returns None if the header is not an L402 challenge or lacks either field.
    """
    if not header or not isinstance(header, str):
        return None
    trimmed = header.strip()
    scheme, _, params = trimmed.partition(" ")
    if scheme.lower() not in SCHEMES:
        return None
    fields = dict(_CHALLENGE_PARAM.findall(params))
    if not fields.get("macaroon") or not fields.get("invoice"):
        return None
    return {"macaroon": fields["macaroon"], "invoice": fields["invoice"]}


def format_challenge_body(
    invoice: str,
    macaroon: str,
    payment_hash: str,
    price_sats: int,
    expiry_seconds: int,
    resource_id: str,
    error: Optional[Any] = None,
    hints: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Format a full 402 response body.

    Args:
        invoice: Bolt11 invoice string.
        macaroon: Base64url-encoded macaroon.
        payment_hash: Payment hash (hex).
        price_sats: Amount in satoshis.
        expiry_seconds: How long the token is valid once paid.
        resource_id: Resource this challenge is for.
        error: Why a presented token was rejected (an L402Error), if any.
        hints: Extra fields merged into the body (consumption hints, etc.).

    Returns:
        Dict suitable for JSON response.
    """
    body: Dict[str, Any] = {
        "error": "Payment Required",
        "message": error.message if error else f"Pay {price_sats} sats to access this resource",
        "reason": error.code if error else None,
        "price_sats": price_sats,
        "token_expiry_seconds": expiry_seconds,
        "resource_id": resource_id,
        "macaroon": macaroon,
        "invoice": invoice,
        "payment_hash": payment_hash,
        "token_format": dict(TOKEN_FORMAT),
    }
    if hints:
        body.update(hints)
    return body


def parse_token(token: str) -> L402Token:
    """
    Split ``<macaroon>:<hex preimage>``.

    Raises:
        MalformedToken: missing colon, empty halves, or non-hex preimage.
    """
    colon_idx = token.find(":")
    if colon_idx == -1:
        raise MalformedToken("Invalid token format — expected macaroon:preimage")

    macaroon = token[:colon_idx].strip()
    preimage = token[colon_idx + 1:].strip()

    if not macaroon or not preimage:
        raise MalformedToken("Invalid token format — empty macaroon or preimage")

    if not _HEX.fullmatch(preimage):
        raise MalformedToken("Invalid token format — preimage must be hex")
    preimage_bytes = bytes.fromhex(preimage)

    return L402Token(macaroon=macaroon, preimage=preimage_bytes)


def parse_authorization(auth_header: Optional[str]) -> Optional[L402Token]:
    """
    Parse an Authorization: L402 header.

    Format: L402 <macaroon>:<preimage>  (LSAT accepted as an alias)

    Args:
        auth_header: Full Authorization header value.

    Returns:
        L402Token, or None if no L402 credentials were presented at all.

    Raises:
        MalformedToken: the L402 scheme is present but the token is unusable.
    """
    if not auth_header or not isinstance(auth_header, str):
        return None

    trimmed = auth_header.strip()
    scheme, _, credentials = trimmed.partition(" ")
    if scheme.lower() not in SCHEMES:
        return None

    return parse_token(credentials.strip())
