"""
Macaroons with HMAC-SHA256 chaining, bound to Lightning payments.

A macaroon is a bearer credential with embedded caveats.
Structure: { location, id, caveats, signature }

The id is the payment hash, so the macaroon is only usable by whoever holds
the matching preimage (i.e. whoever paid the invoice). Caveats restrict
which resource the macaroon opens and until when. The signature is a
chained HMAC: each caveat is folded into the previous signature, which
means any holder can append a caveat (attenuate) and re-derive a valid
signature without the server secret, but nobody can remove one.

Verification is a pure function of (secret, macaroon, preimage, resource,
clock). Nothing is stored server-side.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Union

from .errors import (
    Expired,
    MalformedToken,
    PaymentNotVerified,
    ResourceMismatch,
    SignatureInvalid,
    VerificationError,
)

# libmacaroons / macaroons.js derive the root key from the secret this way.
KEY_GENERATOR = b"macaroons-key-generator"

RESOURCE_ID = "resource_id"
EXPIRES_AT = "expires_at"
SERVICE = "service"

Secret = Union[str, bytes]


@dataclass(frozen=True)
class Caveat:
    """A single first-party caveat, "key = value" on the wire."""
    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.key} = {self.value}"

    def encode(self) -> bytes:
        return str(self).encode("utf-8")

    @classmethod
    def parse(cls, raw: str) -> "Caveat":
        """
        Parse "key = value". Raises MalformedToken if there is no '='.

        Only the single separator space is dropped from the value, so
        str(Caveat.parse(s)) == s for anything str(Caveat) produced.
        """
        if not isinstance(raw, str) or "=" not in raw:
            raise MalformedToken(f"Malformed caveat: {raw!r}")
        key, value = raw.split("=", 1)
        key = key.strip()
        if not key:
            raise MalformedToken(f"Malformed caveat: {raw!r}")
        if value.startswith(" "):
            value = value[1:]
        return cls(key=key, value=value)


@dataclass(frozen=True)
class Macaroon:
    """Decoded macaroon structure."""
    location: str
    identifier: bytes              # payment hash (32 bytes)
    signature: bytes               # HMAC chain result
    caveats: Tuple[Caveat, ...] = field(default_factory=tuple)

    @property
    def payment_hash(self) -> str:
        return self.identifier.hex()

    def caveat_value(self, key: str) -> Optional[str]:
        """First value for ``key``, or None."""
        for caveat in self.caveats:
            if caveat.key == key:
                return caveat.value
        return None

    def serialize(self) -> str:
        """Base64url (unpadded) JSON, the wire format."""
        payload = {
            "location": self.location,
            "id": self.identifier.hex(),
            "caveats": [str(c) for c in self.caveats],
            "signature": self.signature.hex(),
        }
        raw = urlsafe_b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return raw.decode("ascii").rstrip("=")


@dataclass
class VerifyResult:
    """Result of macaroon verification."""
    valid: bool
    error: Optional[VerificationError] = None
    resource_id: Optional[str] = None
    expires_at: Optional[int] = None
    payment_hash: Optional[str] = None

    @property
    def reason(self) -> Optional[str]:
        return self.error.code if self.error else None


def _secret_bytes(secret: Secret) -> bytes:
    return secret.encode("utf-8") if isinstance(secret, str) else secret


def _root_key(secret: Secret) -> bytes:
    return hmac.new(KEY_GENERATOR, _secret_bytes(secret), hashlib.sha256).digest()


def fold_caveat(signature: bytes, caveat: Caveat) -> bytes:
    """One step of the chain: HMAC(previous signature, caveat bytes)."""
    return hmac.new(signature, caveat.encode(), hashlib.sha256).digest()


def compute_signature(secret: Secret, identifier: bytes, caveats: Tuple[Caveat, ...]) -> bytes:
    """Recompute the full HMAC chain from the server secret."""
    sig = hmac.new(_root_key(secret), identifier, hashlib.sha256).digest()
    for caveat in caveats:
        sig = fold_caveat(sig, caveat)
    return sig


def _parse_payment_hash(payment_hash: Union[str, bytes]) -> bytes:
    if isinstance(payment_hash, bytes):
        identifier = payment_hash
    else:
        try:
            identifier = bytes.fromhex(payment_hash)
        except (TypeError, ValueError) as exc:
            raise ValueError("payment_hash must be hex-encoded") from exc
    if len(identifier) != 32:
        raise ValueError("payment_hash must be 32 bytes")
    return identifier


def mint(
    secret: Secret,
    payment_hash: Union[str, bytes],
    resource_id: str,
    expiry_seconds: int,
    service: Optional[str] = None,
    location: str = "localhost",
    now: Optional[Callable[[], float]] = None,
) -> Macaroon:
    """
    Mint a macaroon for one resource, bound to one payment.

    Caveats are appended in fixed order: resource_id, expires_at, service.

    Args:
        secret: Server's HMAC secret.
        payment_hash: Lightning payment hash (hex or raw 32 bytes).
        resource_id: Resource the token grants access to.
        expiry_seconds: Token validity from now.
        service: Issuer tag (defaults to ``location``).
        location: Issuer identity.
        now: Clock override (returns unix seconds).

    Returns:
        Signed Macaroon.
    """
    if not secret:
        raise ValueError("Macaroon secret is required")
    if not resource_id:
        raise ValueError("resource_id is required for macaroon")

    identifier = _parse_payment_hash(payment_hash)
    clock = now or time.time
    expires_at = int(clock()) + int(expiry_seconds)

    caveats = (
        Caveat(RESOURCE_ID, resource_id),
        Caveat(EXPIRES_AT, str(expires_at)),
        Caveat(SERVICE, service or location),
    )
    signature = compute_signature(secret, identifier, caveats)
    return Macaroon(location=location, identifier=identifier, signature=signature, caveats=caveats)


def attenuate(macaroon: Macaroon, key: str, value: str) -> Macaroon:
    """
    Append a caveat without the server secret.

    The new signature is HMAC(old signature, caveat), so the result verifies
    against the same secret but can only be more restrictive.
    """
    key = key.strip()
    if not key or "=" in key:
        raise ValueError(f"Invalid caveat key: {key!r}")
    caveat = Caveat(key, str(value).strip())
    return Macaroon(
        location=macaroon.location,
        identifier=macaroon.identifier,
        signature=fold_caveat(macaroon.signature, caveat),
        caveats=macaroon.caveats + (caveat,),
    )


def decode_macaroon(raw: str) -> Macaroon:
    """
    Decode a serialized macaroon.

    Raises:
        MalformedToken: if the string is not a well-formed macaroon.
    """
    if not raw or not isinstance(raw, str):
        raise MalformedToken("Empty macaroon")
    try:
        padded = raw + "=" * (-len(raw) % 4)
        parsed = json.loads(urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError, RecursionError) as exc:
        raise MalformedToken("Macaroon is not valid base64url JSON") from exc

    if not isinstance(parsed, dict):
        raise MalformedToken("Macaroon payload must be an object")

    ident, signature, caveats = parsed.get("id"), parsed.get("signature"), parsed.get("caveats")
    if not ident or not signature or not isinstance(caveats, list):
        raise MalformedToken("Invalid macaroon structure")
    try:
        identifier = bytes.fromhex(ident)
        sig = bytes.fromhex(signature)
    except (TypeError, ValueError) as exc:
        raise MalformedToken("Macaroon id and signature must be hex") from exc

    return Macaroon(
        location=str(parsed.get("location") or ""),
        identifier=identifier,
        signature=sig,
        caveats=tuple(Caveat.parse(c) for c in caveats),
    )


def verify_preimage(preimage: Union[str, bytes], payment_hash: Union[str, bytes]) -> bool:
    """
    Verify that SHA256(preimage) == payment_hash, in constant time.

    Accepts hex strings or raw bytes for either argument.
    """
    if not preimage or not payment_hash:
        return False
    try:
        pre = bytes.fromhex(preimage) if isinstance(preimage, str) else preimage
        expected = bytes.fromhex(payment_hash) if isinstance(payment_hash, str) else payment_hash
    except ValueError:
        return False
    return hmac.compare_digest(hashlib.sha256(pre).digest(), expected)


def _check_caveats(
    macaroon: Macaroon,
    requested_resource_id: str,
    now: float,
) -> Tuple[Optional[VerificationError], Optional[str], Optional[int]]:
    resource_id: Optional[str] = None
    expires_at: Optional[int] = None

    for caveat in macaroon.caveats:
        if caveat.key == RESOURCE_ID:
            resource_id = caveat.value
            if caveat.value != requested_resource_id:
                return ResourceMismatch(caveat.value, requested_resource_id), resource_id, expires_at

        elif caveat.key == EXPIRES_AT:
            try:
                expires_at = int(caveat.value)
            except ValueError:
                return Expired(None), resource_id, None
            if expires_at <= now:
                return Expired(expires_at), resource_id, expires_at

        # service: any value accepted (cross-service delegation).
        # Anything else: client-side attenuation, accepted and ignored.

    return None, resource_id, expires_at


def verify(
    secret: Secret,
    macaroon: Macaroon,
    preimage: Union[str, bytes],
    requested_resource_id: str,
    now: Optional[Callable[[], float]] = None,
) -> VerifyResult:
    """
    Verify a presented macaroon + preimage for a resource.

    Checks, in order:
    1. SHA256(preimage) equals the identifier (the invoice was paid).
    2. Caveats: resource_id matches, expires_at is in the future.
    3. The HMAC chain recomputes to the stored signature.

    A caveat failure is only reported when the signature is authentic;
    otherwise SignatureInvalid wins, so a forged scope never leaks back.

    Returns:
        VerifyResult with valid flag and, on failure, a typed error.
    """
    clock = now or time.time
    payment_hash = macaroon.payment_hash

    if not verify_preimage(preimage, macaroon.identifier):
        return VerifyResult(valid=False, error=PaymentNotVerified(), payment_hash=payment_hash)

    caveat_error, resource_id, expires_at = _check_caveats(
        macaroon, requested_resource_id, clock()
    )

    expected = compute_signature(secret, macaroon.identifier, macaroon.caveats)
    if not hmac.compare_digest(expected, macaroon.signature):
        return VerifyResult(valid=False, error=SignatureInvalid(), payment_hash=payment_hash)

    if caveat_error is not None:
        return VerifyResult(
            valid=False,
            error=caveat_error,
            resource_id=resource_id,
            expires_at=expires_at,
            payment_hash=payment_hash,
        )

    return VerifyResult(
        valid=True,
        resource_id=resource_id,
        expires_at=expires_at,
        payment_hash=payment_hash,
    )
