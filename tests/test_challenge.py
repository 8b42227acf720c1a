"""Tests for the challenge protocol handler."""

import base64
import hashlib
from unittest.mock import AsyncMock

import pytest

from conftest import SECRET, FakeNode
from lightning_l402.challenge import Authorized, Challenge, ChallengeHandler
from lightning_l402.config import IssuerConfig
from lightning_l402.errors import GatewayUnavailable
from lightning_l402.macaroon import attenuate, decode_macaroon, mint


NOW = 1_700_000_000.0


class Clock:
    def __init__(self, t=NOW):
        self.t = t

    def __call__(self):
        return self.t


def make_handler(node, clock=None, **config):
    config.setdefault("price_sats", 10)
    config.setdefault("expiry_seconds", 1800)
    return ChallengeHandler(IssuerConfig(secret=SECRET, **config), node, now=clock or Clock())


async def pay(node, challenge):
    result = await node.pay_invoice(challenge.invoice)
    return f"L402 {challenge.macaroon}:{result.preimage}"


class TestIssueChallenge:
    @pytest.mark.asyncio
    async def test_no_token_gets_challenge(self, node):
        handler = make_handler(node, location="example.com")
        outcome = await handler.authorize(None, "video-1")

        assert isinstance(outcome, Challenge)
        assert outcome.status_code == 402
        assert outcome.price_sats == 10
        assert outcome.expiry_seconds == 1800
        assert outcome.reason is None
        assert node.created == 1

        mac = decode_macaroon(outcome.macaroon)
        assert mac.payment_hash == outcome.payment_hash
        assert mac.caveat_value("resource_id") == "video-1"
        assert mac.caveat_value("service") == "example.com"

    @pytest.mark.asyncio
    async def test_header_and_body(self, node):
        outcome = await make_handler(node).authorize(None, "video-1", hints={"player_url": "x"})
        assert outcome.header().startswith("L402 ")
        assert f'macaroon="{outcome.macaroon}"' in outcome.header()
        assert f'invoice="{outcome.invoice}"' in outcome.header()

        body = outcome.body()
        assert body["resource_id"] == "video-1"
        assert body["invoice"] == outcome.invoice
        assert body["price_sats"] == 10
        assert body["token_expiry_seconds"] == 1800
        assert body["player_url"] == "x"

    @pytest.mark.asyncio
    async def test_invoice_sized_and_described(self):
        gateway = AsyncMock()
        gateway.create_invoice = AsyncMock(side_effect=FakeNode().create_invoice)
        handler = make_handler(gateway, invoice_expiry_seconds=600)

        await handler.authorize(None, "abc", price_sats=25)

        gateway.create_invoice.assert_awaited_once_with(25, "L402 access: abc", 600)

    @pytest.mark.asyncio
    async def test_gateway_unavailable_propagates(self):
        gateway = AsyncMock()
        gateway.create_invoice = AsyncMock(side_effect=GatewayUnavailable("LND 503: down"))
        with pytest.raises(GatewayUnavailable):
            await make_handler(gateway).authorize(None, "abc")

    @pytest.mark.asyncio
    async def test_bad_payment_hash_from_gateway(self):
        gateway = AsyncMock()
        gateway.create_invoice = AsyncMock(return_value=type(
            "R", (), {"payment_request": "lnbc1", "payment_hash": "zz"}
        )())
        with pytest.raises(GatewayUnavailable):
            await make_handler(gateway).authorize(None, "abc")


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_paid_token_is_authorized(self, node):
        handler = make_handler(node)
        challenge = await handler.authorize(None, "video-1")
        auth = await pay(node, challenge)

        outcome = await handler.authorize(auth, "video-1")
        assert isinstance(outcome, Authorized)
        assert outcome.resource_id == "video-1"
        assert outcome.payment_hash == challenge.payment_hash
        assert outcome.expires_at == int(NOW) + 1800
        assert node.created == 1

    @pytest.mark.asyncio
    async def test_unpaid_token(self, node):
        handler = make_handler(node)
        challenge = await handler.authorize(None, "video-1")

        outcome = await handler.authorize(f"L402 {challenge.macaroon}:{'00' * 32}", "video-1")
        assert isinstance(outcome, Challenge)
        assert outcome.reason == "payment_not_verified"
        assert outcome.macaroon != challenge.macaroon
        assert node.created == 2

    @pytest.mark.asyncio
    async def test_wrong_resource(self, node):
        handler = make_handler(node)
        auth = await pay(node, await handler.authorize(None, "video-1"))

        outcome = await handler.authorize(auth, "video-2")
        assert isinstance(outcome, Challenge)
        assert outcome.reason == "resource_mismatch"
        assert outcome.resource_id == "video-2"
        assert "video-1" in outcome.body()["message"]

    @pytest.mark.asyncio
    async def test_expired(self, node):
        clock = Clock()
        handler = make_handler(node, clock=clock)
        auth = await pay(node, await handler.authorize(None, "video-1"))

        clock.t = NOW + 1800
        outcome = await handler.authorize(auth, "video-1")
        assert isinstance(outcome, Challenge)
        assert outcome.reason == "expired"

    @pytest.mark.parametrize(
        "header",
        ["L402 nocolon", "L402 :" + "ab" * 32, "L402 mac:", "L402 mac:zz", "L402 garbage:" + "ab" * 32],
    )
    @pytest.mark.asyncio
    async def test_malformed_token(self, node, header):
        outcome = await make_handler(node).authorize(header, "video-1")
        assert isinstance(outcome, Challenge)
        assert outcome.reason == "malformed_token"

    def test_deeply_nested_macaroon_is_malformed(self, node):
        nested = base64.urlsafe_b64encode(b"[" * 100_000).decode().rstrip("=")
        result = make_handler(node).check(f"L402 {nested}:{'00' * 32}", "x")
        assert result.valid is False
        assert result.reason == "malformed_token"

    @pytest.mark.asyncio
    async def test_other_scheme_is_no_token(self, node):
        outcome = await make_handler(node).authorize("Bearer abc", "video-1")
        assert isinstance(outcome, Challenge)
        assert outcome.reason is None

    @pytest.mark.asyncio
    async def test_foreign_issuer(self, node):
        preimage = bytes.fromhex("cd" * 32)
        forged = mint(
            "some-other-server-secret-32-chars!!",
            hashlib.sha256(preimage).hexdigest(),
            "video-1",
            1800,
            now=Clock(),
        )
        outcome = await make_handler(node).authorize(
            f"L402 {forged.serialize()}:{preimage.hex()}", "video-1"
        )
        assert outcome.reason == "signature_invalid"

    @pytest.mark.asyncio
    async def test_attenuated_token_still_admitted(self, node):
        handler = make_handler(node)
        challenge = await handler.authorize(None, "video-1")
        preimage = (await node.pay_invoice(challenge.invoice)).preimage
        narrowed = attenuate(decode_macaroon(challenge.macaroon), "max_uses", "1")

        outcome = await handler.authorize(f"L402 {narrowed.serialize()}:{preimage}", "video-1")
        assert isinstance(outcome, Authorized)

    @pytest.mark.asyncio
    async def test_check_is_side_effect_free(self, node):
        handler = make_handler(node)
        auth = await pay(node, await handler.authorize(None, "video-1"))
        assert handler.check(auth, "video-1").valid is True
        assert handler.check(None, "video-1") is None
        assert node.created == 1
