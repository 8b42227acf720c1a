"""Tests for the toll gate with FastAPI."""

from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import Depends, FastAPI, HTTPException
from fastapi.testclient import TestClient

from conftest import SECRET, FakeNode
from lightning_l402 import create_toll
from lightning_l402.errors import ConfigError, GatewayUnavailable
from lightning_l402.macaroon import decode_macaroon


def make_fake_request(
    path: str = "/api/test",
    auth_header: Optional[str] = None,
    path_params: Optional[dict] = None,
):
    """Create a mock FastAPI Request object."""
    request = MagicMock()
    request.url.path = path
    request.path_params = path_params or {}
    request.headers = {}
    if auth_header:
        request.headers["authorization"] = auth_header
    return request


async def pay_challenge(node, exc_info):
    body = exc_info.value.detail
    result = await node.pay_invoice(body["invoice"])
    return f"L402 {body['macaroon']}:{result.preimage}"


class TestCreateToll:
    def test_creates_with_wallet_instance(self, node):
        toll = create_toll(wallet=node, secret=SECRET)
        assert toll is not None
        assert toll.gateway is node

    def test_requires_secret(self, node):
        with pytest.raises(ConfigError, match="L402_SECRET is required"):
            create_toll(wallet=node, secret="")

    def test_rejects_short_secret(self, node):
        with pytest.raises(ConfigError, match="too short"):
            create_toll(wallet=node, secret="short")

    def test_requires_create_invoice_method(self):
        with pytest.raises(ValueError, match="create_invoice"):
            create_toll(wallet=object(), secret=SECRET)


class TestTollGate:
    """Test the toll gate dependency behavior."""

    @pytest.mark.asyncio
    async def test_returns_402_without_auth(self, node):
        toll = create_toll(wallet=node, secret=SECRET)
        gate = toll(sats=5)

        with pytest.raises(HTTPException) as exc_info:
            await gate(make_fake_request())

        assert exc_info.value.status_code == 402
        body = exc_info.value.detail
        assert body["error"] == "Payment Required"
        assert body["price_sats"] == 5
        assert body["resource_id"] == "/api/test"
        assert body["invoice"].startswith("lnbcrt5")
        assert exc_info.value.headers["WWW-Authenticate"].startswith("L402 macaroon=")
        assert exc_info.value.headers["Access-Control-Expose-Headers"] == "WWW-Authenticate"

    @pytest.mark.asyncio
    async def test_accepts_paid_token(self, node):
        toll = create_toll(wallet=node, secret=SECRET)
        gate = toll(sats=5)

        with pytest.raises(HTTPException) as exc_info:
            await gate(make_fake_request())
        auth = await pay_challenge(node, exc_info)

        result = await gate(make_fake_request(auth_header=auth))
        assert result["paid"] is True
        assert result["resource_id"] == "/api/test"
        assert result["payment_hash"] == exc_info.value.detail["payment_hash"]

    @pytest.mark.asyncio
    async def test_resource_from_path_param(self, node):
        gate = create_toll(wallet=node, secret=SECRET)()
        request = make_fake_request(path="/videos/abc", path_params={"video_id": "abc"})

        with pytest.raises(HTTPException) as exc_info:
            await gate(request)

        mac = decode_macaroon(exc_info.value.detail["macaroon"])
        assert mac.caveat_value("resource_id") == "abc"

    @pytest.mark.asyncio
    async def test_resource_callable(self, node):
        gate = create_toll(wallet=node, secret=SECRET)(resource=lambda r: "fixed-" + r.url.path)

        with pytest.raises(HTTPException) as exc_info:
            await gate(make_fake_request(path="/x"))

        assert exc_info.value.detail["resource_id"] == "fixed-/x"

    @pytest.mark.asyncio
    async def test_token_for_other_resource_is_rechallenged(self, node):
        toll = create_toll(wallet=node, secret=SECRET)

        with pytest.raises(HTTPException) as exc_info:
            await toll(resource="a")(make_fake_request())
        auth = await pay_challenge(node, exc_info)

        with pytest.raises(HTTPException) as exc_info:
            await toll(resource="b")(make_fake_request(auth_header=auth))

        assert exc_info.value.status_code == 402
        assert exc_info.value.detail["reason"] == "resource_mismatch"

    @pytest.mark.asyncio
    async def test_rejects_garbage_macaroon(self, node):
        gate = create_toll(wallet=node, secret=SECRET)(sats=5)

        with pytest.raises(HTTPException) as exc_info:
            await gate(make_fake_request(auth_header="L402 garbage:deadbeef"))

        assert exc_info.value.status_code == 402
        assert exc_info.value.detail["reason"] == "malformed_token"

    @pytest.mark.asyncio
    async def test_rejects_wrong_preimage(self, node):
        gate = create_toll(wallet=node, secret=SECRET)(sats=5)

        with pytest.raises(HTTPException) as exc_info:
            await gate(make_fake_request())
        mac = exc_info.value.detail["macaroon"]

        with pytest.raises(HTTPException) as exc_info:
            await gate(make_fake_request(auth_header=f"L402 {mac}:{'00' * 32}"))

        assert exc_info.value.status_code == 402
        assert exc_info.value.detail["reason"] == "payment_not_verified"
        assert "preimage" in exc_info.value.detail["message"].lower()

    @pytest.mark.asyncio
    async def test_gateway_down_is_503(self):
        wallet = AsyncMock()
        wallet.create_invoice = AsyncMock(side_effect=GatewayUnavailable("LND timeout"))
        gate = create_toll(wallet=wallet, secret=SECRET)(sats=5)

        with pytest.raises(HTTPException) as exc_info:
            await gate(make_fake_request())

        assert exc_info.value.status_code == 503
        assert exc_info.value.detail == {"error": "Payment system unavailable"}

    @pytest.mark.asyncio
    async def test_hints_in_body(self, node):
        gate = create_toll(wallet=node, secret=SECRET)(hints={"player_url": "/player"})

        with pytest.raises(HTTPException) as exc_info:
            await gate(make_fake_request())

        assert exc_info.value.detail["player_url"] == "/player"


class TestRequireDecorator:
    @pytest.mark.asyncio
    async def test_blocks_then_injects_payment(self, node):
        toll = create_toll(wallet=node, secret=SECRET)

        @toll.require(resource="data", sats=3)
        async def handler(request, payment=None):
            return {"data": 42, "payment": payment}

        with pytest.raises(HTTPException) as exc_info:
            await handler(request=make_fake_request())
        assert exc_info.value.detail["price_sats"] == 3
        auth = await pay_challenge(node, exc_info)

        result = await handler(request=make_fake_request(auth_header=auth))
        assert result["data"] == 42
        assert result["payment"]["resource_id"] == "data"

    @pytest.mark.asyncio
    async def test_needs_request(self, node):
        toll = create_toll(wallet=node, secret=SECRET)

        @toll.require()
        async def handler():
            return {}

        with pytest.raises(RuntimeError, match="request"):
            await handler()


class TestFastAPIApp:
    def test_full_flow_over_http(self):
        node = FakeNode()
        toll = create_toll(wallet=node, secret=SECRET, price_sats=21)
        app = FastAPI()

        @app.get("/api/joke/{joke_id}")
        async def joke(joke_id: str, payment=Depends(toll())):
            return {"joke": f"joke #{joke_id}", "paid_hash": payment["payment_hash"]}

        client = TestClient(app)

        challenge = client.get("/api/joke/7")
        assert challenge.status_code == 402
        assert challenge.headers["www-authenticate"].startswith("L402 ")
        body = challenge.json()["detail"]
        assert body["resource_id"] == "7"
        assert body["price_sats"] == 21

        preimage = node._invoices[body["invoice"]][2].hex()
        ok = client.get(
            "/api/joke/7", headers={"Authorization": f"L402 {body['macaroon']}:{preimage}"}
        )
        assert ok.status_code == 200
        assert ok.json() == {"joke": "joke #7", "paid_hash": body["payment_hash"]}

        other = client.get(
            "/api/joke/8", headers={"Authorization": f"L402 {body['macaroon']}:{preimage}"}
        )
        assert other.status_code == 402
        assert other.json()["detail"]["reason"] == "resource_mismatch"
