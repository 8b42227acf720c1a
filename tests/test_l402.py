"""Tests for the L402 protocol module."""

import pytest

from lightning_l402.errors import MalformedToken, ResourceMismatch
from lightning_l402.l402 import (
    format_authorization,
    format_challenge,
    format_challenge_body,
    parse_authorization,
    parse_challenge,
    parse_token,
)


PREIMAGE_HEX = "ab" * 32


class TestFormatChallenge:
    def test_basic_format(self):
        result = format_challenge("lnbc50n1pj...", "eyJpZCI...")
        assert result == 'L402 macaroon="eyJpZCI...", invoice="lnbc50n1pj..."'

    def test_parse_roundtrip(self):
        header = format_challenge("lnbc20n1pjq5xxxx", "eyJpZCI6ImFiYzEyMyJ9")
        assert parse_challenge(header) == {
            "macaroon": "eyJpZCI6ImFiYzEyMyJ9",
            "invoice": "lnbc20n1pjq5xxxx",
        }

    def test_parse_lsat_scheme(self):
        parsed = parse_challenge('LSAT macaroon="m", invoice="i"')
        assert parsed == {"macaroon": "m", "invoice": "i"}

    def test_parse_rejects_other_schemes(self):
        assert parse_challenge('Bearer realm="x"') is None
        assert parse_challenge(None) is None
        assert parse_challenge('L402 macaroon="m"') is None


class TestFormatChallengeBody:
    def test_includes_all_fields(self):
        body = format_challenge_body(
            invoice="lnbc100n1...",
            macaroon="eyJpZCI...",
            payment_hash="abc123",
            price_sats=10,
            expiry_seconds=1800,
            resource_id="video-1",
        )
        assert body["error"] == "Payment Required"
        assert body["message"] == "Pay 10 sats to access this resource"
        assert body["reason"] is None
        assert body["invoice"] == "lnbc100n1..."
        assert body["macaroon"] == "eyJpZCI..."
        assert body["payment_hash"] == "abc123"
        assert body["price_sats"] == 10
        assert body["token_expiry_seconds"] == 1800
        assert body["resource_id"] == "video-1"
        assert "<macaroon>:<preimage>" in body["token_format"]["header"]

    def test_error_is_surfaced(self):
        body = format_challenge_body(
            invoice="lnbc...",
            macaroon="eyJ...",
            payment_hash="abc",
            price_sats=1,
            expiry_seconds=60,
            resource_id="b",
            error=ResourceMismatch("a", "b"),
        )
        assert body["reason"] == "resource_mismatch"
        assert "'a'" in body["message"] and "'b'" in body["message"]

    def test_hints_are_merged(self):
        body = format_challenge_body(
            invoice="lnbc...",
            macaroon="eyJ...",
            payment_hash="abc",
            price_sats=1,
            expiry_seconds=60,
            resource_id="v",
            hints={"player_url": "https://example.com/player?v={resource_id}"},
        )
        assert body["player_url"] == "https://example.com/player?v={resource_id}"


class TestParseToken:
    def test_valid(self):
        token = parse_token(f"eyJpZCI6ImFiYzEyMyJ9:{PREIMAGE_HEX}")
        assert token.macaroon == "eyJpZCI6ImFiYzEyMyJ9"
        assert token.preimage == bytes.fromhex(PREIMAGE_HEX)
        assert str(token) == f"eyJpZCI6ImFiYzEyMyJ9:{PREIMAGE_HEX}"

    @pytest.mark.parametrize(
        "token",
        [
            "macaroonwithoutpreimage",
            f":{PREIMAGE_HEX}",
            "macaroon:",
            "macaroon:not-hex",
            "macaroon:abc",  # odd length
            "macaroon:ab cd",
            f"macaroon:{PREIMAGE_HEX[:32]} {PREIMAGE_HEX[32:]}",
            "",
        ],
    )
    def test_malformed(self, token):
        with pytest.raises(MalformedToken):
            parse_token(token)


class TestParseAuthorization:
    def test_valid_l402_header(self):
        result = parse_authorization(f"L402 eyJpZCI6ImFiYzEyMyJ9:{PREIMAGE_HEX}")
        assert result is not None
        assert result.macaroon == "eyJpZCI6ImFiYzEyMyJ9"
        assert result.preimage_hex == PREIMAGE_HEX

    def test_case_insensitive_prefix(self):
        result = parse_authorization(f"l402 mac123:{PREIMAGE_HEX}")
        assert result.macaroon == "mac123"

    def test_lsat_alias(self):
        assert parse_authorization(f"LSAT mac:{PREIMAGE_HEX}").macaroon == "mac"

    def test_with_whitespace(self):
        result = parse_authorization(f"  L402   mac:{PREIMAGE_HEX}  ")
        assert result.macaroon == "mac"

    def test_missing_colon_is_malformed_not_absent(self):
        with pytest.raises(MalformedToken):
            parse_authorization("L402 macaroonwithoutpreimage")

    def test_bare_scheme_is_malformed(self):
        with pytest.raises(MalformedToken):
            parse_authorization("L402")

    def test_non_hex_preimage(self):
        with pytest.raises(MalformedToken):
            parse_authorization("L402 mac:pre:extra:colons")

    def test_not_l402(self):
        assert parse_authorization("Bearer token123") is None

    def test_none_and_empty(self):
        assert parse_authorization(None) is None
        assert parse_authorization("") is None

    def test_non_string_input(self):
        assert parse_authorization(12345) is None

    def test_format_authorization(self):
        assert format_authorization("mac", PREIMAGE_HEX) == f"L402 mac:{PREIMAGE_HEX}"
