"""Tests for order instruction encoding."""

import hashlib

import pytest
from solders.pubkey import Pubkey

from spout.addresses import resolve_account_set
from spout.config import SELL_ASSET_MANUAL_DISCRIMINATOR
from spout.encoding import (
    DISCRIMINATOR_LEN,
    anchor_discriminator,
    build_order_instruction,
    decode,
    encode,
)
from spout.errors import EncodingError
from spout.models import MAX_TICKER_LEN, U64_MAX, OrderRequest, Side

BUY = anchor_discriminator("buy_asset_manual")
SELL = SELL_ASSET_MANUAL_DISCRIMINATOR


def _order(**overrides):
    fields = {"side": Side.BUY, "ticker": "AAPL", "quantity": 1_000_000, "reference_price": 190_250_000}
    fields.update(overrides)
    return OrderRequest(**fields)


class TestAnchorDiscriminator:
    def test_is_sighash_prefix(self):
        assert anchor_discriminator("buy_asset_manual") == hashlib.sha256(b"global:buy_asset_manual").digest()[:8]

    def test_length(self):
        assert len(anchor_discriminator("anything")) == DISCRIMINATOR_LEN

    def test_buy_and_sell_differ(self):
        assert BUY != SELL


class TestEncode:
    def test_exact_layout(self):
        payload = encode(_order(quantity=1, reference_price=2), BUY)
        expected = (
            BUY
            + (4).to_bytes(4, "little") + b"AAPL"
            + (1).to_bytes(8, "little")
            + (2).to_bytes(8, "little")
        )
        assert payload == expected

    def test_length(self):
        assert len(encode(_order(), BUY)) == 8 + 4 + len("AAPL") + 8 + 8

    def test_u64_max_accepted(self):
        payload = encode(_order(quantity=U64_MAX, reference_price=U64_MAX), SELL)
        assert payload[-16:] == b"\xff" * 16

    def test_multibyte_ticker_length_is_bytes(self):
        payload = encode(_order(ticker="ÅPL"), BUY)
        assert int.from_bytes(payload[8:12], "little") == len("ÅPL".encode("utf-8"))

    def test_short_discriminator_rejected(self):
        with pytest.raises(EncodingError):
            encode(_order(), b"\x01\x02")

    def test_custom_ticker_limit(self):
        with pytest.raises(EncodingError):
            encode(_order(ticker="ABCDEFGH"), BUY, max_ticker_len=4)


class TestOrderValidation:
    def test_ticker_too_long(self):
        with pytest.raises(EncodingError):
            _order(ticker="X" * (MAX_TICKER_LEN + 1))

    def test_empty_ticker(self):
        with pytest.raises(EncodingError):
            _order(ticker="")

    @pytest.mark.parametrize("quantity", [0, -1, U64_MAX + 1])
    def test_quantity_out_of_range(self, quantity):
        with pytest.raises(EncodingError):
            _order(quantity=quantity)

    def test_non_integer_price(self):
        with pytest.raises(EncodingError):
            _order(reference_price=1.5)

    def test_side_coerced_from_string(self):
        assert _order(side="sell").side is Side.SELL


class TestDecode:
    def test_inverse_of_encode(self):
        order = _order(side=Side.SELL, ticker="TSLA", quantity=5, reference_price=250_000_000)
        assert decode(encode(order, SELL), BUY, SELL) == order

    def test_unknown_discriminator(self):
        with pytest.raises(EncodingError):
            decode(b"\x00" * 8 + encode(_order(), BUY)[8:], BUY, SELL)

    def test_trailing_bytes(self):
        with pytest.raises(EncodingError):
            decode(encode(_order(), BUY) + b"\x00", BUY, SELL)

    def test_truncated(self):
        with pytest.raises(EncodingError):
            decode(encode(_order(), BUY)[:-3], BUY, SELL)

    def test_invalid_utf8_ticker(self):
        body = (2).to_bytes(4, "little") + b"\xff\xfe" + (1).to_bytes(8, "little") + (1).to_bytes(8, "little")
        with pytest.raises(EncodingError):
            decode(BUY + body, BUY, SELL)


class TestBuildOrderInstruction:
    def test_accounts_and_data(self, deployment):
        requester = Pubkey.new_unique()
        accounts = resolve_account_set(deployment, requester, Side.BUY)
        order = _order()
        ix = build_order_instruction(order, accounts, deployment.program_id, deployment.buy_discriminator)

        assert ix.program_id == deployment.program_id
        assert bytes(ix.data) == encode(order, deployment.buy_discriminator)
        assert [m.pubkey for m in ix.accounts] == accounts.ordered()

    def test_only_requester_signs(self, deployment):
        requester = Pubkey.new_unique()
        accounts = resolve_account_set(deployment, requester, Side.SELL)
        ix = build_order_instruction(_order(side=Side.SELL), accounts, deployment.program_id, SELL)
        signers = [m.pubkey for m in ix.accounts if m.is_signer]
        assert signers == [requester]

    def test_writable_accounts(self, deployment):
        accounts = resolve_account_set(deployment, Pubkey.new_unique(), Side.BUY)
        ix = build_order_instruction(_order(), accounts, deployment.program_id, BUY)
        writable = [m.pubkey for m in ix.accounts if m.is_writable]
        assert writable == [
            accounts.requester,
            accounts.requester_token_account,
            accounts.order_events,
            accounts.treasury_token_account,
        ]
