"""
Order instruction encoding.

Wire format (little-endian, borsh):

    [discriminator: 8][ticker_len: u32][ticker: utf-8][quantity: u64][reference_price: u64]

The remote program decodes these fields positionally, so field order and
widths are fixed.
"""

import hashlib
from typing import Optional

from borsh_construct import CStruct, String, U64
from construct import ConstructError
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from spout.errors import EncodingError
from spout.models import MAX_TICKER_LEN, U64_MAX, AccountSet, OrderRequest, Side

DISCRIMINATOR_LEN = 8

OrderArgsLayout = CStruct(
    "ticker" / String,
    "quantity" / U64,
    "reference_price" / U64,
)


def anchor_discriminator(name: str) -> bytes:
    """Anchor instruction sighash: first 8 bytes of sha256("global:<name>")."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:DISCRIMINATOR_LEN]


def encode(order: OrderRequest, discriminator: bytes, max_ticker_len: int = MAX_TICKER_LEN) -> bytes:
    """Serialize ``order`` behind ``discriminator``."""
    if len(discriminator) != DISCRIMINATOR_LEN:
        raise EncodingError(f"discriminator must be {DISCRIMINATOR_LEN} bytes, got {len(discriminator)}")
    ticker_bytes = order.ticker.encode("utf-8")
    if not ticker_bytes or len(ticker_bytes) > max_ticker_len:
        raise EncodingError(
            f"ticker must be 1..{max_ticker_len} bytes, got {len(ticker_bytes)}",
            {"ticker": order.ticker},
        )
    for name in ("quantity", "reference_price"):
        value = getattr(order, name)
        if not 0 < value <= U64_MAX:
            raise EncodingError(f"{name} out of u64 range: {value}")
    try:
        body = OrderArgsLayout.build({
            "ticker": order.ticker,
            "quantity": order.quantity,
            "reference_price": order.reference_price,
        })
    except ConstructError as e:
        raise EncodingError(f"failed to encode order: {e}") from e
    return bytes(discriminator) + body


def decode(payload: bytes, buy_discriminator: bytes, sell_discriminator: bytes) -> OrderRequest:
    """Inverse of :func:`encode`. Rejects unknown discriminators and trailing bytes."""
    prefix = bytes(payload[:DISCRIMINATOR_LEN])
    if prefix == bytes(buy_discriminator):
        side = Side.BUY
    elif prefix == bytes(sell_discriminator):
        side = Side.SELL
    else:
        raise EncodingError(f"unknown discriminator {prefix.hex()}")

    body = bytes(payload[DISCRIMINATOR_LEN:])
    try:
        parsed = OrderArgsLayout.parse(body)
    except (ConstructError, UnicodeDecodeError) as e:
        raise EncodingError(f"truncated or malformed order payload: {e}") from e

    consumed = 4 + len(parsed.ticker.encode("utf-8")) + 8 + 8
    if consumed != len(body):
        raise EncodingError(f"{len(body) - consumed} trailing bytes after order payload")

    return OrderRequest(
        side=side,
        ticker=parsed.ticker,
        quantity=parsed.quantity,
        reference_price=parsed.reference_price,
    )


def build_order_instruction(
    order: OrderRequest,
    accounts: AccountSet,
    program_id: Pubkey,
    discriminator: bytes,
    max_ticker_len: Optional[int] = None,
) -> Instruction:
    """Order instruction with the fixed positional account list."""
    data = encode(order, discriminator, max_ticker_len or MAX_TICKER_LEN)
    return Instruction(program_id, data, accounts.account_metas())
