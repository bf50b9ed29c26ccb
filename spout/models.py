"""Order pipeline data model."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from solders.instruction import AccountMeta
from solders.pubkey import Pubkey

from spout.errors import EncodingError, ProgramRejected, SpoutError, TransientError

U64_MAX = 2**64 - 1
MAX_TICKER_LEN = 32


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class OrderRequest:
    """A caller's order intent. Amounts are 6-decimal fixed point (1.0 == 1_000_000)."""
    side: Side
    ticker: str
    quantity: int
    reference_price: int

    def __post_init__(self):
        if not isinstance(self.side, Side):
            object.__setattr__(self, "side", Side(self.side))
        if not self.ticker:
            raise EncodingError("ticker must not be empty")
        encoded = self.ticker.encode("utf-8")
        if len(encoded) > MAX_TICKER_LEN:
            raise EncodingError(
                f"ticker is {len(encoded)} bytes, max {MAX_TICKER_LEN}",
                {"ticker": self.ticker},
            )
        for name in ("quantity", "reference_price"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise EncodingError(f"{name} must be an integer, got {type(value).__name__}")
            if value <= 0 or value > U64_MAX:
                raise EncodingError(f"{name} must be in 1..2^64-1, got {value}")


# Positional order on the wire. Never reorder.
ORDER_ACCOUNT_LAYOUT = (
    "requester",
    "requester_token_account",
    "order_events",
    "treasury_token_account",
    "orders_authority",
    "mint",
    "attestation",
    "schema",
    "credential",
    "sas_program",
    "price_feed",
    "token_program",
    "associated_token_program",
    "system_program",
)

WRITABLE_ACCOUNTS = frozenset({
    "requester",
    "requester_token_account",
    "order_events",
    "treasury_token_account",
})


@dataclass(frozen=True)
class AccountSet:
    """Addresses required by one order, plus which of them were derived locally."""
    requester: Pubkey
    requester_token_account: Pubkey
    order_events: Pubkey
    treasury_token_account: Pubkey
    orders_authority: Pubkey
    mint: Pubkey
    attestation: Pubkey
    schema: Pubkey
    credential: Pubkey
    sas_program: Pubkey
    price_feed: Pubkey
    token_program: Pubkey
    associated_token_program: Pubkey
    system_program: Pubkey
    derived: FrozenSet[str] = frozenset()

    def is_derived(self, name: str) -> bool:
        return name in self.derived

    def token_accounts(self) -> Dict[str, Pubkey]:
        """Token accounts the order touches, keyed by role."""
        return {
            "requester_token_account": self.requester_token_account,
            "treasury_token_account": self.treasury_token_account,
        }

    def token_account_owners(self) -> Dict[str, Pubkey]:
        return {
            "requester_token_account": self.requester,
            "treasury_token_account": self.orders_authority,
        }

    def ordered(self) -> List[Pubkey]:
        return [getattr(self, name) for name in ORDER_ACCOUNT_LAYOUT]

    def account_metas(self) -> List[AccountMeta]:
        return [
            AccountMeta(
                pubkey=getattr(self, name),
                is_signer=(name == "requester"),
                is_writable=(name in WRITABLE_ACCOUNTS),
            )
            for name in ORDER_ACCOUNT_LAYOUT
        ]

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {name: str(getattr(self, name)) for name in ORDER_ACCOUNT_LAYOUT}
        data["derived"] = sorted(self.derived)
        return data


# ----------------------------------------------------------------------------
# Submission outcomes
# ----------------------------------------------------------------------------

class OutcomeStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Pending:
    handle: str
    submitted_at: float = field(default_factory=time.time)
    status = OutcomeStatus.PENDING
    terminal = False


@dataclass(frozen=True)
class Confirmed:
    handle: str
    finalized_at: float
    slot: Optional[int] = None
    status = OutcomeStatus.CONFIRMED
    terminal = True


@dataclass(frozen=True)
class Failed:
    handle: Optional[str]
    reason: str
    logs: tuple = ()
    status = OutcomeStatus.FAILED
    terminal = True


@dataclass(frozen=True)
class TimedOut:
    """No terminal status within the deadline. Not a failure: re-check later."""
    handle: str
    waited_seconds: float
    status = OutcomeStatus.TIMED_OUT
    terminal = True


SubmissionOutcome = Union[Pending, Confirmed, Failed, TimedOut]


def user_message(outcome: Union[SubmissionOutcome, SpoutError]) -> str:
    """Project an outcome or pipeline error onto the text a user should see.

    Transport trouble and timeouts both read as "unknown, check again": the
    transaction may still have landed.
    """
    if isinstance(outcome, TransientError):
        return f"Network problem, status unknown ({outcome.message}); check again shortly"
    if isinstance(outcome, ProgramRejected):
        return f"Order rejected: {outcome.reason}"
    if isinstance(outcome, SpoutError):
        return f"Order not submitted: {outcome.message}"
    if isinstance(outcome, Confirmed):
        return f"Order confirmed ({outcome.handle[:16]}...)"
    if isinstance(outcome, Failed):
        return f"Order failed: {outcome.reason}"
    if isinstance(outcome, TimedOut):
        return f"Status unknown for {outcome.handle[:16]}..., check again shortly"
    return f"Order submitted ({outcome.handle[:16]}...), awaiting confirmation"
