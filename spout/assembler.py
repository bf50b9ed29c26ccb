"""Transaction assembly: instruction ordering, fee payer, freshness token."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from spout.errors import StaleEnvelope
from spout.ledger import FreshnessToken, Ledger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionEnvelope:
    """Unsigned transaction: ordered instructions, fee payer and freshness token.

    Layout of ``instructions``: compute-budget (optional), provisioning,
    then exactly one order instruction last.
    """
    instructions: Tuple[Instruction, ...]
    fee_payer: Pubkey
    freshness: FreshnessToken
    provisioning_count: int = 0
    compute_budget_count: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def order_instruction(self) -> Instruction:
        return self.instructions[-1]

    @property
    def provisioning(self) -> Tuple[Instruction, ...]:
        start = self.compute_budget_count
        return self.instructions[start:start + self.provisioning_count]

    def message(self) -> MessageV0:
        return MessageV0.try_compile(
            self.fee_payer, list(self.instructions), [], self.freshness.blockhash
        )

    def message_bytes(self) -> bytes:
        """Bytes a wallet signs."""
        return to_bytes_versioned(self.message())

    def unsigned_transaction(self) -> VersionedTransaction:
        """Placeholder-signed transaction for simulation with sig_verify off."""
        message = self.message()
        signers = message.header.num_required_signatures
        return VersionedTransaction.populate(message, [Signature.default()] * signers)

    def signed_transaction(self, signatures: Sequence[Signature]) -> VersionedTransaction:
        return VersionedTransaction.populate(self.message(), list(signatures))


class TransactionAssembler:
    """Builds envelopes against a ledger's current blockhash."""

    def __init__(
        self,
        ledger: Ledger,
        *,
        blockhash_ttl_seconds: float = 60.0,
        compute_unit_limit: Optional[int] = None,
        compute_unit_price: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.blockhash_ttl_seconds = blockhash_ttl_seconds
        self.compute_unit_limit = compute_unit_limit
        self.compute_unit_price = compute_unit_price
        self._clock = clock

    def _compute_budget(self) -> List[Instruction]:
        instructions = []
        if self.compute_unit_limit:
            instructions.append(set_compute_unit_limit(self.compute_unit_limit))
        if self.compute_unit_price:
            instructions.append(set_compute_unit_price(self.compute_unit_price))
        return instructions

    async def assemble(
        self,
        provisioning: Sequence[Instruction],
        order_instruction: Instruction,
        fee_payer: Pubkey,
    ) -> TransactionEnvelope:
        freshness = await self.ledger.get_freshness_token()
        budget = self._compute_budget()
        instructions = tuple(budget) + tuple(provisioning) + (order_instruction,)
        logger.debug(
            f"Assembled envelope: {len(provisioning)} provisioning + 1 order instruction, "
            f"blockhash {str(freshness.blockhash)[:12]}... valid to height {freshness.last_valid_block_height}"
        )
        return TransactionEnvelope(
            instructions=instructions,
            fee_payer=fee_payer,
            freshness=freshness,
            provisioning_count=len(provisioning),
            compute_budget_count=len(budget),
            created_at=self._clock(),
        )

    async def ensure_fresh(self, envelope: TransactionEnvelope) -> None:
        """Raise ``StaleEnvelope`` once the blockhash can no longer land."""
        height = await self.ledger.get_block_height()
        age = self._clock() - envelope.created_at
        if age > self.blockhash_ttl_seconds or envelope.freshness.is_expired(height):
            raise StaleEnvelope(
                f"blockhash expired (height {height} > {envelope.freshness.last_valid_block_height} "
                f"or older than {self.blockhash_ttl_seconds:.0f}s); re-assemble"
            )

    async def reassemble(self, envelope: TransactionEnvelope) -> TransactionEnvelope:
        """Same instructions under a new freshness token."""
        freshness = await self.ledger.get_freshness_token()
        logger.info(f"Re-assembled envelope with blockhash {str(freshness.blockhash)[:12]}...")
        return TransactionEnvelope(
            instructions=envelope.instructions,
            fee_payer=envelope.fee_payer,
            freshness=freshness,
            provisioning_count=envelope.provisioning_count,
            compute_budget_count=envelope.compute_budget_count,
            created_at=self._clock(),
        )
