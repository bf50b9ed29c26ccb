"""
Submission and confirmation tracking.

Acceptance by an RPC node only means the transaction reached the network.
``Confirmer.await_confirmation`` polls until the ledger reports a terminal
status or the deadline passes; a missed deadline is ``TimedOut``, which means
"unknown", not "failed". The transaction may still land, so callers re-check
with ``check_status`` later.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from spout.assembler import TransactionAssembler, TransactionEnvelope
from spout.errors import TransportError
from spout.ledger import Ledger
from spout.models import Confirmed, Failed, Pending, SubmissionOutcome, TimedOut
from spout.retry import NO_RETRY, RetryPolicy
from spout.signer import WalletSigner
from spout.simulator import decode_rejection

logger = logging.getLogger(__name__)


class OutcomeLedger:
    """Append-only record of outcomes per handle for the current session."""

    def __init__(self):
        self._history: Dict[str, List[SubmissionOutcome]] = {}

    def record(self, outcome: SubmissionOutcome) -> SubmissionOutcome:
        if outcome.handle is not None:
            self._history.setdefault(outcome.handle, []).append(outcome)
        return outcome

    def latest(self, handle: str) -> Optional[SubmissionOutcome]:
        history = self._history.get(handle)
        return history[-1] if history else None

    def history(self, handle: str) -> List[SubmissionOutcome]:
        return list(self._history.get(handle, ()))

    def handles(self) -> List[str]:
        return list(self._history)

    def __contains__(self, handle: str) -> bool:
        return handle in self._history

    def __len__(self) -> int:
        return len(self._history)


class Submitter:
    """Signs an envelope through the wallet and hands it to the ledger."""

    def __init__(
        self,
        ledger: Ledger,
        assembler: TransactionAssembler,
        outcomes: OutcomeLedger,
        retry: RetryPolicy = NO_RETRY,
    ):
        self.ledger = ledger
        self.assembler = assembler
        self.outcomes = outcomes
        self.retry = retry

    async def submit(self, envelope: TransactionEnvelope, signer: WalletSigner) -> str:
        """Returns the transaction signature (the handle). Raises ``StaleEnvelope``."""
        if signer.pubkey != envelope.fee_payer:
            raise ValueError(f"signer {signer.pubkey} is not the fee payer {envelope.fee_payer}")
        await self.retry.run(self.assembler.ensure_fresh, envelope, operation="freshness check")

        signature = await signer.sign_message(envelope.message_bytes())
        raw = bytes(envelope.signed_transaction([signature]))

        # Re-sending identical signed bytes is safe: the network dedups by signature
        handle = await self.retry.run(self.ledger.send_raw, raw, operation="send")
        logger.info(f"Transaction sent: {handle[:16]}...")
        self.outcomes.record(Pending(handle))
        return handle


class ConfirmationWatch:
    """Cancellable handle on a background confirmation poll.

    Cancelling stops polling only; the submitted transaction resolves on its own.
    """

    def __init__(self, handle: str, task: "asyncio.Task[SubmissionOutcome]", outcomes: OutcomeLedger):
        self.handle = handle
        self._task = task
        self._outcomes = outcomes
        self._abandoned = False

    def cancel(self) -> None:
        if not self._task.done():
            logger.info(f"Abandoning confirmation polling for {self.handle[:16]}...")
            self._abandoned = True
            self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    def cancelled(self) -> bool:
        return self._task.cancelled()

    async def result(self) -> SubmissionOutcome:
        """Final outcome, or the last known one if polling was cancelled."""
        try:
            # Shielded: cancelling the caller must not stop the poll
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not (self._abandoned and self._task.cancelled()):
                raise
            return self._outcomes.latest(self.handle) or Pending(self.handle)


class Confirmer:
    """Polls signature status at a fixed interval until terminal or deadline."""

    def __init__(
        self,
        ledger: Ledger,
        outcomes: OutcomeLedger,
        *,
        finality: str = "finalized",
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.outcomes = outcomes
        self.finality = finality
        self.poll_interval = poll_interval
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep

    async def _poll_once(self, handle: str) -> Optional[SubmissionOutcome]:
        """Terminal outcome if the ledger has one, else None."""
        try:
            status = await self.ledger.get_signature_status(handle)
        except TransportError as e:
            logger.debug(f"Status check failed for {handle[:16]}...: {e}")
            return None
        if status is None:
            return None
        if status.error:
            reason = decode_rejection(status.error)
            logger.warning(f"Transaction {handle[:16]}... failed: {reason}")
            return Failed(handle, reason)
        if status.reached(self.finality):
            logger.info(f"Transaction {handle[:16]}... {status.confirmation}")
            return Confirmed(handle, finalized_at=self._wall_clock(), slot=status.slot)
        return None

    async def _poll_within(self, handle: str, remaining: float) -> Optional[SubmissionOutcome]:
        """One poll that never outlives the confirmation deadline."""
        try:
            return await asyncio.wait_for(self._poll_once(handle), timeout=remaining)
        except asyncio.TimeoutError:
            logger.debug(f"Status check for {handle[:16]}... cut off at the deadline")
            return None

    async def await_confirmation(self, handle: str, timeout: float) -> SubmissionOutcome:
        start = self._clock()
        deadline = start + timeout
        while True:
            remaining = deadline - self._clock()
            if remaining > 0:
                outcome = await self._poll_within(handle, remaining)
                if outcome is not None:
                    return self.outcomes.record(outcome)
            now = self._clock()
            if now >= deadline:
                logger.warning(f"Transaction {handle[:16]}... confirmation timeout after {timeout:.1f}s")
                return self.outcomes.record(TimedOut(handle, waited_seconds=now - start))
            await self._sleep(min(self.poll_interval, deadline - now))

    def watch(self, handle: str, timeout: float) -> ConfirmationWatch:
        task = asyncio.ensure_future(self.await_confirmation(handle, timeout))
        return ConfirmationWatch(handle, task, self.outcomes)

    async def check_status(self, handle: str) -> SubmissionOutcome:
        """One-shot re-query, e.g. after ``TimedOut``."""
        outcome = await self._poll_once(handle)
        if outcome is not None:
            return self.outcomes.record(outcome)
        latest = self.outcomes.latest(handle)
        if isinstance(latest, (Confirmed, Failed)):
            return latest
        return Pending(handle)
