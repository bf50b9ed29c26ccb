"""Dry-run an envelope and turn program rejections into short reasons."""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Iterable, Optional

from spout.assembler import TransactionEnvelope
from spout.errors import ProgramRejected
from spout.ledger import Ledger, SimulationReport
from spout.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

_ANCHOR_ERROR = re.compile(
    r"Error Code: (?P<code>\w+)\. Error Number: (?P<number>\d+)\. Error Message: (?P<message>.+?)\.?$"
)
_PROGRAM_LOG_ERROR = re.compile(r"Program log: Error: (?P<message>.+)$")
_CUSTOM_HEX = re.compile(r"custom program error: (0x[0-9a-fA-F]+)")
_CUSTOM_DEC = re.compile(r"Custom\((\d+)\)")

_RUNTIME_HINTS = (
    ("insufficientfundsforrent", "Insufficient SOL for rent on a new account."),
    ("insufficientfundsforfee", "Insufficient SOL to pay the transaction fee."),
    ("insufficientfunds", "Insufficient funds for fee or transfer."),
    ("accountnotfound", "Fee payer account not found; fund the wallet first."),
    ("blockhashnotfound", "Blockhash expired; rebuild and re-sign the transaction."),
    ("alreadyprocessed", "Transaction already processed; likely duplicate or replayed."),
    ("accountinuse", "Account in use; retry with backoff."),
    ("invalidaccountdata", "Invalid account data; verify mint/account ownership."),
    ("uninitializedaccount", "Account not initialized; create associated token account."),
    ("accountnotinitialized", "Account not initialized; create associated token account."),
    ("signatureverificationfailed", "Signature verification failed; ensure signer and recent blockhash match."),
    ("computationalbudgetexceeded", "Compute budget exceeded; raise the compute unit limit."),
)


def decode_rejection(error: Optional[str], logs: Iterable[str] = ()) -> str:
    """Short, human-readable reason for a failed simulation or execution."""
    logs = list(logs)

    for line in logs:
        match = _ANCHOR_ERROR.search(line)
        if match:
            return f"{match.group('message')} ({match.group('code')} #{match.group('number')})"

    for line in logs:
        match = _PROGRAM_LOG_ERROR.search(line)
        if match:
            return match.group("message").strip()

    text = " ".join([error or ""] + logs)
    lower = text.lower().replace(" ", "")
    for needle, hint in _RUNTIME_HINTS:
        if needle in lower:
            return hint

    match = _CUSTOM_HEX.search(text)
    if match:
        return f"Custom program error {int(match.group(1), 16)}; program-specific constraint failed."
    match = _CUSTOM_DEC.search(text)
    if match:
        return f"Custom program error {match.group(1)}; program-specific constraint failed."

    return error or "unknown simulation failure"


class Simulator:
    """Runs envelopes against current state without committing them."""

    def __init__(self, ledger: Ledger, retry: RetryPolicy = NO_RETRY):
        self.ledger = ledger
        self.retry = retry

    async def simulate(self, envelope: TransactionEnvelope) -> SimulationReport:
        tx = envelope.unsigned_transaction()
        report = await self.retry.run(self.ledger.simulate, tx, operation="simulate")
        if report.success:
            logger.info(report.summary())
            return report
        reason = decode_rejection(report.error, report.logs)
        logger.warning(f"Simulation rejected: {reason} (raw: {report.error})")
        return replace(report, reason=reason)

    @staticmethod
    def require_success(report: SimulationReport) -> SimulationReport:
        if not report.success:
            raise ProgramRejected(report.reason or decode_rejection(report.error, report.logs),
                                  logs=list(report.logs), raw_error=report.error)
        return report
