"""Exception hierarchy for the order pipeline.

Two families, same split as the rest of the codebase:
- PermanentError: caller input or program-level refusal, never retried.
- TransientError: may resolve on retry (network, stale blockhash).

``VerificationError`` sits directly under ``SpoutError``: a failed attestation
fetch is an error, an absent or expired attestation is not (see
``spout.attestation.VerificationResult``).
"""
from typing import Any, Dict, Optional


class SpoutError(Exception):
    """Base exception for all pipeline errors."""
    code: str = "SYS_001"

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class TransientError(SpoutError):
    """Errors that may resolve on retry."""

    def __init__(self, message: str, retry_after: Optional[float] = None, details: Dict[str, Any] = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class PermanentError(SpoutError):
    """Errors that won't resolve on retry."""
    pass


class ConfigurationError(PermanentError):
    code = "CFG_001"


class InvalidSeed(PermanentError):
    """PDA seed is empty, too long, or there are too many seeds."""
    code = "ADDR_001"


class EncodingError(PermanentError):
    """Order cannot be encoded into the instruction wire format."""
    code = "ENC_001"


class ProgramRejected(PermanentError):
    """The remote program refused the transaction (simulation or execution)."""
    code = "PROG_001"

    def __init__(self, reason: str, logs: Optional[list] = None, raw_error: Optional[str] = None):
        super().__init__(reason, {"raw_error": raw_error})
        self.reason = reason
        self.logs = list(logs or [])
        self.raw_error = raw_error


class ComplianceRequired(PermanentError):
    """Requester has no valid attestation; buy is not allowed."""
    code = "ATT_002"

    def __init__(self, requester: str, reason: str = "attestation missing or invalid"):
        super().__init__(f"{requester}: {reason}", {"requester": requester})
        self.requester = requester
        self.reason = reason


class VerificationError(SpoutError):
    """Attestation could not be checked (fetch or decode failure)."""
    code = "ATT_001"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StaleEnvelope(TransientError):
    """The envelope's blockhash expired; re-assemble before submitting."""
    code = "TX_001"


class TransportError(TransientError):
    """RPC/network failure reaching the ledger."""
    code = "NET_001"

    def __init__(self, message: str, endpoint: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, retry_after=retry_after, details={"endpoint": endpoint})
        self.endpoint = endpoint


def is_retryable(exc: BaseException) -> bool:
    """Transport errors are retried; everything else surfaces immediately."""
    return isinstance(exc, TransportError)
