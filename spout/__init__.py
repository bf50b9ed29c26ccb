"""
Spout order pipeline: addressed, encoded, simulated and confirmed Solana
order transactions, plus the SAS compliance attestation check that gates buys.
"""

from spout.attestation import AttestationVerifier, VerificationResult
from spout.config import DeploymentConfig, PipelineSettings, load_config
from spout.errors import (
    ComplianceRequired,
    ConfigurationError,
    EncodingError,
    InvalidSeed,
    ProgramRejected,
    SpoutError,
    StaleEnvelope,
    TransportError,
    VerificationError,
)
from spout.ledger import RpcLedger
from spout.models import (
    Confirmed,
    Failed,
    OrderRequest,
    Pending,
    Side,
    SubmissionOutcome,
    TimedOut,
    user_message,
)
from spout.pipeline import OrderPipeline, PreparedOrder
from spout.signer import KeypairSigner, WalletSigner, load_keypair

__version__ = "0.1.0"

__all__ = [
    "AttestationVerifier",
    "ComplianceRequired",
    "ConfigurationError",
    "Confirmed",
    "DeploymentConfig",
    "EncodingError",
    "Failed",
    "InvalidSeed",
    "KeypairSigner",
    "OrderPipeline",
    "OrderRequest",
    "Pending",
    "PipelineSettings",
    "PreparedOrder",
    "ProgramRejected",
    "RpcLedger",
    "Side",
    "SpoutError",
    "StaleEnvelope",
    "SubmissionOutcome",
    "TimedOut",
    "TransportError",
    "VerificationError",
    "VerificationResult",
    "WalletSigner",
    "load_config",
    "load_keypair",
    "user_message",
]
