"""
Shared fixtures for the order pipeline tests.

``FakeLedger`` is an in-memory ``Ledger``: it keeps account snapshots, applies
associated-token-account creates on send (a legacy Create fails when the
account already exists, CreateIdempotent does not), and rejects order
instructions whose token accounts do not exist, the way the real
program does. Failures can be queued per method.
"""

import os
import sys
from collections import Counter
from typing import Dict, List, Optional, Sequence, Set, Tuple

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from borsh_construct import CStruct, String, U8
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_PROGRAM_ID

from spout.addresses import derive_associated_account, derive_attestation_address, derive_authority
from spout.attestation import AttestationLayout, FieldNamesLayout, SchemaLayout
from spout.config import DeploymentConfig, PipelineSettings
from spout.errors import StaleEnvelope
from spout.ledger import AccountSnapshot, FreshnessToken, SignatureStatus, SimulationReport
from spout.provisioning import ATA_CREATE_IDEMPOTENT
from spout.signer import KeypairSigner

TOKEN_ACCOUNT_SIZE = 165
RENT_EXEMPT_TOKEN_ACCOUNT = 2_039_280
BLOCKHASH_VALIDITY = 150

# Order instruction account positions of the two token accounts
REQUESTER_TOKEN_POSITION = 1
TREASURY_TOKEN_POSITION = 3


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeLedger:
    def __init__(self, deployment: DeploymentConfig):
        self.deployment = deployment
        self.accounts: Dict[Pubkey, AccountSnapshot] = {}
        self.block_height = 1_000
        self.calls: Counter = Counter()
        self.errors: Dict[str, List[BaseException]] = {}

        self.simulated: List[VersionedTransaction] = []
        self.sent: List[VersionedTransaction] = []
        self.simulation_error: Optional[str] = None
        self.simulation_logs: Sequence[str] = ()
        self.enforce_token_accounts = True
        self.stale_sends = 0

        # Confirmation behaviour for every sent signature
        self.polls_before_landing = 0
        self.landing: Optional[str] = "finalized"
        self.execution_error: Optional[str] = None
        self._polls: Counter = Counter()
        self._execution_errors: Dict[str, str] = {}

    # --- test helpers ---------------------------------------------------------

    def fail(self, method: str, *errors: BaseException) -> None:
        self.errors.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method: str) -> None:
        self.calls[method] += 1
        queued = self.errors.get(method)
        if queued:
            raise queued.pop(0)

    def put(self, address: Pubkey, owner: Pubkey, data: bytes = b"", lamports: int = 1) -> None:
        self.accounts[address] = AccountSnapshot(address, owner, lamports, data)

    def create_token_account(self, address: Pubkey) -> None:
        self.put(address, TOKEN_PROGRAM_ID, bytes(TOKEN_ACCOUNT_SIZE), RENT_EXEMPT_TOKEN_ACCOUNT)

    def _effects(self, tx: VersionedTransaction) -> Tuple[Optional[str], Set[Pubkey]]:
        """Dry-apply ``tx``: (error or None, token accounts it would create)."""
        keys = tx.message.account_keys
        created = set()
        for index, ix in enumerate(tx.message.instructions):
            program = keys[ix.program_id_index]
            if program == self.deployment.associated_token_program:
                ata = keys[ix.accounts[1]]
                exists = ata in self.accounts or ata in created
                # Legacy Create (empty data or index 0) fails on an existing account
                if bytes(ix.data) != bytes([ATA_CREATE_IDEMPOTENT]) and exists:
                    return f"Error processing Instruction {index}: custom program error: 0x0", created
                created.add(ata)
            elif program == self.deployment.program_id and self.enforce_token_accounts:
                for position in (REQUESTER_TOKEN_POSITION, TREASURY_TOKEN_POSITION):
                    account = keys[ix.accounts[position]]
                    if account not in self.accounts and account not in created:
                        return f"Error processing Instruction {index}: custom program error: 0xbc4", created
        return None, created

    # --- Ledger protocol --------------------------------------------------------

    async def get_accounts(self, addresses: Sequence[Pubkey]) -> List[Optional[AccountSnapshot]]:
        self._maybe_fail("get_accounts")
        return [self.accounts.get(a) for a in addresses]

    async def get_account(self, address: Pubkey) -> Optional[AccountSnapshot]:
        self._maybe_fail("get_account")
        return self.accounts.get(address)

    async def get_freshness_token(self) -> FreshnessToken:
        self._maybe_fail("get_freshness_token")
        return FreshnessToken(Hash.new_unique(), self.block_height + BLOCKHASH_VALIDITY)

    async def get_block_height(self) -> int:
        self._maybe_fail("get_block_height")
        return self.block_height

    async def simulate(self, transaction: VersionedTransaction) -> SimulationReport:
        self._maybe_fail("simulate")
        self.simulated.append(transaction)
        error = self.simulation_error or self._effects(transaction)[0]
        if error:
            return SimulationReport(success=False, logs=tuple(self.simulation_logs), error=error)
        return SimulationReport(success=True, logs=("Program log: Instruction: BuyAssetManual",), units_consumed=42_000)

    async def send_raw(self, raw_transaction: bytes) -> str:
        self._maybe_fail("send_raw")
        if self.stale_sends:
            self.stale_sends -= 1
            raise StaleEnvelope("blockhash rejected on send: Blockhash not found")
        tx = VersionedTransaction.from_bytes(raw_transaction)
        assert tx.signatures[0] != Signature.default(), "transaction was not signed"
        self.sent.append(tx)
        signature = str(tx.signatures[0])
        error, created = self._effects(tx)
        if error is None:
            for address in created:
                if address not in self.accounts:
                    self.create_token_account(address)
        else:
            self._execution_errors[signature] = error
        return signature

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        self._maybe_fail("get_signature_status")
        if signature not in {str(tx.signatures[0]) for tx in self.sent}:
            return None
        self._polls[signature] += 1
        if self._polls[signature] <= self.polls_before_landing or self.landing is None:
            return None
        error = self._execution_errors.get(signature, self.execution_error)
        return SignatureStatus(signature, self.landing, error, slot=12345)

    async def get_token_balance(self, address: Pubkey) -> Optional[int]:
        self._maybe_fail("get_token_balance")
        return 0 if address in self.accounts else None


# --- SAS account builders -------------------------------------------------------

DEFAULT_FIELDS = (("kycCompleted", 0), ("country", 12))
KycDataLayout = CStruct("kycCompleted" / U8, "country" / String)


def schema_account_data(
    credential: Pubkey,
    fields=DEFAULT_FIELDS,
    *,
    is_paused: bool = False,
    name: bytes = b"spout-kyc",
) -> bytes:
    return SchemaLayout.build({
        "discriminator": 1,
        "credential": bytes(credential),
        "name": name,
        "description": b"KYC status",
        "layout": bytes(code for _, code in fields),
        "field_names": FieldNamesLayout.build([n for n, _ in fields]),
        "is_paused": is_paused,
        "version": 1,
    })


def attestation_account_data(
    credential: Pubkey,
    schema: Pubkey,
    nonce: Pubkey,
    *,
    expiry: int,
    data: bytes,
) -> bytes:
    return AttestationLayout.build({
        "discriminator": 2,
        "nonce": bytes(nonce),
        "credential": bytes(credential),
        "schema": bytes(schema),
        "data": data,
        "signer": bytes(Pubkey.new_unique()),
        "expiry": expiry,
        "token_account": bytes(Pubkey.default()),
    })


def kyc_data(kyc_completed: int = 1, country: str = "US") -> bytes:
    return KycDataLayout.build({"kycCompleted": kyc_completed, "country": country})


def install_attestation(
    ledger: FakeLedger,
    requester: Pubkey,
    *,
    expiry: int = 2**40,
    kyc_completed: int = 1,
    is_paused: bool = False,
) -> Pubkey:
    """Put a schema and an attestation for ``requester`` on the fake ledger."""
    config = ledger.deployment
    ledger.put(config.schema, config.sas_program, schema_account_data(config.credential, is_paused=is_paused))
    address = derive_attestation_address(config.credential, config.schema, requester, config.sas_program)
    ledger.put(
        address,
        config.sas_program,
        attestation_account_data(
            config.credential, config.schema, requester,
            expiry=expiry, data=kyc_data(kyc_completed),
        ),
    )
    return address


# --- fixtures -------------------------------------------------------------------

@pytest.fixture
def deployment():
    return DeploymentConfig.devnet()


@pytest.fixture
def settings():
    return PipelineSettings(
        confirm_timeout_seconds=5.0,
        poll_interval_seconds=0.5,
        retry_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def ledger(deployment):
    return FakeLedger(deployment)


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def signer(keypair):
    return KeypairSigner(keypair)


@pytest.fixture
def requester(keypair):
    return keypair.pubkey()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def treasury_ata(deployment):
    authority = derive_authority(deployment.program_id, deployment.authority_seed)
    return derive_associated_account(authority, deployment.usdc_mint)


@pytest.fixture
def requester_ata(deployment, requester):
    return derive_associated_account(requester, deployment.usdc_mint)
