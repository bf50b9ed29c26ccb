"""
Order pipeline: intent in, submission outcome out.

    order -> [attestation gate] -> accounts -> order instruction + provisioning
          -> envelope -> simulation -> (abort | sign + send) -> confirmation

Simulation is the containment point: a failed simulation raises
``ProgramRejected`` and nothing is signed or sent.

Callers must serialize submissions per requester; two in-flight orders from
the same wallet race the same token balance and the pipeline does not guard
against that.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from spout.addresses import resolve_account_set
from spout.assembler import TransactionAssembler, TransactionEnvelope
from spout.attestation import AttestationVerifier, VerificationResult
from spout.config import DeploymentConfig, PipelineSettings
from spout.confirmation import ConfirmationWatch, Confirmer, OutcomeLedger, Submitter
from spout.encoding import build_order_instruction
from spout.errors import ComplianceRequired, StaleEnvelope
from spout.ledger import Ledger, SimulationReport
from spout.logging_config import OrderContext
from spout.models import AccountSet, OrderRequest, Side, SubmissionOutcome
from spout.provisioning import AccountProvisioner
from spout.retry import RetryPolicy
from spout.signer import WalletSigner
from spout.simulator import Simulator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedOrder:
    """Everything built for one order up to and including a passing simulation."""
    order: OrderRequest
    accounts: AccountSet
    order_instruction: Instruction
    provisioning: List[Instruction]
    envelope: TransactionEnvelope
    simulation: SimulationReport


class OrderPipeline:
    """Wires the pipeline stages together around one ledger and one wallet."""

    def __init__(
        self,
        ledger: Ledger,
        signer: WalletSigner,
        deployment: DeploymentConfig,
        settings: PipelineSettings,
        *,
        verifier: Optional[AttestationVerifier] = None,
        outcomes: Optional[OutcomeLedger] = None,
        assembler: Optional[TransactionAssembler] = None,
        confirmer: Optional[Confirmer] = None,
    ):
        self.ledger = ledger
        self.signer = signer
        self.deployment = deployment
        self.settings = settings
        self.retry = RetryPolicy(
            max_attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )
        # One outcome ledger shared by the submitter and the confirmer
        if outcomes is None:
            outcomes = confirmer.outcomes if confirmer is not None else OutcomeLedger()
        elif confirmer is not None and confirmer.outcomes is not outcomes:
            raise ValueError("confirmer must record into the pipeline's outcome ledger")
        self.outcomes = outcomes
        self.verifier = verifier or AttestationVerifier(ledger, deployment)
        self.provisioner = AccountProvisioner(ledger)
        self.assembler = assembler or TransactionAssembler(
            ledger,
            blockhash_ttl_seconds=settings.blockhash_ttl_seconds,
            compute_unit_limit=settings.compute_unit_limit,
            compute_unit_price=settings.compute_unit_price,
        )
        self.simulator = Simulator(ledger, retry=self.retry)
        self.submitter = Submitter(ledger, self.assembler, self.outcomes, retry=self.retry)
        self.confirmer = confirmer if confirmer is not None else Confirmer(
            ledger,
            self.outcomes,
            finality=settings.finality,
            poll_interval=settings.poll_interval_seconds,
        )

    @property
    def requester(self) -> Pubkey:
        return self.signer.pubkey

    def _gated(self, side: Side) -> bool:
        return side is Side.BUY or self.settings.gate_sells

    async def verify(self, requester: Optional[Pubkey] = None) -> VerificationResult:
        return await self.verifier.verify(
            self.deployment.credential,
            self.deployment.schema,
            requester or self.requester,
        )

    async def _check_compliance(self, order: OrderRequest) -> None:
        if not self._gated(order.side):
            return
        result = await self.verify()
        if not result.verified:
            raise ComplianceRequired(str(self.requester), result.reason)

    def resolve_accounts(
        self,
        side: Side,
        *,
        attestation: Optional[Pubkey] = None,
        treasury: Optional[Pubkey] = None,
    ) -> AccountSet:
        return resolve_account_set(
            self.deployment,
            self.requester,
            side,
            attestation_override=attestation or self.deployment.default_attestation,
            treasury_override=treasury,
        )

    async def prepare(
        self,
        order: OrderRequest,
        *,
        attestation: Optional[Pubkey] = None,
        treasury: Optional[Pubkey] = None,
    ) -> PreparedOrder:
        """Gate, build, assemble and simulate. Raises ``ProgramRejected`` on a failed simulation."""
        await self._check_compliance(order)

        accounts = self.resolve_accounts(order.side, attestation=attestation, treasury=treasury)
        order_ix = build_order_instruction(
            order,
            accounts,
            self.deployment.program_id,
            self.deployment.discriminator_for(order.side),
        )
        provisioning = await self.retry.run(self.provisioner.plan, accounts, operation="provision")
        envelope = await self.retry.run(
            self.assembler.assemble, provisioning, order_ix, self.requester, operation="assemble"
        )
        report = Simulator.require_success(await self.simulator.simulate(envelope))

        return PreparedOrder(
            order=order,
            accounts=accounts,
            order_instruction=order_ix,
            provisioning=provisioning,
            envelope=envelope,
            simulation=report,
        )

    async def submit(self, prepared: PreparedOrder) -> str:
        """Sign and send, re-assembling on an expired blockhash up to ``max_reassemblies`` times."""
        envelope = prepared.envelope
        reassemblies = 0
        while True:
            try:
                return await self.submitter.submit(envelope, self.signer)
            except StaleEnvelope as e:
                if reassemblies >= self.settings.max_reassemblies:
                    raise
                reassemblies += 1
                logger.info(f"{e}; re-assembling ({reassemblies}/{self.settings.max_reassemblies})")
                envelope = await self.retry.run(self.assembler.reassemble, envelope, operation="reassemble")
                # State may have moved since the first dry run
                Simulator.require_success(await self.simulator.simulate(envelope))

    async def execute(
        self,
        order: OrderRequest,
        *,
        timeout: Optional[float] = None,
        attestation: Optional[Pubkey] = None,
        treasury: Optional[Pubkey] = None,
    ) -> SubmissionOutcome:
        """Run the whole pipeline and wait for a terminal outcome."""
        with OrderContext(requester=str(self.requester), ticker=order.ticker, side=order.side.value):
            prepared = await self.prepare(order, attestation=attestation, treasury=treasury)
            handle = await self.submit(prepared)
            return await self.confirmer.await_confirmation(
                handle, timeout if timeout is not None else self.settings.confirm_timeout_seconds
            )

    async def start(
        self,
        order: OrderRequest,
        *,
        timeout: Optional[float] = None,
        attestation: Optional[Pubkey] = None,
        treasury: Optional[Pubkey] = None,
    ) -> ConfirmationWatch:
        """Submit and return a cancellable watch instead of waiting."""
        with OrderContext(requester=str(self.requester), ticker=order.ticker, side=order.side.value):
            prepared = await self.prepare(order, attestation=attestation, treasury=treasury)
            handle = await self.submit(prepared)
            return self.confirmer.watch(
                handle, timeout if timeout is not None else self.settings.confirm_timeout_seconds
            )

    async def dry_run(
        self,
        order: OrderRequest,
        *,
        attestation: Optional[Pubkey] = None,
        treasury: Optional[Pubkey] = None,
    ) -> PreparedOrder:
        """Everything up to simulation; never signs or sends."""
        with OrderContext(requester=str(self.requester), ticker=order.ticker, side=order.side.value):
            return await self.prepare(order, attestation=attestation, treasury=treasury)

    async def check_status(self, handle: str) -> SubmissionOutcome:
        return await self.confirmer.check_status(handle)
