"""Tests for envelope assembly and freshness."""

import pytest
from solders.compute_budget import ID as COMPUTE_BUDGET_ID
from solders.signature import Signature

from spout.addresses import resolve_account_set
from spout.assembler import TransactionAssembler
from spout.encoding import build_order_instruction
from spout.errors import StaleEnvelope
from spout.models import OrderRequest, Side
from spout.provisioning import AccountProvisioner, is_create_idempotent


async def _parts(ledger, deployment, requester):
    accounts = resolve_account_set(deployment, requester, Side.BUY)
    order = OrderRequest(Side.BUY, "AAPL", 1_000_000, 190_000_000)
    order_ix = build_order_instruction(order, accounts, deployment.program_id, deployment.buy_discriminator)
    provisioning = await AccountProvisioner(ledger).plan(accounts)
    return provisioning, order_ix


class TestAssemble:
    @pytest.mark.asyncio
    async def test_provisioning_precedes_order(self, ledger, deployment, requester):
        provisioning, order_ix = await _parts(ledger, deployment, requester)
        envelope = await TransactionAssembler(ledger).assemble(provisioning, order_ix, requester)

        assert len(envelope.instructions) == 3
        assert all(is_create_idempotent(ix) for ix in envelope.instructions[:2])
        assert envelope.order_instruction == order_ix
        assert envelope.provisioning == tuple(provisioning)

    @pytest.mark.asyncio
    async def test_no_provisioning(self, ledger, deployment, requester):
        _, order_ix = await _parts(ledger, deployment, requester)
        envelope = await TransactionAssembler(ledger).assemble([], order_ix, requester)

        assert envelope.instructions == (order_ix,)
        assert envelope.provisioning_count == 0

    @pytest.mark.asyncio
    async def test_compute_budget_goes_first(self, ledger, deployment, requester):
        provisioning, order_ix = await _parts(ledger, deployment, requester)
        assembler = TransactionAssembler(ledger, compute_unit_limit=200_000, compute_unit_price=5_000)
        envelope = await assembler.assemble(provisioning, order_ix, requester)

        assert [ix.program_id for ix in envelope.instructions[:2]] == [COMPUTE_BUDGET_ID, COMPUTE_BUDGET_ID]
        assert envelope.provisioning == tuple(provisioning)
        assert envelope.order_instruction == order_ix

    @pytest.mark.asyncio
    async def test_fee_payer_and_freshness(self, ledger, deployment, requester):
        _, order_ix = await _parts(ledger, deployment, requester)
        envelope = await TransactionAssembler(ledger).assemble([], order_ix, requester)
        message = envelope.message()

        assert message.account_keys[0] == requester
        assert message.recent_blockhash == envelope.freshness.blockhash
        assert envelope.freshness.last_valid_block_height > ledger.block_height

    @pytest.mark.asyncio
    async def test_unsigned_transaction_has_placeholder_signature(self, ledger, deployment, requester):
        _, order_ix = await _parts(ledger, deployment, requester)
        envelope = await TransactionAssembler(ledger).assemble([], order_ix, requester)

        tx = envelope.unsigned_transaction()
        assert tx.signatures == [Signature.default()]


class TestFreshness:
    @pytest.mark.asyncio
    async def test_fresh_envelope_passes(self, ledger, deployment, requester, fake_clock):
        _, order_ix = await _parts(ledger, deployment, requester)
        assembler = TransactionAssembler(ledger, clock=fake_clock)
        envelope = await assembler.assemble([], order_ix, requester)

        await assembler.ensure_fresh(envelope)

    @pytest.mark.asyncio
    async def test_block_height_past_validity(self, ledger, deployment, requester, fake_clock):
        _, order_ix = await _parts(ledger, deployment, requester)
        assembler = TransactionAssembler(ledger, clock=fake_clock)
        envelope = await assembler.assemble([], order_ix, requester)

        ledger.block_height = envelope.freshness.last_valid_block_height + 1
        with pytest.raises(StaleEnvelope):
            await assembler.ensure_fresh(envelope)

    @pytest.mark.asyncio
    async def test_ttl_elapsed(self, ledger, deployment, requester, fake_clock):
        _, order_ix = await _parts(ledger, deployment, requester)
        assembler = TransactionAssembler(ledger, blockhash_ttl_seconds=60, clock=fake_clock)
        envelope = await assembler.assemble([], order_ix, requester)

        fake_clock.now += 61
        with pytest.raises(StaleEnvelope):
            await assembler.ensure_fresh(envelope)

    @pytest.mark.asyncio
    async def test_reassemble_refreshes_blockhash(self, ledger, deployment, requester, fake_clock):
        provisioning, order_ix = await _parts(ledger, deployment, requester)
        assembler = TransactionAssembler(ledger, clock=fake_clock)
        envelope = await assembler.assemble(provisioning, order_ix, requester)

        fake_clock.now += 120
        fresh = await assembler.reassemble(envelope)

        assert fresh.instructions == envelope.instructions
        assert fresh.freshness.blockhash != envelope.freshness.blockhash
        await assembler.ensure_fresh(fresh)
