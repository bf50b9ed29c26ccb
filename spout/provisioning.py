"""
Idempotent associated-token-account provisioning.

The plan only contains CreateIdempotent instructions, so submitting the same
plan twice is harmless: the ATA program no-ops on an existing account.
"""

import logging
from typing import List

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from spout.addresses import derive_associated_account
from spout.ledger import Ledger
from spout.models import AccountSet

logger = logging.getLogger(__name__)

# Associated token program instruction indices
ATA_CREATE = 0
ATA_CREATE_IDEMPOTENT = 1


def create_idempotent_ata_instruction(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    associated_program: Pubkey = ASSOCIATED_TOKEN_PROGRAM_ID,
    system_program: Pubkey = SYSTEM_PROGRAM_ID,
) -> Instruction:
    """CreateIdempotent for ``owner``'s ATA of ``mint``, paid by ``payer``."""
    ata = derive_associated_account(owner, mint, token_program, associated_program)
    accounts = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=system_program, is_signer=False, is_writable=False),
        AccountMeta(pubkey=token_program, is_signer=False, is_writable=False),
    ]
    return Instruction(associated_program, bytes([ATA_CREATE_IDEMPOTENT]), accounts)


def is_create_idempotent(instruction: Instruction) -> bool:
    return instruction.data == bytes([ATA_CREATE_IDEMPOTENT])


class AccountProvisioner:
    """Emits create-if-absent instructions for the token accounts an order needs."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def _create_for(self, accounts: AccountSet, role: str) -> Instruction:
        owner = accounts.token_account_owners()[role]
        return create_idempotent_ata_instruction(
            payer=accounts.requester,
            owner=owner,
            mint=accounts.mint,
            token_program=accounts.token_program,
            associated_program=accounts.associated_token_program,
            system_program=accounts.system_program,
        )

    async def plan(self, accounts: AccountSet, *, assume_absent: bool = False) -> List[Instruction]:
        """Instructions that create every missing token account in ``accounts``.

        With ``assume_absent`` the existence query is skipped and every token
        account gets a create; the result is still safe to submit.
        """
        roles = list(accounts.token_accounts())

        # Overridden (non-derived) token accounts may not be ATAs; never create those
        roles = [r for r in roles if accounts.is_derived(r)]

        if assume_absent:
            missing = roles
        else:
            addresses = [accounts.token_accounts()[r] for r in roles]
            snapshots = await self.ledger.get_accounts(addresses)
            missing = [role for role, snap in zip(roles, snapshots) if snap is None]

        plan = [self._create_for(accounts, role) for role in missing]
        if plan:
            logger.info(f"Provisioning {len(plan)} token account(s): {', '.join(missing)}")
        else:
            logger.debug("All token accounts present, nothing to provision")
        return plan
