"""
Deterministic address derivation for the orders program.

Everything here is pure: same inputs, same Pubkey, no RPC. That is what lets
provisioning and encoding proceed before any account has been fetched.

    derive_authority(program_id, b"orders_authority")
    derive_associated_account(owner, mint)
    derive_attestation_address(credential, schema, nonce, sas_program)
"""

import logging
from typing import Iterable, List, Optional, Union

from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from spout.config import DeploymentConfig
from spout.errors import InvalidSeed
from spout.models import AccountSet, Side

logger = logging.getLogger(__name__)

MAX_SEED_LEN = 32
MAX_SEEDS = 16
ATTESTATION_SEED = b"attestation"

Seed = Union[bytes, str, Pubkey]


def _seed_bytes(seed: Seed) -> bytes:
    if isinstance(seed, Pubkey):
        return bytes(seed)
    if isinstance(seed, str):
        return seed.encode("utf-8")
    if isinstance(seed, (bytes, bytearray)):
        return bytes(seed)
    raise InvalidSeed(f"unsupported seed type: {type(seed).__name__}")


def _validate_seeds(seeds: Iterable[Seed]) -> List[bytes]:
    raw = [_seed_bytes(s) for s in seeds]
    if len(raw) > MAX_SEEDS:
        raise InvalidSeed(f"{len(raw)} seeds given, max {MAX_SEEDS}")
    for i, seed in enumerate(raw):
        if not seed:
            raise InvalidSeed(f"seed {i} is empty")
        if len(seed) > MAX_SEED_LEN:
            raise InvalidSeed(f"seed {i} is {len(seed)} bytes, max {MAX_SEED_LEN}")
    return raw


def find_address(seeds: Iterable[Seed], program_id: Pubkey) -> Pubkey:
    """Program-derived address for ``seeds`` (bump discarded)."""
    pda, _bump = Pubkey.find_program_address(_validate_seeds(seeds), program_id)
    return pda


def derive_authority(program_id: Pubkey, seed: Seed) -> Pubkey:
    """Authority PDA owned by ``program_id`` for a single fixed seed."""
    return find_address([seed], program_id)


def derive_associated_account(
    owner: Pubkey,
    asset_id: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    associated_program: Pubkey = ASSOCIATED_TOKEN_PROGRAM_ID,
) -> Pubkey:
    """Associated token account of ``owner`` for mint ``asset_id``.

    Off-curve owners (PDAs) are allowed; the treasury account is owned by the
    orders authority PDA.
    """
    return find_address([owner, token_program, asset_id], associated_program)


def derive_attestation_address(
    credential: Pubkey,
    schema: Pubkey,
    nonce: Pubkey,
    sas_program: Pubkey,
) -> Pubkey:
    """SAS attestation PDA; the requester's address is used as the nonce."""
    return find_address([ATTESTATION_SEED, credential, schema, nonce], sas_program)


def parse_address(value: Optional[str]) -> Optional[Pubkey]:
    """Lenient parse: None for empty or invalid input."""
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return Pubkey.from_string(text)
    except Exception:
        return None


def resolve_account_set(
    config: DeploymentConfig,
    requester: Pubkey,
    side: Side,
    *,
    attestation_override: Optional[Pubkey] = None,
    treasury_override: Optional[Pubkey] = None,
) -> AccountSet:
    """Full positional account set for one order, without touching the network."""
    derived = {"requester_token_account", "orders_authority"}

    authority = derive_authority(config.program_id, config.authority_seed)
    requester_ata = derive_associated_account(
        requester, config.usdc_mint, config.token_program, config.associated_token_program
    )

    if treasury_override is not None:
        treasury = treasury_override
    else:
        treasury = derive_associated_account(
            authority, config.usdc_mint, config.token_program, config.associated_token_program
        )
        derived.add("treasury_token_account")

    if attestation_override is not None:
        attestation = attestation_override
    else:
        attestation = derive_attestation_address(
            config.credential, config.schema, requester, config.sas_program
        )
        derived.add("attestation")

    logger.debug(
        f"Resolved {side.value} accounts for {str(requester)[:8]}...: "
        f"authority={str(authority)[:8]}... attestation={str(attestation)[:8]}..."
    )

    return AccountSet(
        requester=requester,
        requester_token_account=requester_ata,
        order_events=config.order_events,
        treasury_token_account=treasury,
        orders_authority=authority,
        mint=config.usdc_mint,
        attestation=attestation,
        schema=config.schema,
        credential=config.credential,
        sas_program=config.sas_program,
        price_feed=config.price_feed,
        token_program=config.token_program,
        associated_token_program=config.associated_token_program,
        system_program=config.system_program,
        derived=frozenset(derived),
    )
