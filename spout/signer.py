"""Wallet signing capability. The pipeline never touches key material itself."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional, Protocol

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from spout.errors import ConfigurationError

logger = logging.getLogger(__name__)


class WalletSigner(Protocol):
    """Anything that can sign a serialized message for ``pubkey``."""

    @property
    def pubkey(self) -> Pubkey: ...

    async def sign_message(self, message: bytes) -> Signature: ...


class KeypairSigner:
    """Local-keypair signer for scripts, the CLI and tests."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    async def sign_message(self, message: bytes) -> Signature:
        return self._keypair.sign_message(message)


def _load_keypair_from_file(path: Path) -> Optional[Keypair]:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read keypair file {path}: {e}")
        return None
    if isinstance(data, list):
        try:
            return Keypair.from_bytes(bytes(data))
        except ValueError as e:
            logger.warning(f"Invalid keypair bytes in {path}: {e}")
    return None


def load_keypair(path: Optional[str] = None) -> Keypair:
    """Keypair from ``path``, the solana CLI default, or ``SOLANA_PRIVATE_KEY`` (base58)."""
    if path:
        kp = _load_keypair_from_file(Path(path))
        if kp:
            return kp
        raise ConfigurationError(f"no usable keypair at {path}")

    solana_default = Path.home() / ".config" / "solana" / "id.json"
    if solana_default.exists():
        kp = _load_keypair_from_file(solana_default)
        if kp:
            return kp

    env_key = os.environ.get("SOLANA_PRIVATE_KEY")
    if env_key:
        try:
            return Keypair.from_bytes(base58.b58decode(env_key.strip()))
        except ValueError as e:
            raise ConfigurationError(f"SOLANA_PRIVATE_KEY is not a valid base58 keypair: {e}") from e

    raise ConfigurationError("no keypair found (pass --keypair or set SOLANA_PRIVATE_KEY)")
