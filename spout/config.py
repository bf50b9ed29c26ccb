"""
Deployment and pipeline configuration.

Two immutable structs are injected into the pipeline at construction:

- DeploymentConfig: addresses and constants of one program deployment
  (program id, mints, SAS credential/schema, discriminators).
- PipelineSettings: runtime knobs (RPC endpoints, timeouts, retries).

Usage:
    from spout.config import load_config

    deployment, settings = load_config()            # devnet defaults + env
    deployment, settings = load_config("spout.json")  # JSON overrides + env

Environment overrides use the ``SPOUT_`` prefix, e.g. ``SPOUT_PROGRAM_ID``,
``SPOUT_RPC_URL``, ``SPOUT_CONFIRM_TIMEOUT``.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from spout.encoding import DISCRIMINATOR_LEN, anchor_discriminator
from spout.errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEVNET_RPC_URL = "https://api.devnet.solana.com"

# IDL discriminator for sell_asset_manual
SELL_ASSET_MANUAL_DISCRIMINATOR = bytes([93, 29, 23, 188, 159, 215, 86, 179])


def _get_env(key: str, default: T = None, cast: Type[T] = str) -> T:
    """Get environment variable with type casting."""
    value = os.environ.get(key)

    if value is None:
        return default

    if cast == bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    if cast == int:
        try:
            return int(value)
        except ValueError:
            return default

    if cast == float:
        try:
            return float(value)
        except ValueError:
            return default

    if cast == list:
        return [v.strip() for v in value.split(',') if v.strip()]

    return value


def _pubkey(value: Any, name: str) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(str(value).strip())
    except Exception as e:
        raise ConfigurationError(f"{name} is not a valid address: {value!r}") from e


def _discriminator(value: Any, name: str) -> bytes:
    try:
        raw = bytes.fromhex(value) if isinstance(value, str) else bytes(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} is not a valid discriminator: {value!r}") from e
    if len(raw) != DISCRIMINATOR_LEN:
        raise ConfigurationError(f"{name} must be {DISCRIMINATOR_LEN} bytes, got {len(raw)}")
    return raw


@dataclass(frozen=True)
class DeploymentConfig:
    """Addresses and constants for one deployment of the orders program."""
    program_id: Pubkey
    order_events: Pubkey
    usdc_mint: Pubkey
    sas_program: Pubkey
    credential: Pubkey
    schema: Pubkey
    price_feed: Pubkey
    default_attestation: Optional[Pubkey] = None
    token_program: Pubkey = TOKEN_PROGRAM_ID
    associated_token_program: Pubkey = ASSOCIATED_TOKEN_PROGRAM_ID
    system_program: Pubkey = SYSTEM_PROGRAM_ID
    authority_seed: bytes = b"orders_authority"
    buy_discriminator: bytes = field(default_factory=lambda: anchor_discriminator("buy_asset_manual"))
    sell_discriminator: bytes = SELL_ASSET_MANUAL_DISCRIMINATOR
    compliance_field: str = "kycCompleted"
    compliance_expected: int = 1

    def __post_init__(self):
        if self.buy_discriminator == self.sell_discriminator:
            raise ConfigurationError("buy and sell discriminators must differ")

    @classmethod
    def devnet(cls) -> "DeploymentConfig":
        order_events = Pubkey.from_string("8Xk151dxP3vs9tiR64hPRqNzjrGojvVqWz2vye2tMsrM")
        return cls(
            program_id=Pubkey.from_string("EkU7xRmBhVyHdwtRZ4SJ9D3Nz6SeAvymft7nz3CL2XXB"),
            order_events=order_events,
            usdc_mint=Pubkey.from_string("Bd8tBm8WNPhmW5FjvAkisw4C9G3NEE7NowEW6VUuMHjW"),
            sas_program=Pubkey.from_string("22zoJMtdu4tQc2PzL74ZUT7FrwgB1Udec8DdW4yw4BdG"),
            credential=Pubkey.from_string("B4PtmaDJdFQBxpvwdLB3TDXuLd69wnqXexM2uBqqfMXL"),
            schema=Pubkey.from_string("GvJbCuyqzTiACuYwFzqZt7cEPXSeD5Nq3GeWBobFfU8x"),
            # Manual-price path leaves the feed unchecked on-chain
            price_feed=order_events,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["DeploymentConfig"] = None) -> "DeploymentConfig":
        """Overlay a (JSON-shaped) mapping onto ``base`` (devnet by default)."""
        base = base or cls.devnet()
        updates: Dict[str, Any] = {}
        for name in (
            "program_id", "order_events", "usdc_mint", "sas_program", "credential",
            "schema", "price_feed", "default_attestation", "token_program",
            "associated_token_program", "system_program",
        ):
            if data.get(name):
                updates[name] = _pubkey(data[name], name)
        if data.get("authority_seed"):
            updates["authority_seed"] = str(data["authority_seed"]).encode("utf-8")
        for name in ("buy_discriminator", "sell_discriminator"):
            if data.get(name) is not None:
                updates[name] = _discriminator(data[name], name)
        if data.get("compliance_field"):
            updates["compliance_field"] = str(data["compliance_field"])
        if data.get("compliance_expected") is not None:
            updates["compliance_expected"] = int(data["compliance_expected"])
        return replace(base, **updates)

    @classmethod
    def from_env(cls, base: Optional["DeploymentConfig"] = None) -> "DeploymentConfig":
        env = {
            "program_id": _get_env("SPOUT_PROGRAM_ID"),
            "order_events": _get_env("SPOUT_ORDER_EVENTS"),
            "usdc_mint": _get_env("SPOUT_USDC_MINT"),
            "sas_program": _get_env("SPOUT_SAS_PROGRAM_ID"),
            "credential": _get_env("SPOUT_CREDENTIAL"),
            "schema": _get_env("SPOUT_SCHEMA"),
            "price_feed": _get_env("SPOUT_PRICE_FEED"),
            "default_attestation": _get_env("SPOUT_DEFAULT_ATTESTATION"),
        }
        return cls.from_dict({k: v for k, v in env.items() if v}, base=base)

    def discriminator_for(self, side) -> bytes:
        from spout.models import Side

        return self.buy_discriminator if side is Side.BUY else self.sell_discriminator


@dataclass(frozen=True)
class RpcEndpoint:
    name: str
    url: str
    timeout_ms: int = 30000


@dataclass(frozen=True)
class PipelineSettings:
    """Runtime knobs for one pipeline instance."""
    endpoints: Tuple[RpcEndpoint, ...] = (RpcEndpoint(name="devnet", url=DEVNET_RPC_URL),)
    commitment: str = "confirmed"
    finality: str = "finalized"
    confirm_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.5
    blockhash_ttl_seconds: float = 60.0
    max_reassemblies: int = 2
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    compute_unit_limit: Optional[int] = None
    compute_unit_price: Optional[int] = None
    gate_sells: bool = False

    def __post_init__(self):
        if not self.endpoints:
            raise ConfigurationError("at least one RPC endpoint is required")
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("poll_interval_seconds must be positive")
        if self.poll_interval_seconds >= self.confirm_timeout_seconds:
            raise ConfigurationError("poll interval must be shorter than the confirmation timeout")
        if self.finality not in ("confirmed", "finalized"):
            raise ConfigurationError(f"unsupported finality: {self.finality}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["PipelineSettings"] = None) -> "PipelineSettings":
        base = base or cls()
        updates: Dict[str, Any] = {}
        endpoints = data.get("endpoints")
        if endpoints:
            parsed: List[RpcEndpoint] = []
            for i, ep in enumerate(endpoints):
                if isinstance(ep, str):
                    parsed.append(RpcEndpoint(name=f"rpc_{i}", url=ep))
                elif ep.get("url"):
                    parsed.append(RpcEndpoint(
                        name=str(ep.get("name", f"rpc_{i}")),
                        url=str(ep["url"]),
                        timeout_ms=int(ep.get("timeout_ms", 30000)),
                    ))
            updates["endpoints"] = tuple(parsed)
        for name in ("commitment", "finality"):
            if data.get(name):
                updates[name] = str(data[name])
        for name in (
            "confirm_timeout_seconds", "poll_interval_seconds", "blockhash_ttl_seconds",
            "retry_base_delay", "retry_max_delay",
        ):
            if data.get(name) is not None:
                updates[name] = float(data[name])
        for name in ("max_reassemblies", "retry_attempts", "compute_unit_limit", "compute_unit_price"):
            if data.get(name) is not None:
                updates[name] = int(data[name])
        if data.get("gate_sells") is not None:
            updates["gate_sells"] = bool(data["gate_sells"])
        return replace(base, **updates)

    @classmethod
    def from_env(cls, base: Optional["PipelineSettings"] = None) -> "PipelineSettings":
        env: Dict[str, Any] = {
            "endpoints": _get_env("SPOUT_RPC_URL", cast=list),
            "commitment": _get_env("SPOUT_COMMITMENT"),
            "finality": _get_env("SPOUT_FINALITY"),
            "confirm_timeout_seconds": _get_env("SPOUT_CONFIRM_TIMEOUT", cast=float),
            "poll_interval_seconds": _get_env("SPOUT_POLL_INTERVAL", cast=float),
            "retry_attempts": _get_env("SPOUT_RETRY_ATTEMPTS", cast=int),
            "compute_unit_limit": _get_env("SPOUT_CU_LIMIT", cast=int),
            "compute_unit_price": _get_env("SPOUT_CU_PRICE", cast=int),
            "gate_sells": _get_env("SPOUT_GATE_SELLS", cast=bool),
        }
        return cls.from_dict({k: v for k, v in env.items() if v is not None}, base=base)


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        logger.warning(f"Config file not found: {path}, using defaults")
        return {}
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    return data


def load_config(path: Optional[str] = None) -> Tuple[DeploymentConfig, PipelineSettings]:
    """Devnet defaults, then the optional JSON file, then SPOUT_* env vars."""
    data: Dict[str, Any] = _load_json(Path(path)) if path else {}
    deployment = DeploymentConfig.from_dict(data.get("deployment", {}))
    settings = PipelineSettings.from_dict(data.get("pipeline", {}))
    deployment = DeploymentConfig.from_env(base=deployment)
    settings = PipelineSettings.from_env(base=settings)
    logger.info(
        f"Loaded config: program={str(deployment.program_id)[:8]}... "
        f"endpoints={len(settings.endpoints)}"
    )
    return deployment, settings
