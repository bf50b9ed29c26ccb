"""Ledger access: typed RPC responses, endpoint health, and failover."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import aiohttp
import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from spout.config import PipelineSettings, RpcEndpoint
from spout.errors import StaleEnvelope, TransportError

logger = logging.getLogger(__name__)

# Circuit breaker settings
CIRCUIT_BREAKER_FAILURE_THRESHOLD = 3  # failures before marking endpoint as unhealthy
CIRCUIT_BREAKER_RECOVERY_SECONDS = 60  # seconds before retrying a failed endpoint
HEALTH_CHECK_TIMEOUT_SECONDS = 5


# ----------------------------------------------------------------------------
# Typed responses, decoded once at the RPC boundary
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class AccountSnapshot:
    address: Pubkey
    owner: Pubkey
    lamports: int
    data: bytes


@dataclass(frozen=True)
class FreshnessToken:
    """Recent blockhash plus the last block height at which it is accepted."""
    blockhash: Hash
    last_valid_block_height: int
    fetched_at: float = field(default_factory=time.time)

    def is_expired(self, current_block_height: Optional[int] = None, ttl_seconds: Optional[float] = None,
                   now: Optional[float] = None) -> bool:
        if ttl_seconds is not None:
            age = (now if now is not None else time.time()) - self.fetched_at
            if age > ttl_seconds:
                return True
        if current_block_height is not None and current_block_height > self.last_valid_block_height:
            return True
        return False


@dataclass(frozen=True)
class SimulationReport:
    success: bool
    logs: Tuple[str, ...] = ()
    units_consumed: int = 0
    error: Optional[str] = None
    reason: Optional[str] = None

    def summary(self) -> str:
        if self.success:
            return f"Simulation PASSED ({self.units_consumed:,} compute units)"
        return f"Simulation FAILED: {self.reason or self.error}"


@dataclass(frozen=True)
class SignatureStatus:
    signature: str
    confirmation: Optional[str]    # "processed" | "confirmed" | "finalized"
    error: Optional[str] = None
    slot: Optional[int] = None

    def reached(self, commitment: str) -> bool:
        order = {"processed": 0, "confirmed": 1, "finalized": 2}
        if self.confirmation is None:
            return False
        return order.get(self.confirmation, -1) >= order.get(commitment, 2)


class Ledger(Protocol):
    """What the pipeline needs from the chain. ``RpcLedger`` is the real one."""

    async def get_accounts(self, addresses: Sequence[Pubkey]) -> List[Optional[AccountSnapshot]]: ...

    async def get_account(self, address: Pubkey) -> Optional[AccountSnapshot]: ...

    async def get_freshness_token(self) -> FreshnessToken: ...

    async def get_block_height(self) -> int: ...

    async def simulate(self, transaction: VersionedTransaction) -> SimulationReport: ...

    async def send_raw(self, raw_transaction: bytes) -> str: ...

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]: ...

    async def get_token_balance(self, address: Pubkey) -> Optional[int]: ...


def is_blockhash_error(error: Optional[str]) -> bool:
    if not error:
        return False
    lower = error.lower()
    return "blockhash not found" in lower or "blockhashnotfound" in lower or "blockhash expired" in lower


def _confirmation_name(status: Any) -> Optional[str]:
    if status is None:
        return None
    if status == TransactionConfirmationStatus.Finalized:
        return "finalized"
    if status == TransactionConfirmationStatus.Confirmed:
        return "confirmed"
    if status == TransactionConfirmationStatus.Processed:
        return "processed"
    return str(status).rsplit(".", 1)[-1].lower()


# ----------------------------------------------------------------------------
# Endpoint health and circuit breaking
# ----------------------------------------------------------------------------

class EndpointPool:
    """Ordered RPC endpoints with a failure-count circuit breaker per URL."""

    def __init__(self, endpoints: Sequence[RpcEndpoint]):
        if not endpoints:
            raise ValueError("EndpointPool needs at least one endpoint")
        self.endpoints = list(endpoints)
        self._failures: Dict[str, int] = {}
        self._last_failure: Dict[str, float] = {}

    def mark_failure(self, endpoint: RpcEndpoint) -> None:
        self._failures[endpoint.url] = self._failures.get(endpoint.url, 0) + 1
        self._last_failure[endpoint.url] = time.time()
        logger.warning(f"RPC endpoint failure #{self._failures[endpoint.url]}: {endpoint.name}")

    def mark_success(self, endpoint: RpcEndpoint) -> None:
        self._failures[endpoint.url] = 0

    def is_available(self, endpoint: RpcEndpoint) -> bool:
        failures = self._failures.get(endpoint.url, 0)
        if failures < CIRCUIT_BREAKER_FAILURE_THRESHOLD:
            return True
        last_failure = self._last_failure.get(endpoint.url, 0)
        if time.time() - last_failure > CIRCUIT_BREAKER_RECOVERY_SECONDS:
            logger.info(f"RPC endpoint recovery attempt: {endpoint.name}")
            return True
        return False

    def available(self) -> List[RpcEndpoint]:
        available = [ep for ep in self.endpoints if self.is_available(ep)]
        if not available:
            logger.warning("All endpoints circuit-broken, allowing recovery attempt")
            return list(self.endpoints)
        return available

    def next_after(self, current: RpcEndpoint) -> RpcEndpoint:
        candidates = [ep for ep in self.available() if ep.url != current.url]
        return candidates[0] if candidates else current

    async def check_health(self, endpoint: RpcEndpoint) -> bool:
        """JSON-RPC ``getHealth`` check."""
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
        timeout = aiohttp.ClientTimeout(total=min(endpoint.timeout_ms / 1000, HEALTH_CHECK_TIMEOUT_SECONDS))
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(endpoint.url, json=payload) as resp:
                    if resp.status != 200:
                        self.mark_failure(endpoint)
                        return False
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Health check failed for {endpoint.name}: {e}")
            self.mark_failure(endpoint)
            return False
        healthy = data.get("result") == "ok"
        if healthy:
            self.mark_success(endpoint)
        return healthy

    async def pick(self) -> RpcEndpoint:
        """First healthy endpoint in configured order; falls back to the first available."""
        available = self.available()
        results = await asyncio.gather(*(self.check_health(ep) for ep in available), return_exceptions=True)
        for ep, ok in zip(available, results):
            if ok is True:
                logger.debug(f"Using RPC endpoint {ep.name}")
                return ep
        logger.warning("No healthy endpoints found, using first available")
        return available[0]


# ----------------------------------------------------------------------------
# solana-py backed ledger
# ----------------------------------------------------------------------------

class RpcLedger:
    """``Ledger`` over ``solana.rpc.async_api.AsyncClient`` with endpoint failover.

    Transport failures mark the current endpoint and rotate to the next one
    before raising ``TransportError``; the caller's retry policy then retries
    against the new endpoint.
    """

    def __init__(
        self,
        pool: EndpointPool,
        *,
        commitment: str = "confirmed",
        endpoint: Optional[RpcEndpoint] = None,
        client_factory: Callable[[RpcEndpoint], AsyncClient] = None,
    ):
        self.pool = pool
        self.commitment = Commitment(commitment)
        self._client_factory = client_factory or (
            lambda ep: AsyncClient(ep.url, commitment=self.commitment, timeout=ep.timeout_ms / 1000)
        )
        self.endpoint = endpoint or pool.endpoints[0]
        self._client: AsyncClient = self._client_factory(self.endpoint)

    @classmethod
    async def connect(cls, settings: PipelineSettings, *, check_health: bool = True) -> "RpcLedger":
        pool = EndpointPool(settings.endpoints)
        endpoint = await pool.pick() if check_health else pool.endpoints[0]
        return cls(pool, commitment=settings.commitment, endpoint=endpoint)

    async def close(self) -> None:
        await self._client.close()

    async def __aenter__(self) -> "RpcLedger":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _rotate(self) -> None:
        nxt = self.pool.next_after(self.endpoint)
        if nxt.url == self.endpoint.url:
            return
        logger.info(f"Failing over RPC {self.endpoint.name} -> {nxt.name}")
        old = self._client
        self.endpoint = nxt
        self._client = self._client_factory(nxt)
        try:
            await old.close()
        except (httpx.HTTPError, RuntimeError) as e:
            logger.debug(f"Error closing old RPC client: {e}")

    async def _call(
        self,
        name: str,
        fn: Callable[[AsyncClient], Awaitable[Any]],
        *,
        raw_rpc_errors: bool = False,
    ) -> Any:
        endpoint = self.endpoint
        try:
            result = await fn(self._client)
        except (SolanaRpcException, httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
            self.pool.mark_failure(endpoint)
            await self._rotate()
            raise TransportError(f"{name} failed on {endpoint.name}: {e}", endpoint=endpoint.name) from e
        except RPCException as e:
            if raw_rpc_errors:
                raise
            raise TransportError(f"{name} error from {endpoint.name}: {e}", endpoint=endpoint.name) from e
        self.pool.mark_success(endpoint)
        return result

    async def get_accounts(self, addresses: Sequence[Pubkey]) -> List[Optional[AccountSnapshot]]:
        if not addresses:
            return []
        resp = await self._call(
            "getMultipleAccounts", lambda c: c.get_multiple_accounts(list(addresses))
        )
        snapshots: List[Optional[AccountSnapshot]] = []
        for address, account in zip(addresses, resp.value):
            if account is None:
                snapshots.append(None)
            else:
                snapshots.append(AccountSnapshot(address, account.owner, account.lamports, bytes(account.data)))
        return snapshots

    async def get_account(self, address: Pubkey) -> Optional[AccountSnapshot]:
        resp = await self._call("getAccountInfo", lambda c: c.get_account_info(address))
        account = resp.value
        if account is None:
            return None
        return AccountSnapshot(address, account.owner, account.lamports, bytes(account.data))

    async def get_freshness_token(self) -> FreshnessToken:
        resp = await self._call("getLatestBlockhash", lambda c: c.get_latest_blockhash())
        return FreshnessToken(resp.value.blockhash, resp.value.last_valid_block_height)

    async def get_block_height(self) -> int:
        resp = await self._call("getBlockHeight", lambda c: c.get_block_height())
        return int(resp.value)

    async def simulate(self, transaction: VersionedTransaction) -> SimulationReport:
        resp = await self._call(
            "simulateTransaction",
            lambda c: c.simulate_transaction(transaction, sig_verify=False),
        )
        value = resp.value
        logs = tuple(value.logs or ())
        units = int(value.units_consumed or 0)
        if value.err is not None:
            return SimulationReport(success=False, logs=logs, units_consumed=units, error=str(value.err))
        return SimulationReport(success=True, logs=logs, units_consumed=units)

    async def send_raw(self, raw_transaction: bytes) -> str:
        opts = TxOpts(skip_preflight=True, preflight_commitment=self.commitment, max_retries=3)
        try:
            resp = await self._call(
                "sendTransaction", lambda c: c.send_raw_transaction(raw_transaction, opts=opts),
                raw_rpc_errors=True,
            )
        except RPCException as e:
            if is_blockhash_error(str(e)):
                raise StaleEnvelope(f"blockhash rejected on send: {e}") from e
            raise TransportError(f"sendTransaction rejected: {e}", endpoint=self.endpoint.name) from e
        return str(resp.value)

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        sig = Signature.from_string(signature)
        resp = await self._call(
            "getSignatureStatuses",
            lambda c: c.get_signature_statuses([sig], search_transaction_history=True),
        )
        value = resp.value[0] if resp.value else None
        if value is None:
            return None
        return SignatureStatus(
            signature=signature,
            confirmation=_confirmation_name(value.confirmation_status),
            error=str(value.err) if value.err is not None else None,
            slot=value.slot,
        )

    async def get_token_balance(self, address: Pubkey) -> Optional[int]:
        try:
            resp = await self._call(
                "getTokenAccountBalance",
                lambda c: c.get_token_account_balance(address),
                raw_rpc_errors=True,
            )
        except RPCException as e:
            # Missing token accounts come back as an RPC error, not a null value
            if "could not find account" in str(e).lower() or "invalid param" in str(e).lower():
                return None
            raise TransportError(f"getTokenAccountBalance failed: {e}", endpoint=self.endpoint.name) from e
        return int(resp.value.amount)
