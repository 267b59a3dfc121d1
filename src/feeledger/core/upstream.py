"""
Upstream boundary

Defines what the attribution engine needs from the external ledger and wraps
every read in the resilience layer. Binary account decoding and the RPC wire
protocol live behind VaultDataSource implementations; this module only sees
already-decoded values.

Raw transaction payloads are normalized here, once. Anything that does not fit
the expected shape is logged and dropped so the engine never has to
second-guess its inputs.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from feeledger.core.exceptions import CircuitOpenError
from feeledger.core.models import BalanceChange, CreatorPool, PoolReserves, TransactionEvidence
from feeledger.resilience.cache import LRUCache
from feeledger.resilience.circuit_breaker import CircuitBreaker
from feeledger.resilience.health import HealthStatus, call_with_timeout, check_health
from feeledger.resilience.rate_limiter import TokenBucketRateLimiter
from feeledger.resilience.retry import RetryObserver, RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class VaultDataSource(Protocol):
    """
    Protocol for the external ledger collaborator.

    All methods may raise on transport failure; the guarded wrapper retries
    them and reports the outcome to the circuit breaker.
    """

    def sample_vault_balance(self, address: str) -> tuple[int, int]:
        """Return ``(balance, position)`` for a vault."""
        ...

    def fetch_recent_transactions(self, address: str, since_position: int) -> list[Any]:
        """
        Return transactions touching ``address`` after ``since_position``.

        Each item is a TransactionEvidence or a mapping with ``tx_id``,
        ``position``, ``accounts``, ``balance_changes`` (``asset``/``delta``)
        and ``net_amount``.
        """
        ...

    def resolve_pool_reserves(self, pool_address: str) -> PoolReserves | dict[str, Any] | None:
        """Return the pool's reserve value and completion flag, or None if absent."""
        ...

    def derive_candidate_pool(self, asset_id: str) -> str:
        """Derive the origin-pool address an asset would have."""
        ...

    def derive_destination_pool(self, asset_id: str) -> str:
        """Derive the address of the pool an asset migrates into."""
        ...

    def verify_provenance(self, address: str, expected_owner: str) -> bool:
        """Check that the pool at ``address`` was created by ``expected_owner``."""
        ...

    def resolve_asset_label(self, asset_id: str) -> str | None:
        """Look up a display label (ticker) for an asset, or None if none is published."""
        ...

    def enumerate_creator_pools(self, creator: str) -> list[Any]:
        """
        List every origin pool ``creator`` has created.

        Each item is a CreatorPool or a mapping with ``asset_id``, ``pool``,
        ``reserve_value`` and ``completed``. Sources that cannot enumerate
        (provider limits) return an empty list.
        """
        ...

    def current_position(self) -> int:
        """Latest external-ledger position; used for health checks."""
        ...


# ==================== Payload normalization ====================


class _BalanceChangePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    asset: str = Field(min_length=1)
    delta: int


class _TransactionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tx_id: str = Field(min_length=1)
    position: int = Field(ge=0)
    accounts: list[str] = Field(default_factory=list)
    balance_changes: list[_BalanceChangePayload] = Field(default_factory=list)
    net_amount: int = 0


class _PoolReservesPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reserve_value: int = Field(ge=0)
    completed: bool = False


class _CreatorPoolPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    asset_id: str = Field(min_length=1)
    pool: str = Field(min_length=1)
    reserve_value: int = Field(default=0, ge=0)
    completed: bool = False


def normalize_transaction(payload: Any) -> TransactionEvidence | None:
    """Convert one raw payload to TransactionEvidence; returns None when malformed."""
    if isinstance(payload, TransactionEvidence):
        return payload
    try:
        parsed = _TransactionPayload.model_validate(payload)
    except ValidationError as exc:
        logger.warning(
            "Dropping malformed transaction payload",
            extra={"event": "upstream.malformed_transaction", "errors": exc.error_count()},
        )
        return None
    return TransactionEvidence(
        tx_id=parsed.tx_id,
        position=parsed.position,
        accounts=tuple(parsed.accounts),
        balance_changes=tuple(BalanceChange(change.asset, change.delta) for change in parsed.balance_changes),
        net_amount=parsed.net_amount,
    )


def normalize_transactions(payloads: Iterable[Any] | None) -> list[TransactionEvidence]:
    if not payloads:
        return []
    normalized = (normalize_transaction(payload) for payload in payloads)
    return sorted((tx for tx in normalized if tx is not None), key=lambda tx: tx.position)


def normalize_reserves(payload: Any) -> PoolReserves | None:
    if payload is None or isinstance(payload, PoolReserves):
        return payload
    try:
        parsed = _PoolReservesPayload.model_validate(payload)
    except ValidationError:
        logger.warning(
            "Dropping malformed pool reserves payload",
            extra={"event": "upstream.malformed_reserves"},
        )
        return None
    return PoolReserves(reserve_value=parsed.reserve_value, completed=parsed.completed)


def normalize_creator_pools(payloads: Iterable[Any] | None) -> list[CreatorPool]:
    pools: list[CreatorPool] = []
    for payload in payloads or []:
        if isinstance(payload, CreatorPool):
            pools.append(payload)
            continue
        try:
            parsed = _CreatorPoolPayload.model_validate(payload)
        except ValidationError:
            logger.warning(
                "Dropping malformed creator pool payload",
                extra={"event": "upstream.malformed_creator_pool"},
            )
            continue
        pools.append(CreatorPool(**parsed.model_dump()))
    return pools


# ==================== Guarded access ====================


class GuardedUpstream:
    """
    Wraps a VaultDataSource with rate limiting, the circuit breaker, retry with
    backoff and a per-read timeout, in that order.

    Candidate-pool derivations and provenance verdicts are deterministic, so
    they are cached.
    """

    def __init__(
        self,
        source: VaultDataSource,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        cache: LRUCache | None = None,
        read_timeout: float | None = None,
        on_retry: RetryObserver | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.source = source
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name="upstream")
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter
        self.cache = cache or LRUCache(max_size=1000, ttl_seconds=300.0)
        self.read_timeout = read_timeout
        self.on_retry = on_retry
        self._sleep = sleep or time.sleep

    def _call(self, operation_name: str, operation: Callable[[], T]) -> T:
        def attempt() -> T:
            if self.rate_limiter is not None:
                self.rate_limiter.acquire()
            return call_with_timeout(operation, self.read_timeout)

        def observe(attempt_number: int, error: Exception, delay: float) -> None:
            logger.debug(
                "%s retry %d in %.2fs",
                operation_name,
                attempt_number,
                delay,
                extra={"event": "upstream.retry", "operation": operation_name},
            )
            if self.on_retry is not None:
                self.on_retry(attempt_number, error, delay)

        def guarded() -> T:
            return retry_with_backoff(attempt, self.retry_policy, observe, sleep=self._sleep)

        try:
            return self.circuit_breaker.execute(guarded)
        except CircuitOpenError:
            logger.warning(
                "%s blocked: circuit breaker open",
                operation_name,
                extra={"event": "upstream.circuit_open", "operation": operation_name},
            )
            raise

    def sample_vault_balance(self, address: str) -> tuple[int, int]:
        balance, position = self._call(
            "sample_vault_balance", lambda: self.source.sample_vault_balance(address)
        )
        return int(balance), int(position)

    def fetch_recent_transactions(self, address: str, since_position: int) -> list[TransactionEvidence]:
        payloads = self._call(
            "fetch_recent_transactions",
            lambda: self.source.fetch_recent_transactions(address, since_position),
        )
        return [tx for tx in normalize_transactions(payloads) if tx.position > since_position]

    def resolve_pool_reserves(self, pool_address: str) -> PoolReserves | None:
        payload = self._call(
            "resolve_pool_reserves", lambda: self.source.resolve_pool_reserves(pool_address)
        )
        return normalize_reserves(payload)

    def derive_candidate_pool(self, asset_id: str) -> str:
        key = ("pool", asset_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        pool = self._call("derive_candidate_pool", lambda: self.source.derive_candidate_pool(asset_id))
        self.cache.set(key, pool)
        return pool

    def derive_destination_pool(self, asset_id: str) -> str:
        key = ("destination_pool", asset_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        pool = self._call(
            "derive_destination_pool", lambda: self.source.derive_destination_pool(asset_id)
        )
        self.cache.set(key, pool or "")
        return pool or ""

    def verify_provenance(self, address: str, expected_owner: str) -> bool:
        key = ("provenance", address, expected_owner)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        verdict = bool(
            self._call(
                "verify_provenance",
                lambda: self.source.verify_provenance(address, expected_owner),
            )
        )
        self.cache.set(key, verdict)
        return verdict

    def resolve_asset_label(self, asset_id: str) -> str | None:
        label = self._call("resolve_asset_label", lambda: self.source.resolve_asset_label(asset_id))
        if not label:
            return None
        return str(label).strip() or None

    def enumerate_creator_pools(self, creator: str) -> list[CreatorPool]:
        payloads = self._call(
            "enumerate_creator_pools", lambda: self.source.enumerate_creator_pools(creator)
        )
        return normalize_creator_pools(payloads)

    def check_health(self, timeout: float = 5.0) -> HealthStatus:
        return check_health(self.source.current_position, timeout)

    def circuit_snapshot(self) -> dict[str, Any]:
        return self.circuit_breaker.snapshot()
