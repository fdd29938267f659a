"""
Gas pricing and limit estimation for ledger operations.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Dict, Optional, List, Any, Callable, Awaitable

from cachetools import TTLCache
from eth_utils import to_wei
from prometheus_client import Counter, Histogram

from .connection import LedgerConnection
from .types import (
    OperationKind, GasStrategy, OptimizationLevel, GasEstimate, FeeMarketSnapshot
)
from .utils import apply_percentage, format_wei

logger = logging.getLogger(__name__)

gas_estimate_fallbacks = Counter(
    'ledger_gas_estimate_fallbacks_total',
    'Gas limit estimates that fell back to the operation default',
    ['operation']
)
gas_requested = Histogram(
    'ledger_gas_requested', 'Gas limit sent with transactions', ['operation'],
    buckets=(21000, 50000, 100000, 200000, 300000, 500000, 1000000)
)
gas_used = Histogram(
    'ledger_gas_used', 'Gas consumed by included transactions', ['operation'],
    buckets=(21000, 50000, 100000, 200000, 300000, 500000, 1000000)
)

# Integer percentages applied to node-reported prices
STRATEGY_MULTIPLIERS = {
    GasStrategy.ECONOMICAL: 90,
    GasStrategy.STANDARD: 100,
    GasStrategy.FAST: 150,
    GasStrategy.AGGRESSIVE: 200,
}

SAFETY_MARGINS = {
    OptimizationLevel.NONE: 30,
    OptimizationLevel.MODERATE: 20,
    OptimizationLevel.AGGRESSIVE: 10,
}

ESTIMATED_TIMES = {
    GasStrategy.ECONOMICAL: 120,
    GasStrategy.STANDARD: 60,
    GasStrategy.FAST: 30,
    GasStrategy.AGGRESSIVE: 15,
}

CONTRACT_INTERACTION_GAS = 200000
NFT_MINT_GAS = 300000
COMPLEX_OPERATION_GAS = 500000

DEFAULT_GAS_LIMITS = {
    OperationKind.PROJECT_REGISTRATION: CONTRACT_INTERACTION_GAS,
    OperationKind.SCRIPT_NFT_MINT: NFT_MINT_GAS,
    OperationKind.NFT_TRANSFER: CONTRACT_INTERACTION_GAS,
    OperationKind.ESCROW_FUNDING: NFT_MINT_GAS,
    OperationKind.PAYMENT_RELEASE: COMPLEX_OPERATION_GAS,
    OperationKind.ESCROW_REFUND: NFT_MINT_GAS,
}

FALLBACK_PRIORITY_FEE = to_wei("1.5", "gwei")
FALLBACK_GAS_PRICE = to_wei(30, "gwei")

_FEE_MARKET_KEY = "fee_market"


def default_gas_limit(kind: OperationKind) -> int:
    return DEFAULT_GAS_LIMITS.get(kind, CONTRACT_INTERACTION_GAS)


def format_estimated_time(seconds: int) -> str:
    if seconds >= 60:
        minutes = seconds // 60
        return f"~{minutes} minute" + ("s" if minutes > 1 else "")
    return f"~{seconds} seconds"


@dataclass
class DryRunResult:
    """Outcome of the bounded dry-run retry loop"""
    gas: Optional[int]
    attempts: int
    error: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.gas is None


@dataclass
class GasUsageSample:
    operation: OperationKind
    tx_hash: str
    requested: int
    used: int
    unit_price: int
    recorded_at: float

    @property
    def efficiency(self) -> float:
        """Requested over used; above 1.0 means over-estimated"""
        return self.requested / self.used if self.used else 0.0


class GasOptimizer:
    """
    Prices and sizes transactions.
    Features:
    - Urgency strategies applied to the node's fee market
    - Two-part (base + priority) and legacy flat pricing
    - Safety-margined dry-run estimation with per-operation floors
    - Short-lived fee market cache
    - Requested vs. used gas telemetry
    """

    def __init__(self, connection: LedgerConnection,
                 cache_ttl: float = 30.0,
                 max_attempts: int = 3,
                 retry_delay: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 history_size: int = 500):
        self.connection = connection
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep
        self._fee_cache: TTLCache = TTLCache(maxsize=1, ttl=cache_ttl, timer=clock)
        self._usage_history: deque = deque(maxlen=history_size)

    async def get_fee_market(self) -> FeeMarketSnapshot:
        """Current fee market, served from cache while fresh"""
        cached = self._fee_cache.get(_FEE_MARKET_KEY)
        if cached is not None:
            return cached

        node = self.connection.get_node()
        try:
            gas_price = await node.gas_price()
            block = await node.get_block("latest")
            base_fee = block.get("baseFeePerGas") if block else None
            priority_fee = None
            if base_fee is not None:
                priority_fee = await node.max_priority_fee()
                if priority_fee is None:
                    priority_fee = FALLBACK_PRIORITY_FEE
        except Exception as e:
            # Not cached, so the next call asks the node again
            logger.warning(f"Fee market unavailable, using fallback price: {e}")
            return FeeMarketSnapshot(captured_at=self._clock(), gas_price=FALLBACK_GAS_PRICE)

        snapshot = FeeMarketSnapshot(
            captured_at=self._clock(),
            gas_price=gas_price,
            base_fee=base_fee,
            priority_fee=priority_fee,
        )
        self._fee_cache[_FEE_MARKET_KEY] = snapshot
        return snapshot

    def invalidate(self):
        self._fee_cache.clear()

    def price_from_snapshot(self, snapshot: FeeMarketSnapshot,
                            strategy: GasStrategy) -> GasEstimate:
        """Strategy pricing for a fixed market snapshot, gas limit left at zero"""
        multiplier = STRATEGY_MULTIPLIERS[strategy]
        eta = format_estimated_time(ESTIMATED_TIMES[strategy])

        if snapshot.supports_eip1559:
            priority_fee = apply_percentage(snapshot.priority_fee, multiplier)
            max_fee = snapshot.base_fee * 2 + priority_fee  # 2x base fee buffer
            return GasEstimate(
                strategy=strategy,
                gas_limit=0,
                max_fee_per_gas=max_fee,
                max_priority_fee_per_gas=priority_fee,
                estimated_time=eta,
            )

        return GasEstimate(
            strategy=strategy,
            gas_limit=0,
            gas_price=apply_percentage(snapshot.gas_price, multiplier),
            estimated_time=eta,
        )

    async def price_for(self, operation: OperationKind,
                        strategy: GasStrategy = GasStrategy.STANDARD) -> int:
        """Unit price (fee cap or flat price) for an operation"""
        snapshot = await self.get_fee_market()
        price = self.price_from_snapshot(snapshot, strategy).unit_price
        logger.debug(f"Unit price for {operation.value} ({strategy.value}): {format_wei(price, 'gwei')} gwei")
        return price

    async def get_gas_prices(self) -> Dict[GasStrategy, GasEstimate]:
        """Pricing for every strategy from one market snapshot"""
        snapshot = await self.get_fee_market()
        return {
            strategy: self.price_from_snapshot(snapshot, strategy)
            for strategy in GasStrategy
        }

    async def dry_run(self, operation: OperationKind,
                      transaction: Dict[str, Any]) -> DryRunResult:
        """Node gas estimation, retried with linear backoff"""
        node = self.connection.get_node()
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                gas = await node.estimate_gas(transaction)
                return DryRunResult(gas=gas, attempts=attempt)
            except Exception as e:
                last_error = str(e)
                logger.warning(
                    f"Gas estimation attempt {attempt} for {operation.value} failed: {e}"
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_delay * attempt)
        return DryRunResult(gas=None, attempts=self.max_attempts, error=last_error)

    async def estimate(self, operation: OperationKind,
                       transaction: Dict[str, Any],
                       strategy: GasStrategy = GasStrategy.STANDARD,
                       optimization_level: OptimizationLevel = OptimizationLevel.MODERATE
                       ) -> GasEstimate:
        """Price and limit for a pending operation; never raises on estimator failure"""
        floor = default_gas_limit(operation)
        result = await self.dry_run(operation, transaction)

        if result.exhausted:
            gas_estimate_fallbacks.labels(operation=operation.value).inc()
            logger.info(f"Using default gas limit {floor} for {operation.value}")
            gas_limit = floor
        else:
            margin = SAFETY_MARGINS[optimization_level]
            margined = result.gas + apply_percentage(result.gas, margin)
            gas_limit = max(margined, floor)
            logger.debug(
                f"Gas estimate for {operation.value}: estimated={result.gas} "
                f"with_margin={margined} final={gas_limit} level={optimization_level.value}"
            )

        snapshot = await self.get_fee_market()
        estimate = self.price_from_snapshot(snapshot, strategy)
        estimate.gas_limit = gas_limit
        estimate.from_default = result.exhausted
        return estimate

    def record_gas_usage(self, operation: OperationKind, tx_hash: str,
                         estimate: GasEstimate, used: int,
                         unit_price: Optional[int] = None) -> GasUsageSample:
        """Record requested vs. consumed gas for an included transaction"""
        sample = GasUsageSample(
            operation=operation,
            tx_hash=tx_hash,
            requested=estimate.gas_limit,
            used=used,
            unit_price=unit_price if unit_price is not None else estimate.unit_price,
            recorded_at=self._clock(),
        )
        self._usage_history.append(sample)
        gas_requested.labels(operation=operation.value).observe(sample.requested)
        gas_used.labels(operation=operation.value).observe(used)

        efficiency = sample.efficiency
        direction = "over" if efficiency > 1 else "under"
        logger.info(
            f"Gas usage for {operation.value} {tx_hash}: requested={sample.requested} "
            f"used={used} ({direction}-estimated by {abs(efficiency - 1) * 100:.1f}%)"
        )
        return sample

    def usage_history(self, operation: Optional[OperationKind] = None) -> List[GasUsageSample]:
        if operation is None:
            return list(self._usage_history)
        return [s for s in self._usage_history if s.operation == operation]
