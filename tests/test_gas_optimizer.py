import pytest

from ledger_bridge.gas_optimizer import (
    GasOptimizer, DEFAULT_GAS_LIMITS, FALLBACK_GAS_PRICE, FALLBACK_PRIORITY_FEE,
    default_gas_limit
)
from ledger_bridge.types import (
    OperationKind, GasStrategy, OptimizationLevel, FeeMarketSnapshot, GasEstimate
)

from conftest import gwei

ORDERED_STRATEGIES = [
    GasStrategy.ECONOMICAL, GasStrategy.STANDARD, GasStrategy.FAST, GasStrategy.AGGRESSIVE
]

TX = {"to": "0x" + "11" * 20, "data": "0x"}


class TestGasOptimizer:
    """Test suite for gas pricing and limit estimation"""

    @pytest.fixture
    def optimizer(self, connection, clock, sleep):
        return GasOptimizer(connection, cache_ttl=30.0, clock=clock, sleep=sleep)

    @pytest.mark.asyncio
    async def test_two_part_fee_market_pricing(self, optimizer):
        """Priority fee is scaled and added to twice the base fee"""
        prices = await optimizer.get_gas_prices()

        fast = prices[GasStrategy.FAST]
        assert fast.max_priority_fee_per_gas == gwei(3)
        assert fast.max_fee_per_gas == 2 * gwei(5) + gwei(3)
        assert fast.gas_price is None

        standard = prices[GasStrategy.STANDARD]
        assert standard.max_priority_fee_per_gas == gwei(2)
        assert standard.max_fee_per_gas == gwei(12)

    @pytest.mark.asyncio
    async def test_legacy_pricing(self, optimizer, node):
        """Without a base fee the flat gas price is multiplied directly"""
        node.base_fee = None

        prices = await optimizer.get_gas_prices()

        assert prices[GasStrategy.ECONOMICAL].gas_price == gwei(9)
        assert prices[GasStrategy.AGGRESSIVE].gas_price == gwei(20)
        params = prices[GasStrategy.STANDARD].tx_params()
        assert params["gasPrice"] == gwei(10)
        assert "maxFeePerGas" not in params
        assert "type" not in params

    @pytest.mark.asyncio
    @pytest.mark.parametrize("base_fee", [None, gwei(5)])
    async def test_price_strictly_increases_with_urgency(self, optimizer, node, base_fee):
        node.base_fee = base_fee

        prices = [
            await optimizer.price_for(OperationKind.SCRIPT_NFT_MINT, strategy)
            for strategy in ORDERED_STRATEGIES
        ]

        assert prices == sorted(prices)
        assert len(set(prices)) == len(prices)

    def test_price_ordering_for_fixed_snapshot(self, optimizer):
        snapshot = FeeMarketSnapshot(
            captured_at=0.0, gas_price=gwei("0.05"), base_fee=gwei("0.01"), priority_fee=1000
        )
        prices = [optimizer.price_from_snapshot(snapshot, s).unit_price for s in ORDERED_STRATEGIES]
        assert prices[0] < prices[1] < prices[2] < prices[3]

    @pytest.mark.asyncio
    async def test_fee_market_cached_within_ttl(self, optimizer, node, clock):
        await optimizer.get_fee_market()
        clock.advance(29)
        await optimizer.get_fee_market()
        assert node.fee_calls == 1

        node.gas_price_wei = gwei(12)
        clock.advance(2)
        snapshot = await optimizer.get_fee_market()
        assert node.fee_calls == 2
        assert snapshot.gas_price == gwei(12)

    @pytest.mark.asyncio
    async def test_fee_market_failure_falls_back_without_caching(self, optimizer, node, clock):
        node.unreachable_until = clock() + 10

        snapshot = await optimizer.get_fee_market()
        assert snapshot.gas_price == FALLBACK_GAS_PRICE
        assert not snapshot.supports_eip1559

        clock.advance(11)
        snapshot = await optimizer.get_fee_market()
        assert snapshot.supports_eip1559
        assert snapshot.base_fee == gwei(5)

    @pytest.mark.asyncio
    async def test_missing_priority_fee_uses_fallback(self, optimizer, node):
        node.priority_fee = None

        snapshot = await optimizer.get_fee_market()

        assert snapshot.priority_fee == FALLBACK_PRIORITY_FEE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("level,expected", [
        (OptimizationLevel.NONE, 520000),
        (OptimizationLevel.MODERATE, 480000),
        (OptimizationLevel.AGGRESSIVE, 440000),
    ])
    async def test_safety_margin(self, optimizer, node, level, expected):
        node.estimated_gas = 400000

        estimate = await optimizer.estimate(
            OperationKind.SCRIPT_NFT_MINT, TX, GasStrategy.STANDARD, level
        )

        assert estimate.gas_limit == expected
        assert not estimate.from_default

    @pytest.mark.asyncio
    async def test_limit_never_below_operation_default(self, optimizer, node):
        node.estimated_gas = 21000

        estimate = await optimizer.estimate(OperationKind.PROJECT_REGISTRATION, TX)

        assert estimate.gas_limit == 200000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", list(OperationKind))
    @pytest.mark.parametrize("estimated", [0, 50000, 1000000])
    async def test_limit_at_least_default_for_every_kind(self, optimizer, node, kind, estimated):
        node.estimated_gas = estimated

        estimate = await optimizer.estimate(kind, TX)

        assert estimate.gas_limit >= default_gas_limit(kind)

    @pytest.mark.asyncio
    async def test_estimator_exhaustion_uses_default(self, optimizer, node, sleep):
        """Three failed dry runs fall back to the hard-coded limit"""
        node.estimate_failures = 3

        estimate = await optimizer.estimate(OperationKind.SCRIPT_NFT_MINT, TX)

        assert estimate.gas_limit == DEFAULT_GAS_LIMITS[OperationKind.SCRIPT_NFT_MINT]
        assert estimate.from_default
        assert node.estimate_calls == 3
        assert sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_estimator_recovers_on_retry(self, optimizer, node, sleep):
        node.estimate_failures = 1
        node.estimated_gas = 300000

        result = await optimizer.dry_run(OperationKind.ESCROW_FUNDING, TX)

        assert not result.exhausted
        assert result.gas == 300000
        assert result.attempts == 2
        assert sleep.calls == [1.0]

    @pytest.mark.asyncio
    async def test_estimated_time_per_strategy(self, optimizer):
        prices = await optimizer.get_gas_prices()

        assert prices[GasStrategy.ECONOMICAL].estimated_time == "~2 minutes"
        assert prices[GasStrategy.STANDARD].estimated_time == "~1 minute"
        assert prices[GasStrategy.FAST].estimated_time == "~30 seconds"
        assert prices[GasStrategy.AGGRESSIVE].estimated_time == "~15 seconds"

    def test_record_gas_usage(self, optimizer):
        estimate = GasEstimate(strategy=GasStrategy.STANDARD, gas_limit=240000, gas_price=gwei(10))

        sample = optimizer.record_gas_usage(
            OperationKind.SCRIPT_NFT_MINT, "0x" + "ab" * 32, estimate, 200000
        )

        assert sample.efficiency == pytest.approx(1.2)
        assert sample.unit_price == gwei(10)
        assert optimizer.usage_history() == [sample]
        assert optimizer.usage_history(OperationKind.NFT_TRANSFER) == []

    def test_max_cost(self):
        estimate = GasEstimate(
            strategy=GasStrategy.FAST, gas_limit=100000,
            max_fee_per_gas=gwei(13), max_priority_fee_per_gas=gwei(3)
        )
        assert estimate.max_cost_wei == 100000 * gwei(13)
        assert estimate.tx_params()["type"] == 2
