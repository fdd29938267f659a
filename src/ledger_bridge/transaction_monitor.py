"""
Transaction monitoring.

Tracks submitted transactions from broadcast to settlement. Each tracked
transaction gets its own polling task; state lives in memory only and moves
forward through UNKNOWN -> PENDING -> CONFIRMED | FAILED | DROPPED.
"""

import asyncio
import inspect
import logging
from typing import Dict, Optional, List, Set, Tuple, Callable, Awaitable, Any, Union

from .config import LedgerSettings
from .connection import LedgerConnection
from .types import TransactionMetadata, TransactionRecord, TransactionState
from .utils import normalize_tx_hash

logger = logging.getLogger(__name__)

StatusCallback = Callable[[TransactionRecord], Union[None, Awaitable[None]]]

PENDING_POLL_INTERVAL = 5.0
CONFIRMING_POLL_INTERVAL = 10.0
ERROR_RETRY_INTERVAL = 15.0


class TransactionMonitor:
    """
    Polls the ledger for inclusion and confirmation depth.
    Features:
    - One polling task per transaction, duplicate registrations ignored
    - Monotonic state updates; terminal records only gain confirmations
    - Callback on every observed change
    - Dropped detection for transactions that vanish while pending
    - Per-transaction cancellation
    """

    def __init__(self, connection: LedgerConnection, settings: LedgerSettings,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.connection = connection
        self.settings = settings
        self.threshold = settings.settlement_threshold
        self._sleep = sleep

        self._records: Dict[str, TransactionRecord] = {}
        self._active: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._missing_polls: Dict[str, int] = {}
        self._last_notified: Dict[str, Tuple[TransactionState, int]] = {}

    @property
    def active(self) -> Set[str]:
        return set(self._active)

    def is_monitoring(self, tx_hash: str) -> bool:
        return normalize_tx_hash(tx_hash) in self._active

    def is_done(self, record: TransactionRecord) -> bool:
        if record.state == TransactionState.CONFIRMED:
            return record.confirmations >= self.threshold
        return record.state.is_terminal

    async def monitor(self, tx_hash: str, metadata: TransactionMetadata,
                      callback: Optional[StatusCallback] = None) -> TransactionRecord:
        """
        Start tracking a transaction.

        Performs one immediate check and fires the callback with its result,
        then keeps polling in the background until the transaction settles,
        fails or is dropped. Registering a hash that is already tracked does
        nothing and returns the current record.
        """
        tx_hash = normalize_tx_hash(tx_hash)
        if tx_hash in self._active:
            logger.debug(f"Transaction {tx_hash} is already monitored")
            return self._records[tx_hash].copy()

        self._active.add(tx_hash)
        record = self._records.get(tx_hash)
        if record is None:
            record = TransactionRecord(tx_hash=tx_hash, metadata=metadata)
            self._records[tx_hash] = record

        if not self.settings.blockchain_enabled:
            record.state = TransactionState.CONFIRMED
            record.confirmations = self.threshold
            self._active.discard(tx_hash)
            await self._notify(callback, record, force=True)
            return record.copy()

        delay = None
        try:
            await self._refresh(tx_hash)
            self.connection.mark_healthy()
        except Exception as e:
            logger.error(f"Initial status check for {tx_hash} failed: {e}")
            self._record_error(tx_hash, e)
            await self.connection.reconnect()
            delay = ERROR_RETRY_INTERVAL

        record = self._records[tx_hash]
        if tx_hash not in self._active:
            # Cancelled while the initial check was in flight
            logger.info(f"Monitoring of {tx_hash} cancelled before polling started")
            self._forget(tx_hash)
            return record.copy()

        await self._notify(callback, record, force=True)

        if delay is None and self.is_done(record):
            self._active.discard(tx_hash)
            self._forget(tx_hash)
            logger.info(f"Transaction {tx_hash} finished on first check: {record.state.value}")
        else:
            if delay is None:
                delay = self._next_delay(record)
            self._tasks[tx_hash] = asyncio.create_task(self._poll(tx_hash, callback, delay))
        return record.copy()

    async def check_status(self, tx_hash: str) -> TransactionRecord:
        """Fresh status from the node; raises on node errors"""
        tx_hash = normalize_tx_hash(tx_hash)
        record = self._records.get(tx_hash)
        if record is None:
            record = TransactionRecord(tx_hash=tx_hash)
            await self._observe(record, record)
            return record

        observed = TransactionRecord(tx_hash=tx_hash, metadata=record.metadata)
        await self._observe(observed, record)
        if tx_hash in self._active:
            # The poller owns the record; readers get a merged copy
            record = record.copy()
        self._merge(record, observed)
        return record.copy()

    async def get_status(self, tx_hash: str) -> TransactionRecord:
        """Cached record once settled, otherwise a fresh check"""
        tx_hash = normalize_tx_hash(tx_hash)
        cached = self._records.get(tx_hash)
        if cached is not None and (self.is_done(cached) or not self.settings.blockchain_enabled):
            return cached.copy()
        if not self.settings.blockchain_enabled:
            return TransactionRecord(tx_hash=tx_hash)

        try:
            return await self.check_status(tx_hash)
        except Exception as e:
            logger.error(f"Error checking transaction {tx_hash}: {e}")
            record = cached.copy() if cached is not None else TransactionRecord(tx_hash=tx_hash)
            record.error = str(e)
            return record

    async def batch_get_status(self, tx_hashes: List[str]) -> Dict[str, TransactionRecord]:
        records = await asyncio.gather(*(self.get_status(h) for h in tx_hashes))
        return {h: r for h, r in zip(tx_hashes, records)}

    async def cancel(self, tx_hash: str) -> bool:
        """Stop polling a transaction; its last record stays queryable"""
        tx_hash = normalize_tx_hash(tx_hash)
        task = self._tasks.pop(tx_hash, None)
        was_active = tx_hash in self._active
        self._active.discard(tx_hash)
        self._forget(tx_hash)
        if task is None:
            if was_active:
                logger.info(f"Stopped monitoring {tx_hash} during its initial check")
            return was_active
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Stopped monitoring {tx_hash}")
        return True

    async def shutdown(self):
        for tx_hash in list(self._tasks):
            await self.cancel(tx_hash)
        logger.info("Transaction monitor shutdown")

    async def wait_for_settlement(self, tx_hash: str,
                                  timeout: Optional[float] = None) -> TransactionRecord:
        """Wait for the poller of a transaction to finish"""
        tx_hash = normalize_tx_hash(tx_hash)
        task = self._tasks.get(tx_hash)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        record = self._records.get(tx_hash)
        if record is None:
            raise KeyError(f"Transaction {tx_hash} is not monitored")
        return record.copy()

    # Polling

    async def _poll(self, tx_hash: str, callback: Optional[StatusCallback], delay: float):
        try:
            while True:
                await self._sleep(delay)
                try:
                    record = await self._refresh(tx_hash)
                except Exception as e:
                    logger.error(f"Error monitoring transaction {tx_hash}: {e}")
                    self._record_error(tx_hash, e)
                    await self.connection.reconnect()
                    delay = ERROR_RETRY_INTERVAL
                    continue

                self.connection.mark_healthy()
                await self._notify(callback, record)
                if self.is_done(record):
                    logger.info(
                        f"Transaction {tx_hash} finished: {record.state.value} "
                        f"({record.confirmations} confirmations)"
                    )
                    return
                delay = self._next_delay(record)
        finally:
            self._active.discard(tx_hash)
            self._forget(tx_hash)
            if self._tasks.get(tx_hash) is asyncio.current_task():
                del self._tasks[tx_hash]

    def _next_delay(self, record: TransactionRecord) -> float:
        if record.state == TransactionState.PENDING:
            return PENDING_POLL_INTERVAL
        return CONFIRMING_POLL_INTERVAL

    async def _refresh(self, tx_hash: str) -> TransactionRecord:
        record = self._records[tx_hash]
        observed = TransactionRecord(tx_hash=tx_hash, metadata=record.metadata)
        await self._observe(observed, record)
        self._merge(record, observed, count_misses=True)
        return record

    async def _observe(self, observed: TransactionRecord, current: TransactionRecord):
        """Fill ``observed`` from the node"""
        node = self.connection.get_node()
        tx = await node.get_transaction(observed.tx_hash)
        if tx is None:
            observed.state = TransactionState.UNKNOWN
            return

        observed.from_address = tx.get("from")
        observed.to_address = tx.get("to")

        receipt = await node.get_transaction_receipt(observed.tx_hash)
        if receipt is None:
            observed.state = TransactionState.PENDING
            return

        block_number = receipt["blockNumber"]
        observed.block_number = block_number
        observed.gas_used = receipt.get("gasUsed")
        observed.effective_gas_price = receipt.get("effectiveGasPrice")
        if observed.gas_used is not None and observed.effective_gas_price is not None:
            observed.total_cost_wei = observed.gas_used * observed.effective_gas_price
        observed.state = (
            TransactionState.CONFIRMED if receipt.get("status") == 1 else TransactionState.FAILED
        )

        if current.timestamp is not None and current.block_number == block_number:
            observed.timestamp = current.timestamp
        else:
            block = await node.get_block(block_number)
            if block:
                observed.timestamp = block.get("timestamp")

        height = await node.block_number()
        observed.confirmations = max(1, height - block_number + 1)

    def _merge(self, record: TransactionRecord, observed: TransactionRecord,
               count_misses: bool = False):
        """
        Apply an observation without moving the record backwards.

        Only the poller counts misses towards dropped detection; status
        reads never advance it.
        """
        tx_hash = record.tx_hash

        if record.state.is_terminal:
            if record.state == TransactionState.CONFIRMED == observed.state:
                record.confirmations = max(record.confirmations, observed.confirmations)
            elif observed.state != record.state:
                logger.warning(
                    f"Ignoring {observed.state.value} observation for "
                    f"{record.state.value} transaction {tx_hash}"
                )
            return

        if observed.state.rank < record.state.rank:
            if not count_misses:
                return
            # Seen pending, now missing from the node
            misses = self._missing_polls.get(tx_hash, 0) + 1
            self._missing_polls[tx_hash] = misses
            if misses >= self.settings.drop_after_missing_polls:
                logger.warning(f"Transaction {tx_hash} dropped after {misses} polls without a trace")
                record.state = TransactionState.DROPPED
                record.error = "Transaction dropped from the node's pool"
            return

        if count_misses:
            self._missing_polls.pop(tx_hash, None)
        record.state = observed.state
        record.confirmations = observed.confirmations
        record.error = None
        for attr in ("block_number", "from_address", "to_address", "gas_used",
                     "effective_gas_price", "total_cost_wei", "timestamp"):
            value = getattr(observed, attr)
            if value is not None:
                setattr(record, attr, value)

    def _forget(self, tx_hash: str):
        self._missing_polls.pop(tx_hash, None)
        self._last_notified.pop(tx_hash, None)

    def _record_error(self, tx_hash: str, error: Exception):
        record = self._records.get(tx_hash)
        if record is not None and not record.state.is_terminal:
            record.error = str(error)

    async def _notify(self, callback: Optional[StatusCallback], record: TransactionRecord,
                      force: bool = False):
        key = (record.state, record.confirmations)
        if not force and self._last_notified.get(record.tx_hash) == key:
            return
        self._last_notified[record.tx_hash] = key
        if callback is None:
            return
        try:
            outcome = callback(record.copy())
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Status callback for {record.tx_hash} failed: {e}")
