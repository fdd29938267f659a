"""
API endpoints for the ledger bridge query surface.
"""

import logging
from typing import Dict, Any, List

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from ..gateway import LedgerGateway
from ..reconciliation import ReconciliationService
from ..transaction_monitor import TransactionMonitor
from ..utils import format_wei, normalize_tx_hash

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ledger"])

MAX_BATCH_SIZE = 100


class BatchStatusRequest(BaseModel):
    tx_hashes: List[str] = Field(..., description="Transaction hashes to look up")


def get_gateway(request: Request) -> LedgerGateway:
    return request.app.state.gateway


def get_monitor(request: Request) -> TransactionMonitor:
    return request.app.state.monitor


def get_reconciliation(request: Request) -> ReconciliationService:
    return request.app.state.reconciliation


@router.get("/status")
async def get_status(gateway: LedgerGateway = Depends(get_gateway)):
    """Ledger connectivity snapshot"""
    return await gateway.status()


@router.get("/transactions/{tx_hash}")
async def get_transaction_status(tx_hash: str,
                                 monitor: TransactionMonitor = Depends(get_monitor)):
    """Status of a single transaction"""
    try:
        tx_hash = normalize_tx_hash(tx_hash)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    record = await monitor.get_status(tx_hash)
    return record.to_dict()


@router.post("/transactions/batch-status")
async def batch_transaction_status(request: BatchStatusRequest,
                                   monitor: TransactionMonitor = Depends(get_monitor)):
    """Status of several transactions at once"""
    if len(request.tx_hashes) > MAX_BATCH_SIZE:
        raise HTTPException(status_code=400, detail=f"At most {MAX_BATCH_SIZE} hashes per request")
    try:
        hashes = [normalize_tx_hash(h) for h in request.tx_hashes]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    records = await monitor.batch_get_status(hashes)
    return {tx_hash: record.to_dict() for tx_hash, record in records.items()}


@router.post("/projects/{project_id}/refresh")
async def refresh_project(project_id: str,
                          reconciliation: ReconciliationService = Depends(get_reconciliation)):
    """Re-check a project's registration and update its mirror record"""
    view = await reconciliation.refresh_project(project_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
    return view


@router.get("/gas/prices")
async def get_gas_prices(gateway: LedgerGateway = Depends(get_gateway)) -> Dict[str, Any]:
    """Current pricing for every gas strategy"""
    if not gateway.enabled:
        raise HTTPException(status_code=503, detail="Ledger integration is disabled")
    try:
        prices = await gateway.gas_optimizer.get_gas_prices()
    except Exception as e:
        logger.error(f"Failed to get gas prices: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    return {
        strategy.value: {
            "max_fee_per_gas": estimate.max_fee_per_gas,
            "max_priority_fee_per_gas": estimate.max_priority_fee_per_gas,
            "gas_price": estimate.gas_price,
            "unit_price_gwei": str(format_wei(estimate.unit_price, "gwei")),
            "estimated_time": estimate.estimated_time,
        }
        for strategy, estimate in prices.items()
    }
