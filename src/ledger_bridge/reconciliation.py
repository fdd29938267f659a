"""
Reconciliation of monitor outcomes into the mirror store.

The only component that writes to the database. Project registrations are
tracked through the transaction monitor; every callback updates the mirror
transaction row, and terminal outcomes are snapshotted onto the project.
"""

import logging
from datetime import datetime, timezone
from functools import partial
from typing import Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .config import LedgerSettings
from .db.models import Project, LedgerTransaction, ProjectStatus, MirrorStatus
from .transaction_monitor import TransactionMonitor
from .types import OperationKind, TransactionMetadata, TransactionRecord, TransactionState
from .utils import normalize_tx_hash

logger = logging.getLogger(__name__)

_MIRROR_STATUS = {
    TransactionState.CONFIRMED: MirrorStatus.COMPLETED,
    TransactionState.FAILED: MirrorStatus.FAILED,
    TransactionState.DROPPED: MirrorStatus.FAILED,
}


def mirror_status(state: TransactionState) -> MirrorStatus:
    return _MIRROR_STATUS.get(state, MirrorStatus.PENDING)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ReconciliationService:
    """Keeps mirror rows consistent with monitored ledger outcomes"""

    def __init__(self, session_factory: sessionmaker, monitor: TransactionMonitor,
                 settings: LedgerSettings):
        self.session_factory = session_factory
        self.monitor = monitor
        self.settings = settings

    async def track_registration(self, project_id: str, tx_hash: str,
                                 chain_project_id: Optional[str],
                                 user_id: Optional[str] = None) -> TransactionRecord:
        """
        Record a submitted project registration and follow it to settlement.

        The mirror transaction row is written as pending before monitoring
        starts; the monitor's first callback already sees it.
        """
        tx_hash = normalize_tx_hash(tx_hash)
        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if user_id is None:
                user_id = project.producer_id if project is not None else ""
            self._ensure_transaction(db, tx_hash, project_id, user_id, chain_project_id)
            db.commit()

        metadata = TransactionMetadata(
            kind=OperationKind.PROJECT_REGISTRATION,
            user_id=user_id,
            project_id=project_id,
            extra={"chain_project_id": chain_project_id},
        )
        callback = partial(self.apply_registration_update, project_id, chain_project_id)
        logger.info(f"Tracking registration of project {project_id} in {tx_hash}")
        return await self.monitor.monitor(tx_hash, metadata, callback)

    def apply_registration_update(self, project_id: str, chain_project_id: Optional[str],
                                  record: TransactionRecord):
        """Monitor callback for a project registration"""
        with self.session_factory() as db:
            project = db.get(Project, project_id)
            user_id = project.producer_id if project is not None else ""
            row = self._ensure_transaction(db, record.tx_hash, project_id, user_id, chain_project_id)

            status = mirror_status(record.state)
            if row.status != status.value:
                logger.info(f"Mirror transaction {row.id} {row.status} -> {status.value}")
            row.status = status.value
            row.tx_metadata = {
                **(row.tx_metadata or {}),
                "state": record.state.value,
                "confirmations": record.confirmations,
                "block_number": record.block_number,
            }

            if project is None:
                logger.warning(f"Project {project_id} not found in mirror store")
            elif record.is_settled(self.monitor.threshold):
                self._mark_confirmed(project, chain_project_id, record)
            elif record.state in (TransactionState.FAILED, TransactionState.DROPPED):
                self._mark_failed(project, chain_project_id, record)

            db.commit()

    async def refresh_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        """Re-check a project's registration transaction and reconcile it"""
        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                return None
            data = dict(project.blockchain_data or {})
            tx_hash = data.get("tx_hash")
            if tx_hash is None:
                row = db.execute(
                    select(LedgerTransaction)
                    .where(LedgerTransaction.project_id == project_id)
                    .where(LedgerTransaction.type == OperationKind.PROJECT_REGISTRATION.value)
                    .order_by(LedgerTransaction.created_at.desc())
                ).scalars().first()
                if row is None:
                    return self._project_view(project, None)
                tx_hash = row.tx_hash
                chain_project_id = (row.tx_metadata or {}).get("chain_project_id")
            else:
                chain_project_id = data.get("chain_project_id")

        record = await self.monitor.get_status(tx_hash)
        if record.error and record.state == TransactionState.UNKNOWN:
            logger.warning(f"Could not refresh project {project_id}: {record.error}")
        else:
            self.apply_registration_update(project_id, chain_project_id, record)

        with self.session_factory() as db:
            return self._project_view(db.get(Project, project_id), record)

    # Writes

    def _ensure_transaction(self, db: Session, tx_hash: str, project_id: str,
                            user_id: str, chain_project_id: Optional[str]) -> LedgerTransaction:
        row = db.execute(
            select(LedgerTransaction).where(LedgerTransaction.tx_hash == tx_hash)
        ).scalars().first()
        if row is None:
            row = LedgerTransaction(
                tx_hash=tx_hash,
                type=OperationKind.PROJECT_REGISTRATION.value,
                user_id=user_id,
                project_id=project_id,
                amount=0,
                status=MirrorStatus.PENDING.value,
                tx_metadata={
                    "chain_project_id": chain_project_id,
                    "contract": self.settings.project_registry_address,
                },
            )
            db.add(row)
            db.flush()
            logger.info(f"Created mirror transaction {row.id} for {tx_hash}")
        return row

    def _mark_confirmed(self, project: Project, chain_project_id: Optional[str],
                        record: TransactionRecord):
        data = dict(project.blockchain_data or {})
        data.update(
            chain_project_id=chain_project_id,
            tx_hash=record.tx_hash,
            confirmations=record.confirmations,
            confirmed=True,
            timestamp=record.timestamp,
        )
        data.setdefault("confirmation_time", _now())
        data.pop("failed_at", None)
        data.pop("error", None)
        project.blockchain_data = data

        if not project.on_chain:
            project.on_chain = True
            project.contract_address = self.settings.project_registry_address
            logger.info(f"Project {project.id} confirmed on chain as {chain_project_id}")
        if project.status == ProjectStatus.DRAFT.value:
            project.status = ProjectStatus.PUBLISHED.value

    def _mark_failed(self, project: Project, chain_project_id: Optional[str],
                     record: TransactionRecord):
        data = dict(project.blockchain_data or {})
        data.update(
            chain_project_id=chain_project_id,
            tx_hash=record.tx_hash,
            confirmations=record.confirmations,
            confirmed=False,
            timestamp=record.timestamp,
            failed_at=_now(),
            error=record.error or f"Transaction {record.state.value}",
        )
        project.blockchain_data = data
        logger.warning(f"Registration of project {project.id} {record.state.value}: {data['error']}")

    @staticmethod
    def _project_view(project: Project, record: Optional[TransactionRecord]) -> Dict[str, Any]:
        return {
            "project_id": project.id,
            "status": project.status,
            "on_chain": project.on_chain,
            "contract_address": project.contract_address,
            "blockchain_data": project.blockchain_data or {},
            "transaction": record.to_dict() if record is not None else None,
        }
