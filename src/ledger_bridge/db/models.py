import uuid
from enum import Enum

from sqlalchemy import Column, String, DateTime, Boolean, Numeric, TypeDecorator, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from .session import Base


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
class JsonBCompat(TypeDecorator):
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    OPEN = "open"
    CLOSED = "closed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MirrorStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def new_transaction_id() -> str:
    return f"tx_{uuid.uuid4()}"


class Project(Base):
    __tablename__ = 'projects'

    id = Column(String, primary_key=True, index=True)
    producer_id = Column(String, nullable=False, index=True)
    title = Column(String)
    status = Column(String, nullable=False, default=ProjectStatus.DRAFT.value)

    # Ledger mirror
    on_chain = Column(Boolean, nullable=False, default=False)
    contract_address = Column(String)
    blockchain_data = Column(JsonBCompat, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class LedgerTransaction(Base):
    __tablename__ = 'transactions'

    id = Column(String, primary_key=True, default=new_transaction_id)
    tx_hash = Column(String, nullable=False, unique=True, index=True)
    type = Column(String, nullable=False)
    user_id = Column(String, nullable=False, index=True)
    project_id = Column(String, index=True)
    amount = Column(Numeric(36, 18), nullable=False, default=0)
    status = Column(String, nullable=False, default=MirrorStatus.PENDING.value)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # "metadata" is reserved on declarative classes
    tx_metadata = Column("metadata", JsonBCompat, default=dict)
