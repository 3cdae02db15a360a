"""
Database models for batch metadata generation and the token ledger
"""
from datetime import datetime, timezone
from typing import Dict, Any, List
from enum import Enum as PyEnum
import uuid

from sqlalchemy import (
    create_engine, Column, String, Integer, DateTime, Text, JSON, Enum,
    Index, CheckConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from .pipeline_config import config

Base = declarative_base()


def _new_batch_id() -> str:
    return uuid.uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BatchStatus(PyEnum):
    """Batch status enumeration"""
    PROCESSING = "processing"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (BatchStatus.PARTIAL,
                     BatchStatus.COMPLETED, BatchStatus.FAILED)


class ImageBatch(Base):
    """One uploaded batch with its per-image outcomes embedded"""
    __tablename__ = 'image_batches'

    # Primary identification
    batch_id = Column(String(64), primary_key=True, default=_new_batch_id)
    user_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)

    # Fixed at creation
    total_images = Column(Integer, nullable=False)

    # Outcomes, appended one at a time by the orchestrator
    successful_images = Column(JSON, nullable=False, default=list)
    failed_images = Column(JSON, nullable=False, default=list)

    # Status and accounting
    status = Column(Enum(BatchStatus),
                    default=BatchStatus.PROCESSING, nullable=False)
    remaining_tokens = Column(Integer, default=0, nullable=False)
    tokens_used = Column(Integer, default=0, nullable=False)

    # Timing
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    updated_at = Column(DateTime(timezone=True),
                        default=_utc_now, onupdate=_utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency for outcome appends
    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {'version_id_col': version_id}

    __table_args__ = (
        Index('idx_image_batch_user', 'user_id'),
        Index('idx_image_batch_user_created', 'user_id', 'created_at'),
        Index('idx_image_batch_status', 'status'),
    )

    @property
    def successful_images_count(self) -> int:
        return len(self.successful_images or [])

    @property
    def failed_images_count(self) -> int:
        return len(self.failed_images or [])

    @property
    def recorded_count(self) -> int:
        return self.successful_images_count + self.failed_images_count

    @property
    def progress_percentage(self) -> float:
        """Calculate progress percentage"""
        if not self.total_images:
            return 0.0
        return (self.recorded_count / self.total_images) * 100

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def recorded_image_ids(self) -> List[str]:
        return [entry.get('image_id') for entry in
                (self.successful_images or []) + (self.failed_images or [])]

    def to_summary_dict(self) -> Dict[str, Any]:
        """Lightweight representation for batch listings"""
        return {
            'batch_id': self.batch_id,
            'name': self.name,
            'status': self.status.value,
            'total_images': self.total_images,
            'successful_images_count': self.successful_images_count,
            'failed_images_count': self.failed_images_count,
            'tokens_used': self.tokens_used,
            'progress_percentage': self.progress_percentage,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert batch to dictionary"""
        data = self.to_summary_dict()
        data.update({
            'user_id': self.user_id,
            'successful_images': list(self.successful_images or []),
            'failed_images': list(self.failed_images or []),
            'remaining_tokens': self.remaining_tokens,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        })
        return data


class TokenBalance(Base):
    """Authoritative per-user credit balance"""
    __tablename__ = 'token_balances'

    user_id = Column(String(64), primary_key=True)
    available_tokens = Column(Integer, default=0, nullable=False)
    total_tokens_used = Column(Integer, default=0, nullable=False)
    total_tokens_purchased = Column(Integer, default=0, nullable=False)
    total_image_processed = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True),
                        default=_utc_now, onupdate=_utc_now)

    __table_args__ = (
        CheckConstraint('available_tokens >= 0',
                        name='ck_token_balance_non_negative'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'available_tokens': self.available_tokens,
            'total_tokens_used': self.total_tokens_used,
            'total_tokens_purchased': self.total_tokens_purchased,
            'total_image_processed': self.total_image_processed,
        }


class TokenTransaction(Base):
    """Token usage / purchase history"""
    __tablename__ = 'token_transactions'

    transaction_id = Column(String(64), primary_key=True,
                            default=_new_batch_id)
    user_id = Column(String(64), nullable=False)
    action_type = Column(String(20), nullable=False)  # usage | purchase | refund
    count = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    batch_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True),
                        default=_utc_now)

    __table_args__ = (
        Index('idx_token_tx_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transaction_id': self.transaction_id,
            'action_type': self.action_type,
            'count': self.count,
            'description': self.description,
            'batch_id': self.batch_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class DatabaseManager:
    """Database connection and session management"""

    def __init__(self):
        self.engine = None
        self.SessionLocal = None
        self._initialize_database()

    def _initialize_database(self):
        """Initialize database connection"""
        db_config = config.get_database_config()
        self.engine = create_engine(**db_config)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False,
            bind=self.engine)

    def create_tables(self):
        """Create all database tables"""
        Base.metadata.create_all(bind=self.engine)

    def drop_tables(self):
        """Drop all database tables (use with caution)"""
        Base.metadata.drop_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session"""
        return self.SessionLocal()

    def close(self):
        """Close database connections"""
        if self.engine:
            self.engine.dispose()


# Global database manager instance
db_manager = DatabaseManager()


def init_database():
    """Initialize database tables"""
    db_manager.create_tables()
